#!/usr/bin/env python3
"""
Build and Sail Example

This example walks through the whole life of a ship:
1. Build a crate from a Keelanfile (copy a file into the root)
2. Deploy a ship from it through the daemon
3. Read its logs
4. Stop and remove the ship, then the crate

The daemon must be running (``keelan daemon start``) and
<base>/rootfs must hold a bootstrapped root filesystem.

Run with: sudo python3 build_and_sail.py
"""

import os
import sys
import tempfile
import time

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from keelan.builder import CrateBuilder, remove_crate
from keelan.errors import KeelanError
from keelan.metadata import MetadataStore
from keelan.protocol import DaemonClient
from keelan.ships import ShipManager
from keelan.utils import ROOTFS_PATH, check_root, ensure_directories

CRATE_NAME = "example-greeter"
SHIP_NAME = "example-greeter-1"

KEELANFILE = """\
build_context:
  base_image: "root"
  work_directory: "/app"

build_steps:
  - action: copy_files
    description: "Copy greeting"
    source: "greeting.txt"
    destination: "/app/greeting.txt"

crate_config:
  environment_variables:
    GREETING_FILE: "/app/greeting.txt"

runtime_command: ["sh", "-c", "while true; do cat $GREETING_FILE; sleep 1; done"]
"""


def print_header(text: str) -> None:
    """Print a formatted header."""
    print(f"\n{'='*60}")
    print(f"  {text}")
    print(f"{'='*60}\n")


def print_step(text: str) -> None:
    """Print a step indicator."""
    print(f"[+] {text}")


def check_prerequisites() -> bool:
    if not check_root():
        print("Error: This example requires root privileges.")
        print("Please run with: sudo python3 build_and_sail.py")
        return False
    if not os.path.isdir(ROOTFS_PATH):
        print(f"Error: root layer not found at {ROOTFS_PATH}")
        return False
    if not DaemonClient().is_running():
        print("Error: the Keelan daemon is not running.")
        print("Please run: keelan daemon start")
        return False
    return True


def build(store: MetadataStore) -> None:
    print_header("Step 1: Build a crate")
    with tempfile.TemporaryDirectory() as context_dir:
        with open(os.path.join(context_dir, "greeting.txt"), "w") as f:
            f.write("Ahoy from inside the crate!\n")
        crate = CrateBuilder(store).build(CRATE_NAME, KEELANFILE, context_dir)
    print_step(f"Crate {crate.name}: {crate.digest[:12]} ({crate.size_bytes} bytes)")


def sail(store: MetadataStore) -> None:
    ships = ShipManager(store)

    print_header("Step 2: Deploy a ship")
    reply = ships.deploy(CRATE_NAME, name=SHIP_NAME)
    print_step(f"{reply.message} (PID {reply.pid})")

    print_header("Step 3: Read its logs")
    time.sleep(3)
    ships.logs(SHIP_NAME, tail=3)

    print_header("Step 4: Clean up")
    print_step(ships.stop(SHIP_NAME).message)
    ships.remove(SHIP_NAME)
    print_step(f"Removed ship {SHIP_NAME}")


def main() -> int:
    if not check_prerequisites():
        return 1

    ensure_directories()
    store = MetadataStore()
    try:
        build(store)
        sail(store)
    except KeelanError as e:
        print(f"Error: {e}")
        return 1
    finally:
        if store.crate_exists(CRATE_NAME):
            remove_crate(CRATE_NAME, store, force=True)
            print_step(f"Removed crate {CRATE_NAME}")
        store.close()

    print("\nAll steps passed!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
