#!/usr/bin/env python3
"""
Utility functions and configuration for Keelan.

Provides:
- Base directory layout (crates, ships, logs, run, database)
- Environment driven configuration
- Docker-style name generation (adjective-animal) for ships
- libc handle for mount(2)/umount2(2)

Directory Layout
================

    <base>/crates/<name>            upper dir of a crate build
    <base>/crates/<name>_work       overlay work dir
    <base>/crates/<name>_merge      merged root used during the build
    <base>/crates/<name>.tar.gz     compressed, content-addressed artifact
    <base>/ships/<name>[_work|_merge]
    <base>/rootfs                   bootstrap root of the sentinel layer
    <base>/logs/<name>/{out,err}.log
    <base>/run/keelan-daemon.pid
    <base>/database/keelan.db

Every value can be overridden through a ``KEELAN_*`` environment variable.
"""

import ctypes
import os
import random
from typing import Tuple

# Determine the root directory for storage
if os.environ.get("KEELAN_ROOT"):
    KEELAN_ROOT = os.environ["KEELAN_ROOT"]
elif os.geteuid() == 0:
    KEELAN_ROOT = "/var/lib/keelan"
else:
    xdg_data = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    KEELAN_ROOT = os.path.join(xdg_data, "keelan")

CRATES_PATH = os.path.join(KEELAN_ROOT, "crates")
SHIPS_PATH = os.path.join(KEELAN_ROOT, "ships")
LOGS_PATH = os.path.join(KEELAN_ROOT, "logs")
RUN_PATH = os.path.join(KEELAN_ROOT, "run")
DATABASE_PATH = os.path.join(KEELAN_ROOT, "database")
ROOTFS_PATH = os.path.join(KEELAN_ROOT, "rootfs")

DATABASE_FILE = os.path.join(DATABASE_PATH, "keelan.db")
DAEMON_NAME = "keelan-daemon"
DAEMON_PID_FILE = os.path.join(RUN_PATH, f"{DAEMON_NAME}.pid")
DAEMON_LOG_FILE = os.path.join(LOGS_PATH, f"{DAEMON_NAME}.log")

# Sentinel layer every chain terminates at
ROOT_LAYER = os.environ.get("KEELAN_ROOT_LAYER", "root")

# Control socket
DAEMON_HOST = os.environ.get("KEELAN_DAEMON_HOST", "127.0.0.1")
DAEMON_PORT = int(os.environ.get("KEELAN_DAEMON_PORT", "9876"))

# Seconds a client gets to send its whole request
REQUEST_TIMEOUT = float(os.environ.get("KEELAN_REQUEST_TIMEOUT", "10"))

# Seconds between liveness reconciliation passes
MONITOR_INTERVAL = float(os.environ.get("KEELAN_MONITOR_INTERVAL", "30"))

# Seconds a ship gets between SIGTERM and the liveness re-check
STOP_GRACE_PERIOD = float(os.environ.get("KEELAN_STOP_GRACE", "2"))

# PATH handed to processes run inside a crate
CRATE_PATH_ENV = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

ADJECTIVES = [
    "admiring", "adoring", "agitated", "amazing", "awesome",
    "blissful", "bold", "brave", "busy", "charming",
    "clever", "cool", "cranky", "dazzling", "determined",
    "dreamy", "eager", "ecstatic", "elastic", "elegant",
    "epic", "festive", "focused", "friendly", "frosty",
    "gallant", "gifted", "goofy", "gracious", "happy",
    "hopeful", "hungry", "inspiring", "jolly", "jovial",
    "keen", "kind", "laughing", "loving", "lucid",
    "magical", "modest", "musing", "nifty", "nostalgic",
    "optimistic", "peaceful", "pensive", "practical", "quirky",
    "relaxed", "serene", "sharp", "silent", "sleepy",
    "stoic", "swift", "tender", "upbeat", "vibrant",
    "vigilant", "wizardly", "youthful", "zealous", "zen",
]

# Seafaring names, ships sail under them
ANIMALS = [
    "albatross", "barracuda", "beluga", "cormorant", "crab",
    "dolphin", "eel", "gannet", "grouper", "gull",
    "halibut", "heron", "jellyfish", "kingfisher", "kraken",
    "lobster", "manatee", "marlin", "narwhal", "octopus",
    "orca", "otter", "pelican", "penguin", "petrel",
    "puffin", "ray", "salmon", "seahorse", "seal",
    "shark", "shrimp", "squid", "starfish", "stingray",
    "swordfish", "tern", "tuna", "turtle", "urchin",
    "walrus", "whale",
]


def generate_ship_name() -> str:
    """
    Generate a Docker-style random ship name (adjective-animal).

    Examples:
        >>> generate_ship_name()
        'peaceful-narwhal'
        >>> '-' in generate_ship_name()
        True
    """
    return f"{random.choice(ADJECTIVES)}-{random.choice(ANIMALS)}"


def ensure_directories() -> None:
    """Create all required Keelan directories."""
    for directory in (
        KEELAN_ROOT,
        CRATES_PATH,
        SHIPS_PATH,
        LOGS_PATH,
        RUN_PATH,
        DATABASE_PATH,
    ):
        os.makedirs(directory, exist_ok=True)


def get_overlay_paths(base: str, name: str) -> Tuple[str, str, str]:
    """
    Get OverlayFS paths for a root named ``name`` under ``base``.

    Returns:
        Tuple of (upper, work, merged) paths
    """
    upper = os.path.join(base, name)
    return upper, f"{upper}_work", f"{upper}_merge"


def get_crate_archive_path(name: str, crates_path: str = CRATES_PATH) -> str:
    """Get the path of a crate's compressed artifact."""
    return os.path.join(crates_path, f"{name}.tar.gz")


def get_log_dir(name: str) -> str:
    """Get the log directory of a ship or build."""
    return os.path.join(LOGS_PATH, name)


def check_root() -> bool:
    """Check if running as root."""
    return os.geteuid() == 0


# Load libc for system calls
try:
    libc = ctypes.CDLL("libc.so.6", use_errno=True)
except OSError:
    libc = ctypes.CDLL(None, use_errno=True)
