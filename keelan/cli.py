#!/usr/bin/env python3
"""
Command Line Interface for Keelan.

    keelan build -n <name> [-w DIR] [-f FILE]   - Build a crate from a Keelanfile
    keelan ship deploy <crate> [--name NAME]    - Deploy a new ship
    keelan ship start|stop|restart <ship>       - Manage a ship
    keelan ship remove <ship> [--force]         - Remove a ship
    keelan ship list [--all]                    - List ships
    keelan ship logs <ship> [-f] [--tail N]     - Fetch ship logs
    keelan crate list                           - List crates
    keelan crate remove <crate> [--force]       - Remove a crate
    keelan daemon start|stop|status|restart     - Manage the daemon
    keelan daemon run                           - Run the daemon in the foreground
    keelan init                                 - Write a Keelanfile template
    keelan version                              - Version information
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from keelan import __version__


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser with all commands and options."""
    parser = argparse.ArgumentParser(
        prog="keelan",
        description="Keelan: build crates, sail ships",
    )

    parser.add_argument(
        "--version", "-v", action="version", version=f"Keelan {__version__}"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # =========================================================================
    # build command
    # =========================================================================
    build_parser = subparsers.add_parser("build", help="Build a crate")
    build_parser.add_argument("--name", "-n", required=True, help="Crate name")
    build_parser.add_argument(
        "--working-directory",
        "-w",
        default=".",
        help="Build context directory",
    )
    build_parser.add_argument(
        "--file", "-f", help="Keelanfile path (default: found in the context)"
    )

    # =========================================================================
    # ship commands
    # =========================================================================
    ship_parser = subparsers.add_parser("ship", help="Ship management")
    ship_subparsers = ship_parser.add_subparsers(dest="ship_command")

    ship_deploy = ship_subparsers.add_parser("deploy", help="Deploy a new ship")
    ship_deploy.add_argument("crate", help="Crate to run")
    ship_deploy.add_argument("--name", "-n", help="Ship name")
    ship_deploy.add_argument("--command", "-c", help="Override the runtime command")

    ship_start = ship_subparsers.add_parser("start", help="Start a stopped ship")
    ship_start.add_argument("name", help="Ship name")

    ship_stop = ship_subparsers.add_parser("stop", help="Stop a ship")
    ship_stop.add_argument("name", help="Ship name")
    ship_stop.add_argument(
        "--force", "-f", action="store_true", help="Kill if it ignores SIGTERM"
    )

    ship_restart = ship_subparsers.add_parser("restart", help="Restart a ship")
    ship_restart.add_argument("name", help="Ship name")

    ship_remove = ship_subparsers.add_parser("remove", help="Remove a ship")
    ship_remove.add_argument("name", nargs="+", help="Ship name(s)")
    ship_remove.add_argument(
        "--force", "-f", action="store_true", help="Stop running ships first"
    )

    ship_list = ship_subparsers.add_parser("list", help="List ships")
    ship_list.add_argument(
        "--all", "-a", action="store_true", help="Show all ships (default: running)"
    )
    ship_list.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format",
    )

    ship_logs = ship_subparsers.add_parser("logs", help="Fetch ship logs")
    ship_logs.add_argument("name", help="Ship name")
    ship_logs.add_argument(
        "--follow", "-f", action="store_true", help="Follow log output"
    )
    ship_logs.add_argument("--tail", type=int, help="Number of lines from end")
    ship_logs.add_argument(
        "--stderr", action="store_true", help="Show err.log instead of out.log"
    )

    # =========================================================================
    # crate commands
    # =========================================================================
    crate_parser = subparsers.add_parser("crate", help="Crate management")
    crate_subparsers = crate_parser.add_subparsers(dest="crate_command")

    crate_list = crate_subparsers.add_parser("list", help="List crates")
    crate_list.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format",
    )

    crate_remove = crate_subparsers.add_parser("remove", help="Remove a crate")
    crate_remove.add_argument("name", nargs="+", help="Crate name(s)")
    crate_remove.add_argument(
        "--force", "-f", action="store_true", help="Remove even if ships use it"
    )

    # =========================================================================
    # daemon commands
    # =========================================================================
    daemon_parser = subparsers.add_parser("daemon", help="Daemon management")
    daemon_subparsers = daemon_parser.add_subparsers(dest="daemon_command")
    daemon_subparsers.add_parser("start", help="Start the daemon in the background")
    daemon_subparsers.add_parser("stop", help="Stop the daemon")
    daemon_subparsers.add_parser("status", help="Show daemon status")
    daemon_subparsers.add_parser("restart", help="Restart the daemon")
    daemon_subparsers.add_parser("run", help="Run the daemon in the foreground")

    # =========================================================================
    # init / version
    # =========================================================================
    init_parser = subparsers.add_parser("init", help="Create a Keelanfile.yml")
    init_parser.add_argument(
        "--force", "-f", action="store_true", help="Overwrite an existing file"
    )

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.add_argument(
        "--format", choices=["text", "json"], default="text", help="Output format"
    )

    return parser


def _store():
    from keelan.metadata import MetadataStore
    from keelan.utils import ensure_directories

    ensure_directories()
    return MetadataStore()


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def cmd_build(args: argparse.Namespace) -> int:
    """Handle build command."""
    from keelan.builder import CrateBuilder
    from keelan.errors import KeelanfileError
    from keelan.keelanfile import find_keelanfile
    from keelan.utils import check_root

    if not check_root():
        print("Error: building a crate requires root privileges", file=sys.stderr)
        return 1

    context_dir = os.path.abspath(args.working_directory)
    path = args.file or find_keelanfile(context_dir)
    if not path or not os.path.exists(path):
        raise KeelanfileError(
            f"No Keelanfile found in {context_dir}. "
            "Run 'keelan init' to create one."
        )

    with open(path, "r") as f:
        content = f.read()

    builder = CrateBuilder(_store())
    builder.build(args.name, content, context_dir)
    return 0


def cmd_ship(args: argparse.Namespace) -> int:
    """Handle ship commands."""
    from keelan.ships import ShipManager

    ships = ShipManager(_store())
    sub = args.ship_command

    if sub == "deploy":
        reply = ships.deploy(args.crate, name=args.name, command=args.command)
        print(f"{reply.message} (PID {reply.pid})")

    elif sub == "start":
        reply = ships.start(args.name)
        print(f"{reply.message} (PID {reply.pid})")

    elif sub == "stop":
        print(ships.stop(args.name, force=args.force).message)

    elif sub == "restart":
        reply = ships.restart(args.name)
        print(f"Ship {args.name} restarted (PID {reply.pid})")

    elif sub == "remove":
        for name in args.name:
            ships.remove(name, force=args.force)
            print(f"Removed: {name}")

    elif sub == "list":
        rows = ships.list(all_ships=args.all)
        if args.format == "json":
            data = [
                {
                    "name": s.name,
                    "image_id": s.image_id,
                    "status": s.status,
                    "pid": s.process_id,
                    "exit_code": s.exit_code,
                    "started_at": s.started_at,
                    "stopped_at": s.stopped_at,
                }
                for s in rows
            ]
            print(json.dumps(data, indent=2, default=str))
        else:
            print(f"{'NAME':<28} {'STATUS':<10} {'PID':<8} {'EXIT':<6} {'STARTED'}")
            for s in rows:
                pid = s.process_id or "-"
                exit_code = "-" if s.exit_code is None else s.exit_code
                print(
                    f"{s.name[:28]:<28} {s.status:<10} {pid!s:<8} {exit_code!s:<6} "
                    f"{_format_time(s.started_at)}"
                )

    elif sub == "logs":
        stream = "err" if args.stderr else "out"
        ships.logs(args.name, stream=stream, follow=args.follow, tail=args.tail)

    else:
        print("Usage: keelan ship {deploy|start|stop|restart|remove|list|logs}")
        return 1

    return 0


def cmd_crate(args: argparse.Namespace) -> int:
    """Handle crate commands."""
    from keelan.builder import list_crates, remove_crate

    store = _store()
    sub = args.crate_command

    if sub == "list":
        crates = list_crates(store)
        if args.format == "json":
            data = [
                {
                    "name": c.name,
                    "tag": c.tag,
                    "base_image": c.base_image,
                    "digest": c.digest,
                    "size_bytes": c.size_bytes,
                    "created_at": c.created_at,
                }
                for c in crates
            ]
            print(json.dumps(data, indent=2, default=str))
        else:
            print(
                f"{'NAME':<24} {'TAG':<10} {'BASE':<16} {'DIGEST':<14} "
                f"{'SIZE':<10} {'CREATED'}"
            )
            for c in crates:
                print(
                    f"{c.name[:24]:<24} {c.tag:<10} {c.base_image[:16]:<16} "
                    f"{c.digest[:12]:<14} {_format_size(c.size_bytes):<10} "
                    f"{_format_time(c.created_at)}"
                )

    elif sub == "remove":
        exit_code = 0
        for name in args.name:
            try:
                remove_crate(name, store, force=args.force)
                print(f"Removed: {name}")
            except Exception as e:
                print(f"Error removing {name}: {e}", file=sys.stderr)
                exit_code = 1
        return exit_code

    else:
        print("Usage: keelan crate {list|remove}")
        return 1

    return 0


def cmd_daemon(args: argparse.Namespace) -> int:
    """Handle daemon commands."""
    from keelan.daemon import DaemonManager

    manager = DaemonManager()
    sub = args.daemon_command

    if sub == "status":
        status = manager.status()
        if status["running"]:
            print(f"Daemon is running (PID {status['pid']}) on "
                  f"{status['host']}:{status['port']}")
        else:
            print("Daemon is not running")
        print(f"Log file: {status['log_file']}")
        return 0

    actions = {
        "start": manager.start,
        "stop": manager.stop,
        "restart": manager.restart,
        "run": lambda: manager.start(foreground=True),
    }
    action = actions.get(sub)
    if action is None:
        print("Usage: keelan daemon {start|stop|status|restart|run}")
        return 1

    result = action()
    stream = sys.stdout if result["success"] else sys.stderr
    print(result["message"], file=stream)
    return 0 if result["success"] else 1


def cmd_init(args: argparse.Namespace) -> int:
    """Handle init command."""
    from keelan.keelanfile import KEELANFILE_TEMPLATE

    path = "Keelanfile.yml"
    if os.path.exists(path) and not args.force:
        print(f"Error: {path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1

    with open(path, "w") as f:
        f.write(KEELANFILE_TEMPLATE)
    print(f"Created {path}")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Handle version command."""
    import platform

    from keelan.utils import DAEMON_HOST, DAEMON_PORT, KEELAN_ROOT

    version_info = {
        "Keelan": __version__,
        "Python": platform.python_version(),
        "Kernel": platform.release(),
        "Root": KEELAN_ROOT,
        "Daemon": f"{DAEMON_HOST}:{DAEMON_PORT}",
    }

    if args.format == "json":
        print(json.dumps(version_info, indent=2))
    else:
        print(f"Keelan version {__version__}")
        print(f"Python version {platform.python_version()}")
        print(f"Kernel {platform.release()}")
        print(f"Root directory {KEELAN_ROOT}")

    return 0


# =============================================================================
# Main Entry Point
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )

    handlers = {
        "build": cmd_build,
        "ship": cmd_ship,
        "crate": cmd_crate,
        "daemon": cmd_daemon,
        "init": cmd_init,
        "version": cmd_version,
    }

    handler = handlers.get(args.command)
    if handler:
        try:
            return handler(args)
        except KeyboardInterrupt:
            print("\nInterrupted")
            return 130
        except Exception as e:
            if getattr(args, "debug", False):
                raise
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
