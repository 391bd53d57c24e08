#!/usr/bin/env python3
"""
Keelan daemon.

A single long-running process that owns the control socket and every ship
process. Clients never spawn workloads themselves; they send a deploy,
start or stop message (see keelan.protocol) and get exactly one reply.

Lifecycle:

    stopped -> starting -> running -> stopping -> stopped

    starting   write the PID file, bind the socket, reconcile once
    running    serve connections, reconcile every MONITOR_INTERVAL seconds
    stopping   SIGINT/SIGTERM or stop(): cancel the timer, close the
               socket, stop supervising, remove the PID file

Reconciliation flips ships recorded as running whose process is gone to
``stopped``. The database is the only state; the daemon additionally keeps
the process handles of the ships it spawned itself.

Usage:
    python -m keelan.daemon [--host HOST] [--port PORT] [--interval SECONDS]
"""

import argparse
import asyncio
import enum
import logging
import os
import signal
import subprocess
import sys
import time
from typing import Any, Callable, Dict, List, Optional

from keelan.errors import (KeelanError, KeelanfileError, ProtocolError,
                           SpawnFailure, StaleState)
from keelan.executor import chroot_command, crate_environment
from keelan.filesystem import OverlayFS
from keelan.keelanfile import parse_keelanfile
from keelan.layers import resolve_layers
from keelan.logger import setup_logging
from keelan.metadata import (STATUS_ERROR, STATUS_RUNNING, Crate,
                             MetadataStore)
from keelan.protocol import (MAX_MESSAGE_SIZE, DaemonClient, DeployRequest,
                             Response, StartRequest, StopRequest,
                             parse_request)
from keelan.supervisor import Supervisor, probe
from keelan.utils import (CRATES_PATH, DAEMON_HOST, DAEMON_LOG_FILE,
                          DAEMON_PID_FILE, DAEMON_PORT, KEELAN_ROOT,
                          MONITOR_INTERVAL, REQUEST_TIMEOUT, ROOT_LAYER,
                          ROOTFS_PATH, SHIPS_PATH, STOP_GRACE_PERIOD,
                          ensure_directories)

logger = logging.getLogger(__name__)


class DaemonState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def read_pid_file(path: str) -> Optional[int]:
    """
    Read a PID file.

    Returns:
        The recorded PID, or None if there is no usable PID file

    Raises:
        StaleState: If the recorded process no longer exists
    """
    try:
        with open(path, "r") as f:
            pid = int(f.read().strip())
    except (OSError, ValueError):
        return None
    if not probe(pid).exists:
        raise StaleState(f"PID file {path} points at dead process {pid}")
    return pid


def write_pid_file(path: str, pid: int) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w") as f:
        f.write(str(pid))


def remove_pid_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class Daemon:
    """
    The Keelan daemon.

    Example:
        daemon = Daemon(MetadataStore())
        asyncio.run(daemon.serve())
    """

    def __init__(
        self,
        store: MetadataStore,
        host: str = DAEMON_HOST,
        port: int = DAEMON_PORT,
        pid_file: str = DAEMON_PID_FILE,
        interval: float = MONITOR_INTERVAL,
        stop_grace: float = STOP_GRACE_PERIOD,
        request_timeout: float = REQUEST_TIMEOUT,
        overlay: Optional[OverlayFS] = None,
        wrap_command: Callable[[str, str], List[str]] = chroot_command,
        kill: Callable[[int, int], None] = os.kill,
    ):
        self.store = store
        self.host = host
        self.port = port
        self.pid_file = pid_file
        self.interval = interval
        self.stop_grace = stop_grace
        self.request_timeout = request_timeout
        self.overlay = overlay or OverlayFS(
            SHIPS_PATH, CRATES_PATH, ROOT_LAYER, ROOTFS_PATH
        )
        self.wrap_command = wrap_command
        self.kill = kill

        self.state = DaemonState.STOPPED
        self.supervisor = Supervisor(store, interval)
        self.server: Optional[asyncio.AbstractServer] = None
        self._monitor: Optional[asyncio.Task] = None
        self._stop_requested: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Write the PID file, bind the socket and reconcile once."""
        if self.state is not DaemonState.STOPPED:
            raise KeelanError(f"Daemon is {self.state.value}")
        self.state = DaemonState.STARTING
        self._stop_requested = asyncio.Event()

        try:
            existing = read_pid_file(self.pid_file)
        except StaleState as e:
            logger.warning("%s, overwriting", e)
            existing = None
        if existing is not None and existing != os.getpid():
            self.state = DaemonState.STOPPED
            raise KeelanError(f"Daemon is already running (PID {existing})")
        write_pid_file(self.pid_file, os.getpid())

        try:
            self.server = await asyncio.start_server(
                self._handle_connection, self.host, self.port
            )
        except OSError as e:
            remove_pid_file(self.pid_file)
            self.state = DaemonState.STOPPED
            raise KeelanError(f"Cannot bind {self.host}:{self.port}: {e}") from e

        self.reconcile()
        self._monitor = asyncio.create_task(self._monitor_loop())
        self.state = DaemonState.RUNNING
        logger.info(
            "Keelan daemon started (PID %d) on %s:%d, monitoring every %ss",
            os.getpid(),
            self.host,
            self.port,
            self.interval,
        )

    async def serve(self) -> None:
        """Run until SIGINT/SIGTERM or request_stop()."""
        loop = asyncio.get_running_loop()
        await self.start()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop, signum)
        loop.set_exception_handler(self._on_loop_error)

        try:
            await self._stop_requested.wait()
        finally:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(signum)
            await self.stop()

    def request_stop(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            logger.info(
                "Received %s, shutting down gracefully", signal.Signals(signum).name
            )
        if self._stop_requested is not None:
            self._stop_requested.set()

    def _on_loop_error(self, loop, context: Dict[str, Any]) -> None:
        logger.error("Unhandled fault: %s", context.get("message"),
                     exc_info=context.get("exception"))
        self.request_stop()

    async def stop(self) -> None:
        """Cancel the timer, close the socket and remove the PID file."""
        if self.state in (DaemonState.STOPPING, DaemonState.STOPPED):
            return
        self.state = DaemonState.STOPPING

        if self._monitor is not None:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None

        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        self.supervisor.shutdown()
        remove_pid_file(self.pid_file)
        self.state = DaemonState.STOPPED
        logger.info("Keelan daemon stopped")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> List[str]:
        """
        Flip ships recorded as running whose process is gone to stopped, and
        adopt live ones this daemon is not supervising yet.

        Returns:
            Names of the ships that were marked stopped
        """
        stopped = []
        for ship in self.store.list_running():
            if self.supervisor.is_alive(ship.name, ship.process_id):
                if ship.name not in self.supervisor.ships:
                    logger.info("Adopting ship %s (PID %d)", ship.name, ship.process_id)
                    self.supervisor.attach(ship.name, ship.process_id)
                continue

            if self.store.mark_stopped(ship.name, only_pid=ship.process_id):
                logger.warning(
                    "Ship %s (PID %s) has stopped unexpectedly",
                    ship.name,
                    ship.process_id,
                )
                stopped.append(ship.name)
            self.supervisor.detach(ship.name)
        return stopped

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.reconcile()
            except Exception:
                logger.exception("Error during monitoring cycle")

    # ------------------------------------------------------------------
    # Control socket
    # ------------------------------------------------------------------

    async def _read_request(self, reader: asyncio.StreamReader) -> bytes:
        payload = b""
        while len(payload) <= MAX_MESSAGE_SIZE:
            chunk = await reader.read(65536)
            if not chunk:
                break
            payload += chunk
        return payload

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            try:
                payload = await asyncio.wait_for(
                    self._read_request(reader), self.request_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Dropping client that sent no request within %ss",
                    self.request_timeout,
                )
                return

            # Bare connect, used as a liveness check
            if not payload.strip():
                return

            response = await self.dispatch(payload)
            writer.write(response.to_bytes())
            await writer.drain()
        except ConnectionError as e:
            logger.warning("Client went away: %s", e)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def dispatch(self, payload: bytes) -> Response:
        """Decode one message and route it; always returns a reply."""
        try:
            request = parse_request(payload)
        except ProtocolError as e:
            logger.warning("Rejected message: %s", e)
            return Response.error(str(e))

        handlers = {
            DeployRequest: self.handle_deploy,
            StartRequest: self.handle_start,
            StopRequest: self.handle_stop,
        }

        try:
            return await handlers[type(request)](request)
        except KeelanError as e:
            logger.error("%s failed: %s", request.type, e)
            return Response.error(str(e))
        except Exception as e:
            logger.exception("%s failed", request.type)
            return Response.error(f"Internal error: {e}")

    def _crate_env(self, crate: Crate) -> Dict[str, str]:
        if crate.descriptor_id is None:
            return {}
        descriptor = self.store.get_descriptor_by_id(crate.descriptor_id)
        if descriptor is None:
            return {}
        try:
            keelanfile = parse_keelanfile(descriptor.content)
        except KeelanfileError as e:
            logger.warning("Ignoring environment of crate %s: %s", crate.name, e)
            return {}
        return keelanfile.crate_config.environment_variables

    def _mount(self, ship_name: str, crate: Crate) -> str:
        layers = resolve_layers(crate.name, self.store, self.overlay.root_layer)
        self.overlay.create_and_mount(ship_name, layers)
        return self.overlay.paths(ship_name).merged

    def _teardown(self, ship_name: str) -> None:
        try:
            self.overlay.unmount(ship_name)
        except KeelanError as e:
            logger.warning("Could not unmount ship %s: %s", ship_name, e)

    async def _launch(self, ship_name: str, crate: Crate, command: str, log_dir: str) -> int:
        root = self._mount(ship_name, crate)
        argv = self.wrap_command(root, command)
        env = crate_environment(self._crate_env(crate))
        logger.info("Executing for %s: %s", ship_name, " ".join(argv))
        return await self.supervisor.spawn(ship_name, argv, log_dir, env)

    async def handle_deploy(self, request: DeployRequest) -> Response:
        name = request.ship_id
        logger.info("Deploying ship %s with command: %s", name, request.command)

        if self.store.get_ship(name) is not None:
            return Response.error(f"Ship already exists: {name}")
        crate = self.store.get_crate_by_id(request.image_id)
        if crate is None:
            return Response.error(f"Crate not found: {request.image_id}")

        try:
            pid = await self._launch(name, crate, request.command, request.log_dir)
        except SpawnFailure as e:
            self.store.create_ship(name, crate.id, None, status=STATUS_ERROR)
            self._teardown(name)
            return Response.error(str(e))

        self.store.create_ship(name, crate.id, pid)
        logger.info("Ship %s deployed with PID %d", name, pid)
        return Response.success(f"Ship {name} deployed", pid=pid)

    async def handle_start(self, request: StartRequest) -> Response:
        name = request.ship_name
        logger.info("Starting ship %s with command: %s", name, request.command)

        ship = self.store.get_ship(name)
        if ship is None:
            return Response.error(f"Ship not found: {name}")
        if ship.status == STATUS_RUNNING and self.supervisor.is_alive(
            name, ship.process_id
        ):
            return Response.error(
                f"Ship {name} is already running (PID {ship.process_id})"
            )
        crate = self.store.get_crate_by_id(request.image_id)
        if crate is None:
            return Response.error(f"Crate not found: {request.image_id}")

        try:
            pid = await self._launch(name, crate, request.command, request.log_dir)
        except SpawnFailure as e:
            self.store.mark_error(name)
            self._teardown(name)
            return Response.error(str(e))

        self.store.mark_running(name, pid, image_id=crate.id)
        logger.info("Ship %s started with PID %d", name, pid)
        return Response.success(f"Ship {name} started", pid=pid)

    async def handle_stop(self, request: StopRequest) -> Response:
        name = request.ship_name
        logger.info("Stopping ship %s", name)

        ship = self.store.get_ship(name)
        if ship is None:
            return Response.error(f"Ship not found: {name}")

        pid = ship.process_id
        if ship.status != STATUS_RUNNING or not self.supervisor.is_alive(name, pid):
            self.store.mark_stopped(name)
            self.supervisor.detach(name)
            self._teardown(name)
            return Response.success(f"Ship {name} was already stopped")

        try:
            logger.info("Sending SIGTERM to PID %d", pid)
            self.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        else:
            if not await self.supervisor.wait_for_exit(name, pid, self.stop_grace):
                if not request.force:
                    logger.warning("Ship %s did not stop gracefully", name)
                    return Response.error(
                        "Ship did not stop gracefully. Use --force to kill it."
                    )
                logger.warning("Force killing ship %s with SIGKILL", name)
                try:
                    self.kill(pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                await self.supervisor.wait_for_exit(name, pid, self.stop_grace)

        self.store.mark_stopped(name, only_pid=pid)
        self.supervisor.detach(name)
        self._teardown(name)
        logger.info("Ship %s stopped", name)
        return Response.success(f"Ship {name} stopped successfully")


class DaemonManager:
    """
    Client-side lifecycle management for the daemon process.

    Example:
        manager = DaemonManager()
        print(manager.start()["message"])
    """

    def __init__(
        self,
        host: str = DAEMON_HOST,
        port: int = DAEMON_PORT,
        pid_file: str = DAEMON_PID_FILE,
        log_file: str = DAEMON_LOG_FILE,
    ):
        self.host = host
        self.port = port
        self.pid_file = pid_file
        self.log_file = log_file
        self.client = DaemonClient(host, port)

    def _read_pid(self) -> Optional[int]:
        try:
            return read_pid_file(self.pid_file)
        except StaleState as e:
            logger.info("Removing stale PID file: %s", e)
            remove_pid_file(self.pid_file)
            return None

    def start(self, foreground: bool = False) -> Dict[str, Any]:
        """
        Start the daemon.

        Args:
            foreground: Run in this process (blocking) instead of detaching
        """
        pid = self._read_pid()
        if pid is not None or self.client.is_running():
            return {
                "success": False,
                "message": f"Daemon is already running on port {self.port}",
                "pid": pid,
            }

        if foreground:
            return self._run_foreground()
        return self._run_background()

    def _run_foreground(self) -> Dict[str, Any]:
        ensure_directories()
        setup_logging(self.log_file)
        store = MetadataStore()
        daemon = Daemon(store, self.host, self.port, self.pid_file)
        try:
            asyncio.run(daemon.serve())
        finally:
            store.close()
        return {"success": True, "message": "Daemon stopped", "pid": None}

    def _run_background(self) -> Dict[str, Any]:
        cmd = [
            sys.executable,
            "-m", "keelan.daemon",
            "--host", self.host,
            "--port", str(self.port),
        ]

        os.makedirs(os.path.dirname(os.path.abspath(self.log_file)), exist_ok=True)
        with open(self.log_file, "a") as log:
            process = subprocess.Popen(
                cmd,
                stdout=log,
                stderr=log,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
                cwd=KEELAN_ROOT if os.path.isdir(KEELAN_ROOT) else "/",
            )

        # Wait for the socket to come up
        for _ in range(30):
            if self.client.is_running():
                return {
                    "success": True,
                    "message": f"Daemon started on port {self.port}",
                    "pid": process.pid,
                }
            if process.poll() is not None:
                break
            time.sleep(0.1)

        return {
            "success": False,
            "message": f"Daemon failed to start. Check {self.log_file}",
            "pid": None,
        }

    def stop(self) -> Dict[str, Any]:
        """Stop the daemon: SIGTERM, then SIGKILL after 3 seconds."""
        pid = self._read_pid()
        if pid is None:
            return {"success": False, "message": "Daemon is not running"}

        os.kill(pid, signal.SIGTERM)
        for _ in range(30):
            if not probe(pid).exists:
                remove_pid_file(self.pid_file)
                return {"success": True, "message": "Daemon stopped gracefully"}
            time.sleep(0.1)

        os.kill(pid, signal.SIGKILL)
        remove_pid_file(self.pid_file)
        return {"success": True, "message": "Daemon force killed (SIGKILL)"}

    def status(self) -> Dict[str, Any]:
        pid = self._read_pid()
        return {
            "running": pid is not None and self.client.is_running(),
            "pid": pid,
            "host": self.host,
            "port": self.port,
            "pid_file": self.pid_file,
            "log_file": self.log_file,
        }

    def restart(self) -> Dict[str, Any]:
        result = self.stop()
        if not result["success"] and "not running" not in result["message"]:
            return result
        time.sleep(0.5)
        return self.start(foreground=False)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keelan-daemon", description="Keelan ship daemon"
    )
    parser.add_argument("--host", default=DAEMON_HOST, help="Control socket host")
    parser.add_argument(
        "--port", type=int, default=DAEMON_PORT, help="Control socket port"
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=MONITOR_INTERVAL,
        help="Seconds between reconciliation passes",
    )
    parser.add_argument("--pid-file", default=DAEMON_PID_FILE, help="PID file path")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the daemon in the foreground."""
    args = create_parser().parse_args(argv)

    ensure_directories()
    # stdout/stderr already go to the daemon log when detached
    setup_logging(level=logging.DEBUG if args.debug else logging.INFO)

    store = MetadataStore()
    daemon = Daemon(
        store,
        host=args.host,
        port=args.port,
        pid_file=args.pid_file,
        interval=args.interval,
    )
    try:
        asyncio.run(daemon.serve())
    except KeelanError as e:
        logger.error("%s", e)
        return 1
    except Exception:
        logger.exception("Daemon crashed")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
