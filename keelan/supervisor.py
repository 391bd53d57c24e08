#!/usr/bin/env python3
"""
Ship supervision for the Keelan daemon.

Every process the daemon spawns is registered with the Supervisor, which
keeps the ships table consistent with what the OS reports:

- an exit waiter records ``stopped``, ``stopped_at`` and the exit code as
  soon as the process exits
- a periodic health probe (signal 0) catches processes that disappear
  without the daemon seeing their exit, e.g. ships adopted after a daemon
  restart

Workloads are detached (new session), so shutting the supervisor down only
cancels its tasks; the ships keep running.
"""

import asyncio
import enum
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional

from keelan.errors import SpawnFailure
from keelan.metadata import MetadataStore
from keelan.utils import MONITOR_INTERVAL

logger = logging.getLogger(__name__)

# Seconds between liveness polls while waiting for an exit
EXIT_POLL_INTERVAL = 0.1


class Liveness(enum.Enum):
    ALIVE = "alive"
    DEAD = "dead"
    DENIED = "denied"  # exists, owned by someone we may not signal

    @property
    def exists(self) -> bool:
        return self is not Liveness.DEAD


def probe(pid: Optional[int]) -> Liveness:
    """Check whether ``pid`` exists without signalling it."""
    if not pid or pid <= 0:
        return Liveness.DEAD
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return Liveness.DEAD
    except PermissionError:
        return Liveness.DENIED
    return Liveness.ALIVE


@dataclass
class SupervisedShip:
    name: str
    pid: int
    process: Optional[asyncio.subprocess.Process] = None
    waiter: Optional[asyncio.Task] = None
    health: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        current = asyncio.current_task()
        for task in (self.waiter, self.health):
            if task is not None and task is not current and not task.done():
                task.cancel()


class Supervisor:
    """
    Owns the ship name -> process mapping of a running daemon.

    Example:
        supervisor = Supervisor(store)
        pid = await supervisor.spawn("web-1", argv, log_dir)
        ...
        supervisor.shutdown()
    """

    def __init__(self, store: MetadataStore, interval: float = MONITOR_INTERVAL):
        self.store = store
        self.interval = interval
        self.ships: Dict[str, SupervisedShip] = {}

    async def spawn(
        self,
        name: str,
        argv: List[str],
        log_dir: str,
        env: Optional[Dict[str, str]] = None,
    ) -> int:
        """
        Start a detached process and supervise it.

        stdin is /dev/null; stdout and stderr are appended to
        ``log_dir/out.log`` and ``log_dir/err.log``.

        Returns:
            The process PID

        Raises:
            SpawnFailure: If the executable cannot be started
        """
        if not argv:
            raise SpawnFailure("Command not specified")

        os.makedirs(log_dir, exist_ok=True)
        out = open(os.path.join(log_dir, "out.log"), "ab")
        err = open(os.path.join(log_dir, "err.log"), "ab")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailure(f"Failed to start {argv[0]}: {e.strerror or e}") from e
        finally:
            out.close()
            err.close()

        self.attach(name, process.pid, process)
        logger.info("Supervising ship %s (PID %d)", name, process.pid)
        return process.pid

    def attach(
        self,
        name: str,
        pid: int,
        process: Optional[asyncio.subprocess.Process] = None,
    ) -> SupervisedShip:
        """Supervise ``pid``; without a process handle only the health probe runs."""
        self.detach(name)
        entry = SupervisedShip(name=name, pid=pid, process=process)
        if process is not None:
            entry.waiter = asyncio.create_task(self._wait(entry))
        entry.health = asyncio.create_task(self._health(entry))
        self.ships[name] = entry
        return entry

    def detach(self, name: str) -> None:
        entry = self.ships.pop(name, None)
        if entry is not None:
            entry.cancel()

    def is_alive(self, name: str, pid: Optional[int]) -> bool:
        """Combine the live process handle, if any, with a signal-0 probe."""
        if not pid:
            return False
        entry = self.ships.get(name)
        if (
            entry is not None
            and entry.pid == pid
            and entry.process is not None
            and entry.process.returncode is not None
        ):
            return False
        return probe(pid).exists

    async def wait_for_exit(self, name: str, pid: int, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for ``pid`` to exit."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.is_alive(name, pid):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(EXIT_POLL_INTERVAL)
        return True

    async def _wait(self, entry: SupervisedShip) -> None:
        exit_code = await entry.process.wait()
        self._stopped(entry, exit_code)

    async def _health(self, entry: SupervisedShip) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if not self.is_alive(entry.name, entry.pid):
                exit_code = entry.process.returncode if entry.process else None
                self._stopped(entry, exit_code)
                return

    def _stopped(self, entry: SupervisedShip, exit_code: Optional[int]) -> None:
        if self.store.mark_stopped(entry.name, exit_code, only_pid=entry.pid):
            logger.info(
                "Ship %s (PID %d) exited with code %s", entry.name, entry.pid, exit_code
            )
        entry.cancel()
        if self.ships.get(entry.name) is entry:
            del self.ships[entry.name]

    def shutdown(self) -> None:
        """Stop supervising without touching the workloads."""
        for entry in list(self.ships.values()):
            entry.cancel()
        self.ships.clear()
