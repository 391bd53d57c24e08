#!/usr/bin/env python3
"""
Logging for Keelan.

Provides:
- Ship/build log files at <base>/logs/<name>/{out,err}.log
- Log rotation
- TailLog: rolling terminal window of the last few output lines
- Reading and following logs for ``keelan ship logs``
- Daemon logging setup
"""

import logging
import os
import sys
import time
from collections import deque
from datetime import datetime
from typing import Deque, Generator, Optional, TextIO

from rich.console import Console
from rich.live import Live
from rich.text import Text

from keelan.utils import get_log_dir

STREAMS = ("out", "err")

# Lines kept in the rolling build view
TAIL_LINES = 5

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def get_log_path(name: str, stream: str = "out", log_dir: Optional[str] = None) -> str:
    if stream not in STREAMS:
        raise ValueError(f"Unknown log stream: {stream}")
    return os.path.join(log_dir or get_log_dir(name), f"{stream}.log")


class ShipLogger:
    """
    Logger for ship and build stdout/stderr.

    Example:
        logger = ShipLogger("web")
        logger.write("Hello from the crate\\n")
        logger.write("boom\\n", stream="err")
        logger.close()
    """

    def __init__(
        self, name: str, log_dir: Optional[str] = None, max_size_mb: int = 10
    ):
        self.name = name
        self.log_dir = log_dir or get_log_dir(name)
        self.max_size = max_size_mb * 1024 * 1024
        self._files: dict = {}
        self._closed = False

        os.makedirs(self.log_dir, exist_ok=True)

    def path(self, stream: str = "out") -> str:
        return get_log_path(self.name, stream, self.log_dir)

    def _file(self, stream: str) -> TextIO:
        f = self._files.get(stream)
        if f is None:
            f = open(self.path(stream), "a", buffering=1)  # Line buffered
            self._files[stream] = f
        return f

    def _rotate_if_needed(self, stream: str) -> None:
        """Rotate a log file if it exceeds max size."""
        path = self.path(stream)
        try:
            if os.path.getsize(path) <= self.max_size:
                return
        except OSError:
            return

        f = self._files.pop(stream, None)
        if f is not None:
            f.close()

        # Rotate: .log -> .log.1
        os.replace(path, f"{path}.1")

    def write(self, data: str, stream: str = "out", timestamp: bool = True) -> None:
        """
        Write data to a log file.

        Args:
            data: Data to write
            stream: "out" or "err"
            timestamp: Whether to prefix each line with a timestamp
        """
        if self._closed:
            return

        self._rotate_if_needed(stream)
        f = self._file(stream)

        if timestamp:
            ts = datetime.now().strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
            for line in data.split("\n"):
                if line:
                    f.write(f"{ts} {line}\n")
        else:
            f.write(data)
        f.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for f in self._files.values():
            f.close()
        self._files.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class TailLog:
    """
    Rolling terminal view of the most recent output lines.

    Older lines are evicted once ``max_lines`` is reached, so the region
    always occupies the same few rows while a build step runs.

    Example:
        with TailLog() as tail:
            tail.log("Reading package lists...")
            tail.log("E: Unable to locate package", err=True)
    """

    def __init__(self, max_lines: int = TAIL_LINES, console: Optional[Console] = None):
        self.lines: Deque[Text] = deque(maxlen=max_lines)
        self.console = console or Console()
        self._live: Optional[Live] = None

    def render(self) -> Text:
        return Text("\n").join(self.lines)

    def log(self, message: str, err: bool = False) -> None:
        for line in message.splitlines() or [""]:
            self.lines.append(Text(line, style="red" if err else "green"))
        if self._live is not None:
            self._live.update(self.render())

    def start(self) -> None:
        if self._live is None:
            self._live = Live(
                self.render(),
                console=self.console,
                refresh_per_second=8,
                transient=False,
            )
            self._live.start()

    def stop(self) -> None:
        if self._live is not None:
            self._live.update(self.render())
            self._live.stop()
            self._live = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


def read_logs(
    name: str,
    stream: str = "out",
    follow: bool = False,
    tail: Optional[int] = None,
    log_dir: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Read ship logs.

    Args:
        name: Ship or build name
        stream: "out" or "err"
        follow: If True, follow log output (like tail -f)
        tail: Number of lines to show from end
        log_dir: Override the log directory

    Yields:
        Log lines
    """
    log_path = get_log_path(name, stream, log_dir)

    if not os.path.exists(log_path):
        return

    with open(log_path, "r", errors="replace") as f:
        lines = f.readlines()

        if tail is not None and tail > 0:
            lines = lines[-tail:]

        for line in lines:
            yield line.rstrip("\n")

        # Continue from where readlines() stopped
        while follow:
            line = f.readline()
            if line:
                yield line.rstrip("\n")
            else:
                time.sleep(0.1)


def print_logs(
    name: str,
    stream: str = "out",
    follow: bool = False,
    tail: Optional[int] = None,
    log_dir: Optional[str] = None,
) -> None:
    """Print ship logs to stdout (stderr for the "err" stream)."""
    out = sys.stderr if stream == "err" else sys.stdout
    try:
        for line in read_logs(name, stream, follow=follow, tail=tail, log_dir=log_dir):
            print(line, file=out)
    except KeyboardInterrupt:
        pass


def setup_logging(
    log_file: Optional[str] = None,
    level: int = logging.INFO,
    stream: bool = True,
) -> None:
    """
    Configure the root logger for the daemon.

    Args:
        log_file: Also append records to this file
        level: Minimum level
        stream: Also write records to stderr
    """
    handlers = []
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    if stream:
        handlers.append(logging.StreamHandler(sys.stderr))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers or None,
        force=True,
    )
