#!/usr/bin/env python3
"""
Command execution inside a crate root.

Commands are tokenized with shell quoting rules, wrapped as

    chroot <root> <tokens...>

and run with stdout/stderr piped. Output is streamed line by line into a
TailLog (interactive view) and a ShipLogger (durable log files).

A command that exits non-zero is a CommandFailure; a command that cannot
be started at all is a SpawnFailure.
"""

import os
import select
import shlex
import subprocess
from typing import Dict, List, Optional, Union

from keelan.errors import CommandFailure, SpawnFailure
from keelan.logger import ShipLogger, TailLog
from keelan.utils import CRATE_PATH_ENV

Command = Union[str, List[str]]


def tokenize(command: Command) -> List[str]:
    """
    Split a command string honouring single and double quotes.

    Examples:
        >>> tokenize("sh -c 'echo hello world'")
        ['sh', '-c', 'echo hello world']
    """
    if isinstance(command, (list, tuple)):
        return list(command)
    try:
        return shlex.split(command)
    except ValueError as e:
        raise SpawnFailure(f"Cannot parse command {command!r}: {e}") from e


def chroot_command(root: str, command: Command) -> List[str]:
    """Wrap ``command`` so it runs with ``root`` as its filesystem root."""
    tokens = tokenize(command)
    if not tokens:
        raise SpawnFailure("Command not specified")
    return ["chroot", root] + tokens


def crate_environment(env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Environment for a process running inside a crate."""
    environment = dict(os.environ)
    environment["PATH"] = CRATE_PATH_ENV
    environment.update(env or {})
    return environment


def run_command(
    argv: List[str],
    tail: Optional[TailLog] = None,
    logger: Optional[ShipLogger] = None,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> int:
    """
    Run ``argv`` and stream its output.

    Returns:
        The process exit code

    Raises:
        SpawnFailure: If the executable cannot be started
    """
    if not argv:
        raise SpawnFailure("Command not specified")

    try:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            cwd=cwd,
        )
    except OSError as e:
        raise SpawnFailure(f"Failed to start {argv[0]}: {e.strerror or e}") from e

    streams = {
        process.stdout.fileno(): ("out", process.stdout),
        process.stderr.fileno(): ("err", process.stderr),
    }
    pending = {fd: b"" for fd in streams}

    def emit(stream: str, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace")
        if tail is not None:
            tail.log(line, err=stream == "err")
        if logger is not None:
            logger.write(line + "\n", stream=stream)

    try:
        while streams:
            readable, _, _ = select.select(list(streams), [], [])
            for fd in readable:
                stream, pipe = streams[fd]
                data = os.read(fd, 4096)
                if not data:
                    if pending[fd]:
                        emit(stream, pending[fd])
                    pipe.close()
                    del streams[fd]
                    continue
                *lines, pending[fd] = (pending[fd] + data).split(b"\n")
                for line in lines:
                    emit(stream, line)
    finally:
        for _, pipe in streams.values():
            pipe.close()

    return process.wait()


def run_in_root(
    root: str,
    command: Command,
    tail: Optional[TailLog] = None,
    logger: Optional[ShipLogger] = None,
    env: Optional[Dict[str, str]] = None,
) -> int:
    """
    Run ``command`` chrooted into ``root``.

    Args:
        root: Merged root filesystem path
        command: Command string or argv
        tail: Rolling view to stream output into
        logger: Log files to append output to
        env: Extra environment variables

    Returns:
        The process exit code
    """
    return run_command(
        chroot_command(root, command),
        tail=tail,
        logger=logger,
        env=crate_environment(env),
    )


def check_run_in_root(root: str, command: Command, **kwargs) -> None:
    """Like run_in_root, but raise CommandFailure on a non-zero exit."""
    exit_code = run_in_root(root, command, **kwargs)
    if exit_code != 0:
        text = command if isinstance(command, str) else shlex.join(command)
        raise CommandFailure(text, exit_code)
