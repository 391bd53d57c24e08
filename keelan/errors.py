#!/usr/bin/env python3
"""
Exception hierarchy for Keelan.

    KeelanError
    ├── LayerNotFound / LayerCycle        layer resolution
    ├── FilesystemError                   mount(2), umount2(2)
    │   ├── MountFailure
    │   └── UnmountFailure
    ├── KeelanfileError                   build file parsing
    ├── BuildError
    │   └── BuildStepFailure
    ├── SpawnFailure                      process could not be started
    ├── CommandFailure                    process exited non-zero
    ├── ProtocolError                     malformed control message
    ├── DaemonUnreachable                 control socket not answering
    ├── StaleState                        PID file / mount with nothing behind it
    ├── CrateError
    └── ShipError
"""

from typing import Optional


class KeelanError(Exception):
    """Base class for all Keelan errors."""

    pass


class LayerNotFound(KeelanError):
    """A layer referenced by a chain is missing from the store."""

    def __init__(self, name: str):
        super().__init__(f"Layer not found: {name}")
        self.name = name


class LayerCycle(KeelanError):
    """A layer chain loops back on itself or never reaches the root layer."""

    pass


class FilesystemError(KeelanError):
    """Exception raised for filesystem operations."""

    pass


class MountFailure(FilesystemError):
    pass


class UnmountFailure(FilesystemError):
    pass


class KeelanfileError(KeelanError):
    """The build file is missing or does not describe a valid crate."""

    pass


class BuildError(KeelanError):
    """Exception raised during a crate build."""

    pass


class BuildStepFailure(BuildError):
    """A build step failed; the partial crate has been cleaned up."""

    def __init__(self, message: str, step_index: Optional[int] = None):
        super().__init__(message)
        self.step_index = step_index


class SpawnFailure(KeelanError):
    """The executable could not be started at all."""

    pass


class CommandFailure(KeelanError):
    """The command ran but exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int):
        super().__init__(f"Command exited with code {exit_code}: {command}")
        self.command = command
        self.exit_code = exit_code


class ProtocolError(KeelanError):
    """A control message could not be decoded."""

    pass


class DaemonUnreachable(KeelanError):
    """The daemon control socket refused or dropped the connection."""

    def __init__(self, reason: str):
        super().__init__(
            f"Failed to connect to daemon: {reason}. "
            "Make sure it is running with: keelan daemon start"
        )


class StaleState(KeelanError):
    """Recorded state has no live process or mount behind it."""

    pass


class CrateError(KeelanError):
    pass


class ShipError(KeelanError):
    pass
