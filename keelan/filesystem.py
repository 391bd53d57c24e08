#!/usr/bin/env python3
"""
OverlayFS management for Keelan.

Every crate build and every ship gets its own overlay root:

    lowerdir → resolved layer chain, closest first (read-only)
    upper/   → <base>/<name>          writable layer, becomes the crate
    work/    → <base>/<name>_work     OverlayFS internal
    merged/  → <base>/<name>_merge    unified view the workload is chrooted into

Inside the merged root the host's /proc, /dev and /sys are bind mounted and
a fresh devpts is mounted on /dev/pts. Teardown unbinds those first, since
the overlay cannot be unmounted while they are still attached.

Mount state is never recorded anywhere: whether a merge path is mounted is
probed on every call, which makes mount and unmount idempotent.

System Calls Used:
- mount(2): overlay, bind and devpts mounts
- umount2(2): teardown
"""

import ctypes
import logging
import os
import shutil
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from keelan.errors import FilesystemError, MountFailure, UnmountFailure
from keelan.layers import layer_path
from keelan.utils import (CRATES_PATH, ROOT_LAYER, ROOTFS_PATH,
                          get_overlay_paths, libc)

logger = logging.getLogger(__name__)

# Mount flags from <sys/mount.h>
MS_NOSUID = 2
MS_NOEXEC = 8
MS_BIND = 4096
MS_REC = 16384

# Unmount flags
MNT_DETACH = 2

# Host filesystems bound into every merged root, in mount order
BIND_MOUNTS = ("proc", "dev", "sys")

# Unmount order for the virtual filesystems
UNBIND_ORDER = ("dev/pts", "proc", "dev", "sys")


def mount(
    source: str,
    target: str,
    fstype: Optional[str] = None,
    flags: int = 0,
    options: Optional[str] = None,
) -> int:
    """
    Mount a filesystem.

    This is a wrapper around the mount(2) system call.

    Raises:
        FilesystemError: If mount fails
    """
    source_bytes = source.encode("utf-8") if source else None
    target_bytes = target.encode("utf-8")
    fstype_bytes = fstype.encode("utf-8") if fstype else None
    options_bytes = options.encode("utf-8") if options else None

    ret = libc.mount(source_bytes, target_bytes, fstype_bytes, flags, options_bytes)

    if ret != 0:
        errno = ctypes.get_errno()
        raise FilesystemError(
            f"mount({source} -> {target}, {fstype}) failed: {os.strerror(errno)}"
        )
    return ret


def umount(target: str, flags: int = 0) -> int:
    """
    Unmount a filesystem.

    Raises:
        FilesystemError: If unmount fails
    """
    ret = libc.umount2(target.encode("utf-8"), flags)

    if ret != 0:
        errno = ctypes.get_errno()
        raise FilesystemError(f"umount({target}) failed: {os.strerror(errno)}")
    return ret


def is_mountpoint(path: str) -> bool:
    """Check whether ``path`` is currently a mount point."""
    return os.path.ismount(path)


@dataclass(frozen=True)
class OverlayPaths:
    """The directory triple of one overlay root."""

    upper: str
    work: str
    merged: str


class OverlayFS:
    """
    Overlay root manager.

    Example:
        overlay = OverlayFS(CRATES_PATH)
        lowerdir = overlay.create_and_mount("web", ["python", "root"])
        ...
        overlay.unmount("web")
        overlay.remove("web")
    """

    def __init__(
        self,
        base_path: str = CRATES_PATH,
        crates_path: str = CRATES_PATH,
        root_layer: str = ROOT_LAYER,
        rootfs_path: str = ROOTFS_PATH,
    ):
        self.base_path = base_path
        self.crates_path = crates_path
        self.root_layer = root_layer
        self.rootfs_path = rootfs_path
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, root_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(root_name, threading.Lock())

    def paths(self, root_name: str) -> OverlayPaths:
        return OverlayPaths(*get_overlay_paths(self.base_path, root_name))

    def lowerdir(self, layers: List[str]) -> str:
        """Join the on-disk paths of ``layers``, keeping resolver order."""
        return ":".join(
            layer_path(name, self.crates_path, self.root_layer, self.rootfs_path)
            for name in layers
        )

    def is_mounted(self, root_name: str) -> bool:
        return is_mountpoint(self.paths(root_name).merged)

    def create_and_mount(self, root_name: str, layers: List[str]) -> str:
        """
        Create the directory triple for ``root_name`` and mount the overlay.

        Args:
            root_name: Crate or ship name owning the root
            layers: Resolved layer chain, closest ancestor first

        Returns:
            The lowerdir string

        Raises:
            MountFailure: If the overlay or a virtual filesystem fails to mount
        """
        if not layers:
            raise MountFailure(f"No layers to mount for {root_name}")

        paths = self.paths(root_name)
        lowerdir = self.lowerdir(layers)

        with self._lock(root_name):
            for directory in (paths.upper, paths.work, paths.merged):
                os.makedirs(directory, exist_ok=True)

            if is_mountpoint(paths.merged):
                logger.info("%s is already mounted, skipping", paths.merged)
                return lowerdir

            options = (
                f"lowerdir={lowerdir},upperdir={paths.upper},workdir={paths.work}"
            )
            logger.debug("Mounting overlay %s (%s)", paths.merged, options)
            try:
                mount("overlay", paths.merged, "overlay", 0, options)
            except FilesystemError as e:
                raise MountFailure(str(e)) from e

            try:
                self._bind_virtual_filesystems(paths.merged)
            except FilesystemError as e:
                self._unmount_locked(paths.merged)
                raise MountFailure(str(e)) from e

        return lowerdir

    def _bind_virtual_filesystems(self, merged: str) -> None:
        for name in BIND_MOUNTS:
            target = os.path.join(merged, name)
            os.makedirs(target, exist_ok=True)
            mount(f"/{name}", target, None, MS_BIND | MS_REC)

        pts_path = os.path.join(merged, "dev", "pts")
        os.makedirs(pts_path, exist_ok=True)
        mount("devpts", pts_path, "devpts", MS_NOSUID | MS_NOEXEC)

    def unmount(self, root_name: str) -> None:
        """
        Tear down the overlay of ``root_name``; a no-op if it is not mounted.

        Raises:
            UnmountFailure: If the overlay itself refuses to unmount
        """
        merged = self.paths(root_name).merged
        with self._lock(root_name):
            self._unmount_locked(merged)

    def _unmount_locked(self, merged: str) -> None:
        if not is_mountpoint(merged):
            logger.debug("%s is not mounted, nothing to unmount", merged)
            return

        for name in UNBIND_ORDER:
            target = os.path.join(merged, name)
            if not is_mountpoint(target):
                continue
            try:
                umount(target, MNT_DETACH)
            except FilesystemError as e:
                logger.warning("Failed to unmount %s: %s", target, e)

        try:
            umount(merged)
        except FilesystemError as e:
            raise UnmountFailure(str(e)) from e

    def remove(self, root_name: str) -> None:
        """Unmount ``root_name`` and delete its upper, work and merge dirs."""
        self.unmount(root_name)
        paths = self.paths(root_name)
        for directory in (paths.upper, paths.work, paths.merged):
            shutil.rmtree(directory, ignore_errors=True)
