"""Tests for the overlay filesystem manager.

mount(2)/umount2(2) are replaced with a recorded in-memory mount table, so
these run unprivileged.
"""

import os

import pytest

from keelan import filesystem
from keelan.errors import FilesystemError, MountFailure, UnmountFailure
from keelan.filesystem import OverlayFS


class MountTable:
    def __init__(self):
        self.mounted = set()
        self.calls = []
        self.fail_on = None

    def mount(self, source, target, fstype=None, flags=0, options=None):
        self.calls.append(("mount", source, target, fstype, options))
        if self.fail_on and target.endswith(self.fail_on):
            raise FilesystemError(f"mount({source} -> {target}) failed")
        self.mounted.add(target)
        return 0

    def umount(self, target, flags=0):
        self.calls.append(("umount", target))
        self.mounted.discard(target)
        return 0

    def is_mountpoint(self, path):
        return path in self.mounted


@pytest.fixture
def table(monkeypatch):
    table = MountTable()
    monkeypatch.setattr(filesystem, "mount", table.mount)
    monkeypatch.setattr(filesystem, "umount", table.umount)
    monkeypatch.setattr(filesystem, "is_mountpoint", table.is_mountpoint)
    return table


@pytest.fixture
def overlay(tmp_path):
    return OverlayFS(
        str(tmp_path / "ships"),
        crates_path=str(tmp_path / "crates"),
        root_layer="root",
        rootfs_path=str(tmp_path / "rootfs"),
    )


class TestCreateAndMount:
    def test_creates_directory_triple(self, table, overlay):
        overlay.create_and_mount("web", ["app", "root"])
        paths = overlay.paths("web")

        for directory in (paths.upper, paths.work, paths.merged):
            assert os.path.isdir(directory)

    def test_lowerdir_keeps_resolver_order(self, table, overlay, tmp_path):
        lowerdir = overlay.create_and_mount("web", ["app", "python", "root"])

        assert lowerdir == ":".join(
            [
                str(tmp_path / "crates" / "app"),
                str(tmp_path / "crates" / "python"),
                str(tmp_path / "rootfs"),
            ]
        )

    def test_overlay_then_virtual_filesystems(self, table, overlay):
        overlay.create_and_mount("web", ["root"])
        merged = overlay.paths("web").merged

        targets = [call[2] for call in table.calls]
        assert targets == [
            merged,
            os.path.join(merged, "proc"),
            os.path.join(merged, "dev"),
            os.path.join(merged, "sys"),
            os.path.join(merged, "dev", "pts"),
        ]
        assert table.calls[0][3] == "overlay"
        assert "upperdir=" in table.calls[0][4]
        assert table.calls[-1][3] == "devpts"

    def test_second_mount_is_noop(self, table, overlay):
        overlay.create_and_mount("web", ["root"])
        calls = len(table.calls)

        overlay.create_and_mount("web", ["root"])

        assert len(table.calls) == calls
        overlay_mounts = [c for c in table.calls if c[0] == "mount" and c[3] == "overlay"]
        assert len(overlay_mounts) == 1

    def test_empty_chain_rejected(self, table, overlay):
        with pytest.raises(MountFailure):
            overlay.create_and_mount("web", [])

    def test_bind_failure_unwinds_overlay(self, table, overlay):
        table.fail_on = "sys"

        with pytest.raises(MountFailure):
            overlay.create_and_mount("web", ["root"])
        assert not overlay.is_mounted("web")


class TestUnmount:
    def test_unmount_when_not_mounted_is_noop(self, table, overlay):
        overlay.unmount("web")

        assert table.calls == []

    def test_unmount_order(self, table, overlay):
        overlay.create_and_mount("web", ["root"])
        merged = overlay.paths("web").merged
        table.calls.clear()

        overlay.unmount("web")

        assert table.calls == [
            ("umount", os.path.join(merged, "dev/pts")),
            ("umount", os.path.join(merged, "proc")),
            ("umount", os.path.join(merged, "dev")),
            ("umount", os.path.join(merged, "sys")),
            ("umount", merged),
        ]
        assert not overlay.is_mounted("web")

    def test_stuck_bind_mount_is_not_fatal(self, table, overlay, monkeypatch):
        overlay.create_and_mount("web", ["root"])
        merged = overlay.paths("web").merged
        real_umount = table.umount

        def umount(target, flags=0):
            if target.endswith("proc"):
                raise FilesystemError("busy")
            return real_umount(target, flags)

        monkeypatch.setattr(filesystem, "umount", umount)
        overlay.unmount("web")

        assert merged not in table.mounted

    def test_overlay_unmount_failure_raises(self, table, overlay, monkeypatch):
        overlay.create_and_mount("web", ["root"])
        merged = overlay.paths("web").merged
        real_umount = table.umount

        def umount(target, flags=0):
            if target == merged:
                raise FilesystemError("busy")
            return real_umount(target, flags)

        monkeypatch.setattr(filesystem, "umount", umount)
        with pytest.raises(UnmountFailure):
            overlay.unmount("web")

    def test_remove_deletes_directories(self, table, overlay):
        overlay.create_and_mount("web", ["root"])
        paths = overlay.paths("web")

        overlay.remove("web")

        for directory in (paths.upper, paths.work, paths.merged):
            assert not os.path.exists(directory)


class TestLocks:
    def test_one_lock_per_root(self, overlay):
        assert overlay._lock("web") is overlay._lock("web")
        assert overlay._lock("web") is not overlay._lock("api")


@pytest.mark.skipif(os.geteuid() != 0, reason="Requires root")
class TestRealOverlay:
    def test_mount_and_unmount(self, tmp_path):
        rootfs = tmp_path / "rootfs"
        rootfs.mkdir()
        (rootfs / "base.txt").write_text("base")
        overlay = OverlayFS(
            str(tmp_path / "ships"),
            crates_path=str(tmp_path / "crates"),
            root_layer="root",
            rootfs_path=str(rootfs),
        )

        overlay.create_and_mount("web", ["root"])
        try:
            merged = overlay.paths("web").merged
            assert os.path.ismount(merged)
            assert (tmp_path / "ships" / "web_merge" / "base.txt").read_text() == "base"
        finally:
            overlay.remove("web")
        assert not os.path.exists(overlay.paths("web").merged)
