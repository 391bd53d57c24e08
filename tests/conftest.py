"""Shared test fixtures for Keelan."""

import asyncio
import os
import shlex
import shutil
import sys
from typing import List

import pytest

from keelan.executor import tokenize
from keelan.filesystem import OverlayPaths
from keelan.metadata import MetadataStore

KEELANFILE = """\
build_context:
  base_image: "root"
  work_directory: "/"

build_steps:
  - action: copy_files
    source: "a.txt"
    destination: "/a.txt"

crate_config:
  environment_variables:
    GREETING: "ahoy"

runtime_command: ["sleep", "30"]
"""


class FakeOverlay:
    """
    Overlay manager that never mounts: the merged root is the upper dir
    itself, so files written "inside the root" land in the crate layer.
    """

    def __init__(self, base_path: str, root_layer: str = "root"):
        self.base_path = base_path
        self.root_layer = root_layer
        self.mounted = set()
        self.calls: List[tuple] = []

    def paths(self, root_name: str) -> OverlayPaths:
        upper = os.path.join(self.base_path, root_name)
        return OverlayPaths(upper, f"{upper}_work", upper)

    def create_and_mount(self, root_name: str, layers: List[str]) -> str:
        paths = self.paths(root_name)
        os.makedirs(paths.upper, exist_ok=True)
        os.makedirs(paths.work, exist_ok=True)
        self.calls.append(("mount", root_name, tuple(layers)))
        self.mounted.add(root_name)
        return ":".join(layers)

    def unmount(self, root_name: str) -> None:
        self.calls.append(("unmount", root_name))
        self.mounted.discard(root_name)

    def remove(self, root_name: str) -> None:
        self.unmount(root_name)
        paths = self.paths(root_name)
        shutil.rmtree(paths.upper, ignore_errors=True)
        shutil.rmtree(paths.work, ignore_errors=True)


def python_command(code: str) -> str:
    """A command line running ``code`` with this interpreter."""
    return shlex.join([sys.executable, "-c", code])


def run_unchrooted(root: str, command) -> List[str]:
    """Stand-in for chroot_command that runs on the host."""
    return tokenize(command)


async def eventually(check, timeout: float = 5.0) -> None:
    """Poll ``check`` until it returns true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not check():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def store(tmp_path):
    """A fresh metadata store in a temp directory."""
    store = MetadataStore(str(tmp_path / "database" / "keelan.db"))
    yield store
    store.close()


@pytest.fixture
def crates_path(tmp_path):
    path = tmp_path / "crates"
    path.mkdir()
    return str(path)


@pytest.fixture
def crate_overlay(crates_path):
    return FakeOverlay(crates_path)


@pytest.fixture
def ship_overlay(tmp_path):
    path = tmp_path / "ships"
    path.mkdir()
    return FakeOverlay(str(path))


@pytest.fixture
def context_dir(tmp_path):
    """A build context holding a.txt."""
    path = tmp_path / "context"
    path.mkdir()
    (path / "a.txt").write_text("hello from a\n")
    return str(path)


@pytest.fixture
def crate(store):
    """A stored crate whose runtime sleeps."""
    descriptor = store.save_descriptor("app", KEELANFILE)
    return store.save_crate("app", "root", "root", "d" * 64, 123, descriptor.id)
