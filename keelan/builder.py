#!/usr/bin/env python3
"""
Crate Builder for Keelan.

Builds a crate from a Keelanfile:

    1. Resolve the base image's layer chain
    2. Mount an overlay rooted at the crate name
    3. Persist the build descriptor
    4. Run the build steps inside the merged root
         execute_command   chroot into the root and run the command
         copy_files        copy from the build context into the root
    5. Compress the upper dir into <name>.tar.gz and record its digest
    6. Persist the crate and unmount

A failing step unmounts and removes everything the build created, so no
crate record or crate directory survives a failed build.
"""

import gzip
import hashlib
import logging
import os
import shutil
import sys
import tarfile
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from keelan.errors import (BuildError, BuildStepFailure, CommandFailure,
                           CrateError, KeelanError)
from keelan.executor import check_run_in_root
from keelan.filesystem import OverlayFS
from keelan.keelanfile import (ACTION_COPY, ACTION_EXECUTE, BuildStep,
                               Keelanfile, parse_keelanfile)
from keelan.layers import resolve_layers
from keelan.logger import ShipLogger, TailLog
from keelan.metadata import STATUS_RUNNING, Crate, MetadataStore
from keelan.ships import ShipManager
from keelan.utils import (CRATES_PATH, LOGS_PATH, ROOT_LAYER,
                          get_crate_archive_path)

logger = logging.getLogger(__name__)

# Package manager caches left out of crate archives
ARCHIVE_EXCLUDES = ("var/lib/apt/lists", "var/cache/apt")


def _source_date_epoch() -> int:
    try:
        return int(os.environ.get("SOURCE_DATE_EPOCH", "0"))
    except ValueError:
        return 0


def _excluded(relpath: str) -> bool:
    return any(relpath.startswith(prefix + "/") for prefix in ARCHIVE_EXCLUDES)


def _archive_members(source_dir: str) -> List[str]:
    """Relative paths under ``source_dir`` in a stable order."""
    members = []
    for dirpath, dirnames, filenames in os.walk(source_dir):
        dirnames.sort()
        rel_dir = os.path.relpath(dirpath, source_dir)
        for entry in dirnames + sorted(filenames):
            rel = entry if rel_dir == "." else os.path.join(rel_dir, entry)
            if not _excluded(rel):
                members.append(rel)
    return members


def compress_crate(source_dir: str, archive_path: str) -> None:
    """
    Compress ``source_dir`` into a gzip'd tarball.

    The archive only depends on file contents, modes and ownership: entries
    are sorted, owner names cleared, mtimes clamped to SOURCE_DATE_EPOCH and
    the gzip header carries no timestamp or file name.
    """
    epoch = _source_date_epoch()

    def normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
        info.uname = ""
        info.gname = ""
        info.mtime = min(int(info.mtime), epoch)
        return info

    os.makedirs(os.path.dirname(os.path.abspath(archive_path)), exist_ok=True)
    with open(archive_path, "wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
                for rel in _archive_members(source_dir):
                    tar.add(
                        os.path.join(source_dir, rel),
                        arcname=rel,
                        recursive=False,
                        filter=normalize,
                    )


def file_digest(path: str) -> Tuple[str, int]:
    """
    Stream a file through sha256.

    Returns:
        Tuple of (hex digest, size in bytes)
    """
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest(), os.path.getsize(path)


class CrateBuilder:
    """
    Build crates from Keelanfiles.

    Example:
        builder = CrateBuilder(MetadataStore())
        crate = builder.build("web", open("Keelanfile.yml").read(), ".")
    """

    def __init__(
        self,
        store: MetadataStore,
        overlay: Optional[OverlayFS] = None,
        crates_path: str = CRATES_PATH,
        logs_path: str = LOGS_PATH,
        root_layer: str = ROOT_LAYER,
        runner: Callable[..., None] = check_run_in_root,
        show_tail: Optional[bool] = None,
        ships: Optional[ShipManager] = None,
    ):
        self.store = store
        self.crates_path = crates_path
        self.overlay = overlay or OverlayFS(crates_path, crates_path, root_layer)
        self.logs_path = logs_path
        self.root_layer = root_layer
        self.runner = runner
        self.show_tail = sys.stdout.isatty() if show_tail is None else show_tail
        self.ships = ships

    def build(self, name: str, content: str, context_dir: str = ".") -> Crate:
        """
        Build a crate.

        Args:
            name: Crate name; an existing crate of that name is replaced
            content: Keelanfile content
            context_dir: Directory copy_files sources are relative to

        Returns:
            The persisted crate

        Raises:
            KeelanfileError: If the Keelanfile is invalid
            LayerNotFound: If the base image chain is incomplete
            MountFailure: If the overlay cannot be mounted
            BuildStepFailure: If a step fails
        """
        if not name:
            raise BuildError("Name not specified")

        keelanfile = parse_keelanfile(content)

        if self.store.crate_exists(name):
            logger.info("Crate %s already exists, replacing it", name)
            remove_crate(
                name,
                self.store,
                self.overlay,
                crates_path=self.crates_path,
                ships=self.ships,
            )

        base_image = keelanfile.build_context.base_image
        layers = resolve_layers(base_image, self.store, self.root_layer)
        print(f"Building {name} on {' -> '.join(layers)}")

        try:
            lowerdir = self.overlay.create_and_mount(name, layers)
        except KeelanError:
            self.overlay.remove(name)
            raise

        paths = self.overlay.paths(name)
        archive_path = get_crate_archive_path(name, self.crates_path)
        descriptor = None

        build_log = ShipLogger(name, log_dir=os.path.join(self.logs_path, name))
        try:
            descriptor = self.store.save_descriptor(name, content)
            os.makedirs(
                os.path.join(
                    paths.merged, keelanfile.build_context.work_directory.lstrip("/")
                ),
                exist_ok=True,
            )
            total = len(keelanfile.build_steps)
            for index, step in enumerate(keelanfile.build_steps):
                print(f"Step {index + 1}/{total} : {step.label}")
                self._run_step(index, step, keelanfile, paths.merged, context_dir, build_log)

            compress_crate(paths.upper, archive_path)
            digest, size = file_digest(archive_path)

            duplicate = self.store.get_crate_by_digest(digest)
            if duplicate is not None:
                raise BuildError(f"Crate {duplicate.name} has identical content")

            crate = self.store.save_crate(
                name=name,
                base_image=base_image,
                layer=lowerdir,
                digest=digest,
                size_bytes=size,
                descriptor_id=descriptor.id,
            )
        except (KeelanError, OSError, tarfile.TarError, SQLAlchemyError) as e:
            print(f"Build failed: {e}", file=sys.stderr)
            self._cleanup(
                name, descriptor.id if descriptor is not None else None, archive_path
            )
            if isinstance(e, BuildStepFailure):
                raise
            raise BuildStepFailure(str(e)) from e
        finally:
            build_log.close()

        self.overlay.unmount(name)
        print(f"Successfully built {name} ({digest[:12]}, {size} bytes)")
        return crate

    def _run_step(
        self,
        index: int,
        step: BuildStep,
        keelanfile: Keelanfile,
        root: str,
        context_dir: str,
        build_log: ShipLogger,
    ) -> None:
        """Run a single build step."""
        handlers = {
            ACTION_EXECUTE: self._execute_command,
            ACTION_COPY: self._copy_files,
        }

        handler = handlers.get(step.action)
        if handler is None:
            raise BuildStepFailure(f"Unknown build action: {step.action}", index)
        handler(index, step, keelanfile, root, context_dir, build_log)

    def _execute_command(self, index, step, keelanfile, root, context_dir, build_log):
        if not step.command:
            raise BuildStepFailure("Command not specified", index)

        command = " ".join(step.command)
        env = keelanfile.crate_config.environment_variables
        try:
            if self.show_tail:
                with TailLog() as tail:
                    self.runner(root, command, tail=tail, logger=build_log, env=env)
            else:
                self.runner(root, command, logger=build_log, env=env)
        except CommandFailure as e:
            if step.fail_on_error is False:
                logger.info(
                    "Step %d exited with code %d, continuing", index + 1, e.exit_code
                )
                return
            raise BuildStepFailure(
                f"Step {index + 1} ({step.label}) exited with code {e.exit_code}", index
            ) from e

    def _copy_files(self, index, step, keelanfile, root, context_dir, build_log):
        if not step.source:
            raise BuildStepFailure("Source not specified", index)
        if not step.destination:
            raise BuildStepFailure("Destination not specified", index)

        src_path = os.path.join(context_dir, step.source)
        dest_path = os.path.join(root, step.destination.lstrip("/"))

        if os.path.isdir(src_path):
            shutil.copytree(src_path, dest_path, dirs_exist_ok=True, symlinks=True)
        elif os.path.exists(src_path):
            if step.destination.endswith("/") or os.path.isdir(dest_path):
                dest_path = os.path.join(dest_path, os.path.basename(src_path))
            os.makedirs(os.path.dirname(dest_path), exist_ok=True)
            shutil.copy2(src_path, dest_path, follow_symlinks=False)
        else:
            raise BuildStepFailure(f"Source not found: {step.source}", index)

    def _cleanup(
        self, name: str, descriptor_id: Optional[int], archive_path: str
    ) -> None:
        logger.info("Cleaning up failed build of %s", name)
        try:
            self.overlay.remove(name)
        except KeelanError as e:
            logger.warning("Cleanup of %s incomplete: %s", name, e)
        if os.path.exists(archive_path):
            os.remove(archive_path)
        if descriptor_id is not None:
            try:
                self.store.delete_descriptor(descriptor_id)
            except SQLAlchemyError as e:
                logger.warning("Could not delete descriptor of %s: %s", name, e)


def list_crates(store: MetadataStore) -> List[Crate]:
    """List all built crates."""
    return store.list_crates()


def remove_crate(
    name: str,
    store: MetadataStore,
    overlay: Optional[OverlayFS] = None,
    force: bool = False,
    crates_path: str = CRATES_PATH,
    ships: Optional[ShipManager] = None,
) -> None:
    """
    Remove a crate: its ships, record, archive, directories and build
    descriptor (unless another crate still references it).

    Ships built from the crate are removed through ShipManager, so their
    mounts, directories and logs go with them. Running ships are stopped
    through the daemon first, which needs ``force``.

    Raises:
        CrateError: If the crate does not exist, or a ship built from it is
            running and ``force`` is not set
    """
    crate = store.get_crate(name)
    descriptor = store.get_descriptor(name)
    if crate is None and descriptor is None:
        raise CrateError(f"Crate not found: {name}")

    dependents = store.ships_for_crate(crate.id) if crate is not None else []
    running = [ship.name for ship in dependents if ship.status == STATUS_RUNNING]
    if running and not force:
        raise CrateError(
            f"Crate {name} is used by running ships: {', '.join(running)}. "
            "Stop them first or use --force"
        )

    if dependents:
        ships = ships or ShipManager(store)
        for ship in dependents:
            logger.info("Removing ship %s of crate %s", ship.name, name)
            ships.remove(ship.name, force=force)

    overlay = overlay or OverlayFS(crates_path, crates_path)
    overlay.remove(name)

    archive_path = get_crate_archive_path(name, crates_path)
    if os.path.exists(archive_path):
        os.remove(archive_path)

    descriptor_id = descriptor.id if descriptor is not None else None
    if crate is not None:
        descriptor_id = crate.descriptor_id or descriptor_id
        store.delete_crate(name)
    if descriptor_id is not None:
        store.delete_descriptor(descriptor_id)
