#!/usr/bin/env python3
"""
Ship operations for Keelan.

The CLI side of ship management. Anything that spawns or signals a ship
process goes through the daemon; this module only looks up state, builds
the control messages and cleans up after removed ships.
"""

import os
import shlex
import shutil
from typing import List, Optional

from keelan.errors import KeelanfileError, ShipError
from keelan.filesystem import OverlayFS
from keelan.keelanfile import parse_keelanfile
from keelan.logger import print_logs
from keelan.metadata import STATUS_RUNNING, Crate, MetadataStore, Ship
from keelan.protocol import (DaemonClient, DeployRequest, Response,
                             StartRequest, StopRequest)
from keelan.utils import (CRATES_PATH, LOGS_PATH, ROOT_LAYER, SHIPS_PATH,
                          generate_ship_name)


class ShipManager:
    """
    Ship manager.

    Example:
        ships = ShipManager(MetadataStore())
        reply = ships.deploy("web", name="web-1")
        ships.stop("web-1")
        ships.remove("web-1")
    """

    def __init__(
        self,
        store: MetadataStore,
        client: Optional[DaemonClient] = None,
        overlay: Optional[OverlayFS] = None,
        logs_path: str = LOGS_PATH,
    ):
        self.store = store
        self.client = client or DaemonClient()
        self.overlay = overlay or OverlayFS(SHIPS_PATH, CRATES_PATH, ROOT_LAYER)
        self.logs_path = logs_path

    def _log_dir(self, name: str) -> str:
        return os.path.join(self.logs_path, name)

    def _get(self, name: str) -> Ship:
        ship = self.store.get_ship(name)
        if ship is None:
            raise ShipError(f"Ship not found: {name}")
        return ship

    def _send(self, request) -> Response:
        reply = self.client.send(request)
        if not reply.ok:
            raise ShipError(reply.message or "Daemon reported an error")
        return reply

    def runtime_command(self, crate: Crate) -> str:
        """The command line a ship of ``crate`` runs."""
        descriptor = (
            self.store.get_descriptor_by_id(crate.descriptor_id)
            if crate.descriptor_id is not None
            else None
        )
        if descriptor is None:
            raise ShipError(f"Build descriptor of crate {crate.name} is missing")
        try:
            runtime = parse_keelanfile(descriptor.content).runtime
        except KeelanfileError as e:
            raise ShipError(f"Crate {crate.name} has an invalid Keelanfile: {e}") from e
        if not runtime:
            raise ShipError(
                f"Crate {crate.name} defines no runtime_command or runtime_entrypoint"
            )
        return shlex.join(runtime)

    def _unique_name(self) -> str:
        while True:
            name = generate_ship_name()
            if self.store.get_ship(name) is None:
                return name

    def deploy(
        self,
        crate_name: str,
        name: Optional[str] = None,
        command: Optional[str] = None,
    ) -> Response:
        """
        Deploy a new ship from a crate.

        Args:
            crate_name: Crate to run
            name: Ship name (generated if not given)
            command: Override the crate's runtime command

        Returns:
            The daemon reply, carrying the PID
        """
        crate = self.store.get_crate(crate_name)
        if crate is None:
            raise ShipError(f"Crate not found: {crate_name}")

        name = name or self._unique_name()
        if self.store.get_ship(name) is not None:
            raise ShipError(f"Ship already exists: {name}")

        return self._send(
            DeployRequest(
                ship_id=name,
                command=command or self.runtime_command(crate),
                log_dir=self._log_dir(name),
                image_id=crate.id,
            )
        )

    def start(self, name: str) -> Response:
        ship = self._get(name)
        crate = self.store.get_crate_by_id(ship.image_id)
        if crate is None:
            raise ShipError(f"Crate of ship {name} no longer exists")

        return self._send(
            StartRequest(
                ship_name=name,
                command=self.runtime_command(crate),
                log_dir=self._log_dir(name),
                image_id=crate.id,
            )
        )

    def stop(self, name: str, force: bool = False) -> Response:
        return self._send(StopRequest(ship_name=name, force=force))

    def restart(self, name: str) -> Response:
        self._get(name)
        self.stop(name, force=True)
        return self.start(name)

    def remove(self, name: str, force: bool = False) -> None:
        """
        Remove a ship, its overlay directories and its logs.

        Args:
            name: Ship name
            force: Stop the ship first if it is running
        """
        ship = self._get(name)
        if ship.status == STATUS_RUNNING:
            if not force:
                raise ShipError(
                    f"Ship {name} is running. Stop it first or use --force"
                )
            self.stop(name, force=True)

        self.overlay.remove(name)
        shutil.rmtree(self._log_dir(name), ignore_errors=True)
        self.store.delete_ship(name)

    def list(self, all_ships: bool = True) -> List[Ship]:
        if all_ships:
            return self.store.list_ships()
        return self.store.list_running()

    def logs(
        self,
        name: str,
        stream: str = "out",
        follow: bool = False,
        tail: Optional[int] = None,
    ) -> None:
        self._get(name)
        print_logs(name, stream, follow=follow, tail=tail, log_dir=self._log_dir(name))
