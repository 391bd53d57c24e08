"""Tests for the client side of ship management."""

import pytest

from keelan.errors import DaemonUnreachable, ShipError
from keelan.metadata import STATUS_RUNNING, STATUS_STOPPED
from keelan.protocol import (DaemonClient, DeployRequest, Response,
                             StartRequest, StopRequest)
from keelan.ships import ShipManager

from tests.test_protocol import free_port


class RecordingClient:
    def __init__(self, reply=None):
        self.reply = reply or Response.success(pid=4242)
        self.requests = []

    def send(self, request):
        self.requests.append(request)
        return self.reply


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
def ships(store, client, ship_overlay, tmp_path):
    return ShipManager(
        store, client=client, overlay=ship_overlay, logs_path=str(tmp_path / "logs")
    )


class TestDeploy:
    def test_sends_runtime_command(self, ships, client, crate, tmp_path):
        reply = ships.deploy("app", name="calm-orca")

        assert reply.pid == 4242
        assert client.requests == [
            DeployRequest(
                "calm-orca", "sleep 30", str(tmp_path / "logs" / "calm-orca"), crate.id
            )
        ]

    def test_generated_name(self, ships, client, crate):
        ships.deploy("app")

        assert "-" in client.requests[0].ship_id

    def test_command_override(self, ships, client, crate):
        ships.deploy("app", name="calm-orca", command="python3 -m http.server")

        assert client.requests[0].command == "python3 -m http.server"

    def test_unknown_crate(self, ships, client):
        with pytest.raises(ShipError):
            ships.deploy("ghost")
        assert client.requests == []

    def test_existing_name(self, ships, store, client, crate):
        store.create_ship("calm-orca", crate.id, None, status=STATUS_STOPPED)

        with pytest.raises(ShipError):
            ships.deploy("app", name="calm-orca")
        assert client.requests == []

    def test_crate_without_runtime(self, ships, store):
        content = """\
build_context: {base_image: root, work_directory: /}
build_steps: [{action: execute_command, command: ["true"]}]
"""
        descriptor = store.save_descriptor("bare", content)
        store.save_crate("bare", "root", "root", "b" * 64, 1, descriptor.id)

        with pytest.raises(ShipError) as exc_info:
            ships.deploy("bare")
        assert "runtime" in str(exc_info.value)

    def test_daemon_error_is_raised(self, ships, client, crate):
        client.reply = Response.error("Crate not found: 1")

        with pytest.raises(ShipError) as exc_info:
            ships.deploy("app", name="calm-orca")
        assert "Crate not found" in str(exc_info.value)

    def test_daemon_down(self, store, crate, ship_overlay, tmp_path):
        ships = ShipManager(
            store,
            client=DaemonClient(port=free_port(), timeout=1),
            overlay=ship_overlay,
            logs_path=str(tmp_path / "logs"),
        )

        with pytest.raises(DaemonUnreachable):
            ships.deploy("app", name="calm-orca")


class TestLifecycle:
    def test_start(self, ships, store, client, crate):
        store.create_ship("calm-orca", crate.id, None, status=STATUS_STOPPED)

        ships.start("calm-orca")

        assert isinstance(client.requests[0], StartRequest)
        assert client.requests[0].command == "sleep 30"
        assert client.requests[0].image_id == crate.id

    def test_start_unknown(self, ships):
        with pytest.raises(ShipError):
            ships.start("ghost")

    def test_stop(self, ships, client):
        ships.stop("calm-orca", force=True)

        assert client.requests == [StopRequest("calm-orca", force=True)]

    def test_restart(self, ships, store, client, crate):
        store.create_ship("calm-orca", crate.id, 100)

        ships.restart("calm-orca")

        assert client.requests[0] == StopRequest("calm-orca", force=True)
        assert isinstance(client.requests[1], StartRequest)


class TestRemove:
    def test_remove_stopped(self, ships, store, crate, ship_overlay, tmp_path):
        store.create_ship("calm-orca", crate.id, None, status=STATUS_STOPPED)
        log_dir = tmp_path / "logs" / "calm-orca"
        log_dir.mkdir(parents=True)
        (log_dir / "out.log").write_text("bye\n")

        ships.remove("calm-orca")

        assert store.get_ship("calm-orca") is None
        assert not log_dir.exists()
        assert ("unmount", "calm-orca") in ship_overlay.calls

    def test_running_needs_force(self, ships, store, client, crate):
        store.create_ship("calm-orca", crate.id, 100)

        with pytest.raises(ShipError):
            ships.remove("calm-orca")
        assert store.get_ship("calm-orca").status == STATUS_RUNNING

        ships.remove("calm-orca", force=True)

        assert client.requests == [StopRequest("calm-orca", force=True)]
        assert store.get_ship("calm-orca") is None


class TestQueries:
    def test_list(self, ships, store, crate):
        store.create_ship("calm-orca", crate.id, 100)
        store.create_ship("idle-seal", crate.id, None, status=STATUS_STOPPED)

        assert [s.name for s in ships.list()] == ["calm-orca", "idle-seal"]
        assert [s.name for s in ships.list(all_ships=False)] == ["calm-orca"]

    def test_logs(self, ships, store, crate, tmp_path, capsys):
        store.create_ship("calm-orca", crate.id, None, status=STATUS_STOPPED)
        log_dir = tmp_path / "logs" / "calm-orca"
        log_dir.mkdir(parents=True)
        (log_dir / "out.log").write_text("one\ntwo\nthree\n")
        (log_dir / "err.log").write_text("oops\n")

        ships.logs("calm-orca", tail=2)
        ships.logs("calm-orca", stream="err")

        captured = capsys.readouterr()
        assert captured.out == "two\nthree\n"
        assert captured.err == "oops\n"

    def test_logs_unknown_ship(self, ships):
        with pytest.raises(ShipError):
            ships.logs("ghost")

