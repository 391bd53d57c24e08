"""Tests for the SQLite metadata store."""

import pytest
from sqlalchemy.exc import IntegrityError

from keelan.metadata import (STATUS_ERROR, STATUS_RUNNING, STATUS_STOPPED,
                             checksum)


class TestDescriptors:
    def test_identical_content_is_stored_once(self, store):
        first = store.save_descriptor("web", "content")
        second = store.save_descriptor("api", "content")

        assert first.id == second.id
        assert first.checksum == checksum("content")

    def test_lookup_by_name(self, store):
        store.save_descriptor("web", "content")

        assert store.get_descriptor("web").content == "content"
        assert store.get_descriptor("api") is None

    def test_referenced_descriptor_is_kept(self, store, crate):
        assert store.delete_descriptor(crate.descriptor_id) is False
        assert store.get_descriptor_by_id(crate.descriptor_id) is not None

    def test_unreferenced_descriptor_is_deleted(self, store):
        descriptor = store.save_descriptor("web", "content")

        assert store.delete_descriptor(descriptor.id) is True
        assert store.get_descriptor("web") is None


class TestCrates:
    def test_lookups(self, store, crate):
        assert store.get_crate("app").id == crate.id
        assert store.get_crate_by_id(crate.id).name == "app"
        assert store.get_crate_by_digest("d" * 64).name == "app"
        assert store.crate_exists("app")
        assert [c.name for c in store.list_crates()] == ["app"]

    def test_descriptor_name_reserves_crate_name(self, store):
        store.save_descriptor("pending", "content")

        assert store.crate_exists("pending")

    def test_digest_is_unique(self, store, crate):
        with pytest.raises(IntegrityError):
            store.save_crate("other", "root", "root", crate.digest, 1, None)

    def test_delete(self, store, crate):
        assert store.delete_crate("app").id == crate.id
        assert store.get_crate("app") is None
        assert store.delete_crate("app") is None


class TestShips:
    def test_create_running(self, store, crate):
        ship = store.create_ship("calm-orca", crate.id, pid=100)

        assert ship.status == STATUS_RUNNING
        assert ship.process_id == 100
        assert ship.started_at is not None
        assert ship.stopped_at is None

    def test_create_failed_has_no_pid(self, store, crate):
        ship = store.create_ship("calm-orca", crate.id, pid=100, status=STATUS_ERROR)

        assert ship.process_id is None
        assert ship.stopped_at is not None

    def test_names_are_unique(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)

        with pytest.raises(IntegrityError):
            store.create_ship("calm-orca", crate.id, pid=101)

    def test_mark_stopped_clears_pid(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)

        assert store.mark_stopped("calm-orca", exit_code=0) is True

        ship = store.get_ship("calm-orca")
        assert ship.status == STATUS_STOPPED
        assert ship.process_id is None
        assert ship.exit_code == 0
        assert ship.stopped_at is not None

    def test_mark_stopped_twice(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)
        store.mark_stopped("calm-orca")
        stopped_at = store.get_ship("calm-orca").stopped_at

        assert store.mark_stopped("calm-orca", exit_code=-15) is False

        ship = store.get_ship("calm-orca")
        assert ship.stopped_at == stopped_at
        assert ship.exit_code == -15

    def test_mark_stopped_ignores_stale_pid(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)
        store.mark_stopped("calm-orca")
        store.mark_running("calm-orca", pid=200)

        assert store.mark_stopped("calm-orca", exit_code=1, only_pid=100) is False

        ship = store.get_ship("calm-orca")
        assert ship.status == STATUS_RUNNING
        assert ship.process_id == 200

    def test_mark_running_resets_exit(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)
        store.mark_stopped("calm-orca", exit_code=3)

        assert store.mark_running("calm-orca", pid=101) is True

        ship = store.get_ship("calm-orca")
        assert ship.status == STATUS_RUNNING
        assert ship.process_id == 101
        assert ship.exit_code is None
        assert ship.stopped_at is None

    def test_mark_error(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)

        assert store.mark_error("calm-orca", exit_code=127) is True

        ship = store.get_ship("calm-orca")
        assert ship.status == STATUS_ERROR
        assert ship.process_id is None
        assert ship.exit_code == 127

    def test_unknown_ship(self, store):
        assert store.mark_stopped("ghost") is False
        assert store.mark_running("ghost", pid=1) is False
        assert store.mark_error("ghost") is False
        assert store.delete_ship("ghost") is False

    def test_listing(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=100)
        store.create_ship("idle-seal", crate.id, pid=None, status=STATUS_STOPPED)

        assert [s.name for s in store.list_ships()] == ["calm-orca", "idle-seal"]
        assert [s.name for s in store.list_running()] == ["calm-orca"]
        assert len(store.ships_for_crate(crate.id)) == 2

    def test_deleting_crate_deletes_ships(self, store, crate):
        store.create_ship("calm-orca", crate.id, pid=None, status=STATUS_STOPPED)

        store.delete_crate("app")

        assert store.get_ship("calm-orca") is None
