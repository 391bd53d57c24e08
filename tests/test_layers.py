"""Tests for layer chain resolution."""

import hashlib

import pytest

from keelan.errors import LayerCycle, LayerNotFound
from keelan.layers import MAX_LAYER_DEPTH, layer_path, resolve_layers


def add_crate(store, name, base):
    digest = hashlib.sha256(name.encode()).hexdigest()
    return store.save_crate(name, base, "", digest, 1, None)


class TestResolveLayers:
    def test_sentinel_resolves_to_itself(self, store):
        assert resolve_layers("root", store) == ["root"]

    def test_chain_is_closest_first(self, store):
        add_crate(store, "c", "root")
        add_crate(store, "b", "c")
        add_crate(store, "a", "b")

        assert resolve_layers("a", store) == ["a", "b", "c", "root"]

    def test_resolution_is_idempotent(self, store):
        add_crate(store, "b", "root")
        add_crate(store, "a", "b")

        assert resolve_layers("a", store) == resolve_layers("a", store)

    def test_missing_ancestor_is_named(self, store):
        add_crate(store, "a", "b")

        with pytest.raises(LayerNotFound) as exc_info:
            resolve_layers("a", store)
        assert exc_info.value.name == "b"

    def test_missing_name(self, store):
        with pytest.raises(LayerNotFound) as exc_info:
            resolve_layers("ghost", store)
        assert exc_info.value.name == "ghost"

    def test_cycle_is_rejected(self, store):
        add_crate(store, "a", "b")
        add_crate(store, "b", "a")

        with pytest.raises(LayerCycle):
            resolve_layers("a", store)

    def test_depth_limit(self, store):
        previous = "root"
        for i in range(MAX_LAYER_DEPTH + 1):
            add_crate(store, f"l{i}", previous)
            previous = f"l{i}"

        with pytest.raises(LayerCycle):
            resolve_layers(previous, store)

    def test_custom_root_layer(self, store):
        add_crate(store, "app", "debian")

        assert resolve_layers("app", store, root_layer="debian") == ["app", "debian"]


class TestLayerPath:
    def test_sentinel_maps_to_rootfs(self):
        assert layer_path("root", "/k/crates", "root", "/k/rootfs") == "/k/rootfs"

    def test_crate_maps_to_crates_dir(self):
        assert layer_path("web", "/k/crates", "root", "/k/rootfs") == "/k/crates/web"
