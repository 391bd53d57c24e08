#!/usr/bin/env python3
"""
Layer resolution for Keelan.

A crate names its parent in ``base_image``. Following those links yields the
chain of layers an overlay mount stacks as its lowerdir:

    web -> python -> root          resolve_layers("web") == ["web", "python", "root"]

The first entry is the closest ancestor and shadows everything after it.
Every chain ends at the sentinel root layer, whose files live in the
bootstrap root filesystem rather than under ``crates/``.
"""

import os
from typing import List, Optional, Set

from keelan.errors import LayerCycle, LayerNotFound
from keelan.metadata import MetadataStore
from keelan.utils import CRATES_PATH, ROOT_LAYER, ROOTFS_PATH

# Longest chain accepted before assuming a cycle
MAX_LAYER_DEPTH = 64


def resolve_layers(
    name: str,
    store: MetadataStore,
    root_layer: str = ROOT_LAYER,
    _seen: Optional[Set[str]] = None,
) -> List[str]:
    """
    Resolve the ordered layer chain of ``name``.

    Args:
        name: Crate name to resolve
        store: Metadata store holding the crates
        root_layer: Name of the sentinel root layer

    Returns:
        Layer names, closest ancestor first, without duplicates

    Raises:
        LayerNotFound: If ``name`` or any ancestor is not a stored crate
        LayerCycle: If the chain does not reach the root layer
    """
    if name == root_layer:
        return [name]

    seen = set() if _seen is None else _seen
    if name in seen or len(seen) >= MAX_LAYER_DEPTH:
        raise LayerCycle(f"Layer chain of {name} does not terminate at {root_layer}")
    seen.add(name)

    crate = store.get_crate(name)
    if crate is None:
        raise LayerNotFound(name)

    layers = resolve_layers(crate.base_image, store, root_layer, seen)
    if name not in layers:
        layers.insert(0, name)
    return layers


def layer_path(
    name: str,
    crates_path: str = CRATES_PATH,
    root_layer: str = ROOT_LAYER,
    rootfs_path: str = ROOTFS_PATH,
) -> str:
    """Map a layer name to the directory contributing it to a lowerdir."""
    if name == root_layer:
        return rootfs_path
    return os.path.join(crates_path, name)
