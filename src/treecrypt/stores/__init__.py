"""Format stores: native document syntax <-> generic tree plus metadata."""

from pathlib import Path

from .base import Store
from .json_store import JSONStore
from .yaml_store import YAMLStore

STORES = (YAMLStore, JSONStore)


def store_for_path(path) -> Store:
    """Pick a store from the file extension."""
    suffix = Path(path).suffix.lower()
    for store_cls in STORES:
        if suffix in store_cls.extensions:
            return store_cls()
    raise ValueError(f"no store for file extension {suffix!r}")


__all__ = [
    "Store",
    "YAMLStore",
    "JSONStore",
    "store_for_path",
]
