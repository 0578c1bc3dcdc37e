"""Serialization and item file I/O."""

from .items_io import load_items, write_items
from .serialization import atomic_write_bytes, json_dumps, json_dumps_canonical, json_loads

__all__ = [
    "load_items",
    "write_items",
    "atomic_write_bytes",
    "json_dumps",
    "json_dumps_canonical",
    "json_loads",
]
