"""
Local persistence for guest (unauthenticated) users.

Tables are JSON arrays of rows stored inside a flat key-value substrate;
scalar keys hold the guest flag, the guest id and the active child.
"""

from .local_store import CHILDREN_TABLE, LocalTableStore, StoreKeys, Table
from .models import Child, Row
from .substrate import JsonFileSubstrate, KeyValueSubstrate, MemorySubstrate, SubstrateError

__all__ = [
    "CHILDREN_TABLE",
    "Child",
    "JsonFileSubstrate",
    "KeyValueSubstrate",
    "LocalTableStore",
    "MemorySubstrate",
    "Row",
    "StoreKeys",
    "SubstrateError",
    "Table",
]
