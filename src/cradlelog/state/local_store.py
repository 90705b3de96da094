from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, Type, TypeVar

from pydantic import ValidationError

from .models import Child, Row, SYSTEM_FIELDS
from .substrate import KeyValueSubstrate


logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "sb"
CHILDREN_TABLE = "children"
GUEST_MARKER = "1"

T = TypeVar("T", bound=Row)


def _new_id() -> str:
    # uuid4 draws from os.urandom
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class StoreKeys:
    """Key layout inside the substrate, all under one namespace prefix."""

    def __init__(self, namespace: str = DEFAULT_NAMESPACE) -> None:
        if not namespace:
            raise ValueError("namespace is required")
        self.namespace = namespace
        self.is_guest = f"{namespace}:isGuest"
        self.guest_id = f"{namespace}:guestId"
        self.active_child_id = f"{namespace}:activeChildId"
        self.children = f"{namespace}:children"

    def table(self, name: str) -> str:
        if not name:
            raise ValueError("table name is required")
        if name == CHILDREN_TABLE:
            return self.children
        return f"{self.namespace}:table:{name}"


class LocalTableStore:
    """
    Table semantics on top of a flat string key-value substrate.

    Every table is one JSON array stored under its own key; each mutation
    reads the whole array, changes it and writes the whole array back.
    Nothing serializes those read-modify-write cycles, so two interleaved
    writers to the same table lose one update (last writer wins).

    Reads never raise for absence: a missing table, a corrupt JSON payload or
    a payload that is not an array all read as an empty table.
    """

    def __init__(
        self,
        substrate: KeyValueSubstrate,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._kv = substrate
        self.keys = StoreKeys(namespace)
        self._new_id = id_factory or _new_id
        self._clock = clock or _now

    # -------- Raw JSON helpers --------
    def _read_rows(self, key: str) -> List[Dict[str, Any]]:
        raw = self._kv.get_string(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Treating unparsable JSON under %s as an empty table", key)
            return []
        if not isinstance(data, list):
            logger.warning("Treating non-array JSON under %s as an empty table", key)
            return []
        rows = [r for r in data if isinstance(r, dict)]
        if len(rows) != len(data):
            logger.warning("Skipping %d non-object entries under %s", len(data) - len(rows), key)
        return rows

    def _write_rows(self, key: str, rows: List[Dict[str, Any]]) -> None:
        self._kv.set_string(key, json.dumps(rows, separators=(",", ":")))

    def _stamp(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        body = {k: v for k, v in fields.items() if k not in SYSTEM_FIELDS}
        return {
            "id": self._new_id(),
            "created_at": self._clock().astimezone(UTC).isoformat(),
            **body,
        }

    # -------- Table operations --------
    def insert(self, table: str, fields: Mapping[str, Any]) -> Row:
        """Append a new row; `id` and `created_at` are always assigned here."""
        key = self.keys.table(table)
        rows = self._read_rows(key)
        row = self._stamp(fields)
        rows.append(row)
        self._write_rows(key, rows)
        logger.debug("Inserted row %s into %s", row["id"], table)
        return Row.model_validate(row)

    def list(self, table: str) -> List[Row]:
        out: List[Row] = []
        for raw in self._read_rows(self.keys.table(table)):
            try:
                out.append(Row.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed row in %s", table)
        return out

    def get(self, table: str, row_id: str) -> Optional[Row]:
        for row in self.list(table):
            if row.id == row_id:
                return row
        return None

    def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> bool:
        """Shallow-merge `patch` into the row with `row_id`.

        Returns False (and writes nothing) when no such row exists. The
        system fields are kept as they were even if the patch names them.
        """
        key = self.keys.table(table)
        rows = self._read_rows(key)
        for index, row in enumerate(rows):
            if row.get("id") == row_id:
                merged = {**row, **{k: v for k, v in patch.items() if k not in SYSTEM_FIELDS}}
                rows[index] = merged
                self._write_rows(key, rows)
                logger.debug("Updated row %s in %s", row_id, table)
                return True
        return False

    def delete(self, table: str, row_id: str) -> bool:
        key = self.keys.table(table)
        rows = self._read_rows(key)
        remaining = [r for r in rows if r.get("id") != row_id]
        if len(remaining) == len(rows):
            return False
        self._write_rows(key, remaining)
        logger.debug("Deleted row %s from %s", row_id, table)
        return True

    def clear(self, table: str) -> None:
        self._kv.remove_string(self.keys.table(table))

    def table(self, name: str, model: Type[T] = Row) -> "Table[T]":  # type: ignore[assignment]
        return Table(self, name, model)

    # -------- Scalars --------
    def is_guest(self) -> bool:
        return self._kv.get_string(self.keys.is_guest) == GUEST_MARKER

    def set_guest_flag(self) -> None:
        self._kv.set_string(self.keys.is_guest, GUEST_MARKER)

    def clear_guest_flag(self) -> None:
        self._kv.remove_string(self.keys.is_guest)

    def get_guest_id(self) -> Optional[str]:
        return self._kv.get_string(self.keys.guest_id) or None

    def ensure_guest_id(self) -> str:
        """Return the device's guest id, creating it the first time only."""
        guest_id = self.get_guest_id()
        if not guest_id:
            guest_id = self._new_id()
            self._kv.set_string(self.keys.guest_id, guest_id)
            logger.info("Created guest id %s", guest_id)
        return guest_id

    def get_active_child_id(self) -> Optional[str]:
        return self._kv.get_string(self.keys.active_child_id) or None

    def set_active_child_id(self, child_id: str) -> None:
        if not child_id:
            raise ValueError("child_id is required")
        self._kv.set_string(self.keys.active_child_id, child_id)

    def clear_active_child_id(self) -> None:
        self._kv.remove_string(self.keys.active_child_id)

    # -------- Children --------
    def list_children(self) -> List[Child]:
        return self.table(CHILDREN_TABLE, Child).list()

    def insert_child(self, name: str) -> Child:
        return self.table(CHILDREN_TABLE, Child).insert({"name": name})


class Table(Generic[T]):
    """Typed view of one table; rows are validated into `model`."""

    def __init__(self, store: LocalTableStore, name: str, model: Type[T]) -> None:
        self._store = store
        self.name = name
        self.model = model

    def insert(self, fields: Mapping[str, Any]) -> T:
        if self.model is not Row:
            # Fail before writing anything if the row would not validate
            self.model.model_validate({"id": "-", "created_at": "-", **fields})
        row = self._store.insert(self.name, fields)
        return self.model.model_validate(row.to_dict())

    def list(self) -> List[T]:
        out: List[T] = []
        for row in self._store.list(self.name):
            try:
                out.append(self.model.model_validate(row.to_dict()))
            except ValidationError:
                logger.warning("Skipping row %s in %s: does not match %s", row.id, self.name, self.model.__name__)
        return out

    def get(self, row_id: str) -> Optional[T]:
        for row in self.list():
            if row.id == row_id:
                return row
        return None

    def update(self, row_id: str, patch: Mapping[str, Any]) -> bool:
        return self._store.update(self.name, row_id, patch)

    def delete(self, row_id: str) -> bool:
        return self._store.delete(self.name, row_id)
