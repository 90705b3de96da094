from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, List, Mapping, Optional, Tuple

from cradlelog.common.crypto import DECRYPTION_PLACEHOLDER, FieldCodec
from cradlelog.common.fields import reveal, seal
from cradlelog.common.remote import RemoteBackend
from cradlelog.session.facade import SessionContext


class LogRepositoryError(RuntimeError):
    """Base error for log reads and writes."""


class NotSignedInError(LogRepositoryError):
    """Neither a remote session nor guest mode is active."""


class NoActiveChildError(LogRepositoryError):
    """No child id was given and none is active."""


@dataclass(frozen=True)
class LogTable:
    name: str
    encrypted: Tuple[str, ...]
    time_field: str


LOG_TABLES: Dict[str, LogTable] = {
    t.name: t
    for t in (
        LogTable("diaper_logs", ("consistency", "amount", "note"), "change_time"),
        LogTable("feeding_logs", ("category", "item_name", "amount", "note"), "feeding_time"),
        LogTable(
            "nursing_logs",
            ("left_duration", "right_duration", "left_amount", "right_amount", "note"),
            "logged_at",
        ),
        LogTable(
            "health_logs",
            (
                "growth_length", "growth_weight", "growth_head",
                "activity_type", "activity_duration",
                "meds_name", "meds_amount",
                "vaccine_name", "vaccine_location",
                "other_name", "other_description",
                "note",
            ),
            "date",
        ),
        LogTable("milestone_logs", ("title", "note"), "achieved_at"),
        LogTable("sleep_logs", ("note",), "start_time"),
    )
}


def log_table(name: str) -> LogTable:
    """Known log tables get their encrypted columns; others store everything as given."""
    return LOG_TABLES.get(name) or LogTable(name, (), "created_at")


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min.replace(tzinfo=UTC)
        return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
    return datetime.min.replace(tzinfo=UTC)


def newest_first(rows: List[Dict[str, Any]], time_field: str) -> List[Dict[str, Any]]:
    return sorted(rows, key=lambda r: _parse_time(r.get(time_field) or r.get("created_at")), reverse=True)


class LogRepository:
    """
    Reads and writes care logs for the current session.

    - Guest mode goes to the local table store, a remote session goes to the
      backend; rows have the same shape either way.
    - Sensitive columns are encrypted per field before they leave this class
      and decrypted on the way back. A column that fails to decrypt becomes
      `placeholder`; the rest of the row is returned as usual.
    """

    def __init__(
        self,
        session: SessionContext,
        codec: FieldCodec,
        *,
        remote: Optional[RemoteBackend] = None,
        placeholder: str = DECRYPTION_PLACEHOLDER,
    ) -> None:
        self._session = session
        self._codec = codec
        self._remote = remote
        self._placeholder = placeholder

    def _use_local(self) -> bool:
        if self._session.is_guest:
            return True
        if self._session.is_authenticated:
            if self._remote is None:
                raise NotSignedInError("Signed in, but no remote backend is configured")
            return False
        raise NotSignedInError("Sign in or enter guest mode first")

    def _child_id(self, explicit: Optional[str]) -> str:
        child_id = explicit or (self._session.active_child_id() if self._session.is_guest else None)
        if not child_id:
            raise NoActiveChildError("No active child selected")
        return child_id

    def encrypt_fields(self, table: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        out = dict(fields)
        for name in log_table(table).encrypted:
            value = out.get(name)
            if value is None:
                continue
            sealed = seal(self._codec, value if isinstance(value, str) else str(value))
            out[name] = sealed.envelope if sealed else None
        return out

    def decrypt_fields(self, table: str, row: Mapping[str, Any]) -> Dict[str, Any]:
        out = dict(row)
        for name in log_table(table).encrypted:
            if name in out:
                out[name] = reveal(self._codec, out[name], self._placeholder)
        return out

    def add(self, table: str, fields: Mapping[str, Any], *, child_id: Optional[str] = None) -> Dict[str, Any]:
        """Store one log for a child; returns the stored (still encrypted) row."""
        local = self._use_local()
        payload = self.encrypt_fields(table, fields)
        payload["child_id"] = self._child_id(child_id or fields.get("child_id"))
        if local:
            return self._session.store.insert(table, payload).to_dict()
        return self._remote.insert(table, payload)

    def entries(self, table: str, *, child_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Decrypted logs for a child, newest first."""
        local = self._use_local()
        child = self._child_id(child_id)
        table_info = log_table(table)
        if local:
            rows = [r.to_dict() for r in self._session.store.list(table)]
            rows = newest_first([r for r in rows if r.get("child_id") == child], table_info.time_field)
        else:
            rows = self._remote.list(table, eq={"child_id": child}, order=table_info.time_field, descending=True)
        return [self.decrypt_fields(table, r) for r in rows]

    def edit(self, table: str, row_id: str, patch: Mapping[str, Any]) -> bool:
        local = self._use_local()
        payload = self.encrypt_fields(table, patch)
        if local:
            return self._session.store.update(table, row_id, payload)
        return self._remote.update(table, row_id, payload)

    def remove(self, table: str, row_id: str) -> bool:
        if self._use_local():
            return self._session.store.delete(table, row_id)
        return self._remote.delete(table, row_id)
