from __future__ import annotations

import logging
from enum import Enum
from typing import Any, List, Mapping, Optional, Protocol

from cradlelog.common.remote import AuthError, RemoteError
from cradlelog.state.local_store import CHILDREN_TABLE, LocalTableStore
from cradlelog.state.models import Child


logger = logging.getLogger(__name__)


class SessionMode(str, Enum):
    UNKNOWN = "unknown"
    GUEST = "guest"
    AUTHENTICATED = "authenticated"


class UnknownChildError(KeyError):
    """The child id is not present in the local children table."""


class RemoteAuth(Protocol):
    def get_session(self) -> Optional[Any]: ...

    def sign_in_with_password(self, email: str, password: str) -> Any: ...

    def sign_up(self, email: str, password: str, metadata: Optional[Mapping[str, Any]] = None) -> Optional[Any]: ...

    def sign_out(self) -> None: ...


def capitalize(text: str) -> str:
    return text[:1].upper() + text[1:]


class SessionContext:
    """
    Process-wide owner of "who is logging": a remote user or a local guest.

    Create one at start-up, call `resolve()` once, then hand the object to
    whatever needs to know the mode. A remote session always wins over the
    guest flag: the flag may still be stored while signed in, and it is then
    ignored. Leaving guest mode only clears the flag; guest rows, the guest
    id and the active child stay, so entering again resumes the same data.
    """

    def __init__(self, store: LocalTableStore, *, remote: Optional[RemoteAuth] = None) -> None:
        self._store = store
        self._remote = remote
        self.mode = SessionMode.UNKNOWN
        self.last_error: Optional[str] = None

    @property
    def store(self) -> LocalTableStore:
        return self._store

    @property
    def is_guest(self) -> bool:
        return self.mode is SessionMode.GUEST

    @property
    def is_authenticated(self) -> bool:
        return self.mode is SessionMode.AUTHENTICATED

    def remote_session(self) -> Optional[Any]:
        if self._remote is None:
            return None
        try:
            return self._remote.get_session()
        except RemoteError as exc:
            logger.warning("Could not read remote session: %s", exc)
            self.last_error = str(exc)
            return None

    def resolve(self) -> SessionMode:
        """Determine the start-up mode: remote session first, then the guest flag."""
        if self.remote_session() is not None:
            self.mode = SessionMode.AUTHENTICATED
        elif self._store.is_guest():
            self.mode = SessionMode.GUEST
        else:
            self.mode = SessionMode.UNKNOWN
        logger.debug("Resolved session mode: %s", self.mode.value)
        return self.mode

    # -------- Guest mode --------
    def enter_guest(self) -> str:
        """Switch to guest mode and return the device's (stable) guest id."""
        guest_id = self._store.ensure_guest_id()
        self._store.set_guest_flag()
        self.mode = SessionMode.GUEST
        return guest_id

    def exit_guest(self) -> None:
        self._store.clear_guest_flag()
        if self.mode is SessionMode.GUEST:
            self.mode = SessionMode.UNKNOWN

    def guest_id(self) -> Optional[str]:
        return self._store.get_guest_id()

    # -------- Remote auth --------
    def _require_remote(self) -> RemoteAuth:
        if self._remote is None:
            raise AuthError("No remote backend configured")
        return self._remote

    def sign_in(self, email: str, password: str) -> Any:
        remote = self._require_remote()
        try:
            session = remote.sign_in_with_password(email, password)
        except RemoteError as exc:
            self.last_error = str(exc)
            raise
        self.last_error = None
        self.mode = SessionMode.AUTHENTICATED
        return session

    def sign_up(self, email: str, password: str, first_name: str, last_name: str) -> Optional[Any]:
        """Register remotely; the mode only changes when a session came back."""
        remote = self._require_remote()
        metadata = {"firstName": capitalize(first_name), "lastName": capitalize(last_name)}
        try:
            session = remote.sign_up(email, password, metadata)
        except RemoteError as exc:
            self.last_error = str(exc)
            raise
        self.last_error = None
        if session is not None:
            self.mode = SessionMode.AUTHENTICATED
        return session

    def sign_out(self, *, clear_guest_flag: bool = True) -> None:
        try:
            if self._remote is not None:
                self._remote.sign_out()
        finally:
            if clear_guest_flag:
                self._store.clear_guest_flag()
            self.mode = SessionMode.UNKNOWN

    # -------- Children --------
    def list_children(self) -> List[Child]:
        return self._store.list_children()

    def create_child(self, name: str) -> Child:
        """Add a child; the first one ever created becomes the active child."""
        if not name or not name.strip():
            raise ValueError("child name must not be blank")
        child = self._store.insert_child(name)
        if not self._store.get_active_child_id():
            self._store.set_active_child_id(child.id)
        return child

    def active_child_id(self) -> Optional[str]:
        return self._store.get_active_child_id()

    def active_child(self) -> Optional[Child]:
        child_id = self.active_child_id()
        if not child_id:
            return None
        return self._store.table(CHILDREN_TABLE, Child).get(child_id)

    def set_active_child(self, child_id: str) -> None:
        if not any(c.id == child_id for c in self._store.list_children()):
            raise UnknownChildError(child_id)
        self._store.set_active_child_id(child_id)
