"""
In-memory stores for development: OwnerStore, StateStore and SessionStore.

Why: Keep server-side state (OAuth link state, sessions) opaque to the client
and give tests a store without a database. For production, use the
Postgres-backed owner store in `stores_db`.

Security: Cookies carry only an opaque session id. Tokens stay server-side.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Optional, Protocol
import secrets
import time

from .domain import Owner, RosterOwnerLimits


def _now() -> int:
    return int(time.time())


class OwnerStoreProtocol(Protocol):
    def get_owner(self, owner_id: str) -> Optional[Owner]:
        ...

    def save_owner(self, owner: Owner) -> None:
        ...


class InMemoryOwnerStore:
    """Dict-backed owner store; records copies so callers cannot mutate state."""

    def __init__(self) -> None:
        self._data: Dict[str, Owner] = {}
        self.writes = 0

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        owner = self._data.get(owner_id)
        return replace(owner) if owner else None

    def save_owner(self, owner: Owner) -> None:
        self.writes += 1
        self._data[owner.id] = replace(owner)


def provision_owner(
    owners: OwnerStoreProtocol,
    *,
    owner_id: str,
    email: str,
    name: str = "",
    limits: RosterOwnerLimits | None = None,
) -> Owner:
    """Return the owner, creating it with default ceilings when unknown.

    Existing owners keep their credentials and limits untouched.
    """
    existing = owners.get_owner(owner_id)
    if existing is not None:
        return existing
    owner = Owner(id=owner_id, email=email.strip().lower(), name=name, limits=limits or RosterOwnerLimits())
    owners.save_owner(owner)
    return owner


@dataclass
class StateRecord:
    state: str
    owner_id: str
    redirect: Optional[str]
    expires_at: int


class StateStore:
    def __init__(self):
        self._data: Dict[str, StateRecord] = {}

    def create(self, *, owner_id: str, ttl_seconds: int = 900, redirect: Optional[str] = None) -> StateRecord:
        state = secrets.token_urlsafe(24)
        rec = StateRecord(state=state, owner_id=owner_id, redirect=redirect, expires_at=_now() + ttl_seconds)
        self._data[state] = rec
        return rec

    def pop_valid(self, state: str) -> Optional[StateRecord]:
        rec = self._data.pop(state, None)
        if not rec:
            return None
        if rec.expires_at < _now():
            return None
        return rec


@dataclass
class SessionRecord:
    session_id: str
    owner_id: str
    email: str
    expires_at: Optional[int] = None


class SessionStore:
    def __init__(self):
        self._data: Dict[str, SessionRecord] = {}

    def create(self, *, owner_id: str, email: str, ttl_seconds: int = 3600) -> SessionRecord:
        sid = secrets.token_urlsafe(24)
        rec = SessionRecord(session_id=sid, owner_id=owner_id, email=email, expires_at=_now() + ttl_seconds)
        self._data[sid] = rec
        return rec

    def get(self, session_id: str) -> Optional[SessionRecord]:
        rec = self._data.get(session_id)
        if not rec:
            return None
        if rec.expires_at and rec.expires_at < _now():
            self._data.pop(session_id, None)
            return None
        return rec

    def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)
