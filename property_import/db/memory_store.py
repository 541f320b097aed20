from __future__ import annotations

import copy
import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, ClassVar

from ..models.property import ExistingProperty, NormalizedProperty, UserProfile
from ..models.session import ImportSession, SessionStatus
from ..services.duplicates import bounding_box, lng_in_range
from .property_store import PropertyRejectedError, StoreError

"""In-memory PropertyStore ("mock mode").

Used for ``--dry-run`` / ``DISABLE_DB_CONNECT=1`` and throughout the tests.
Transactions are simulated with a snapshot taken at ``begin()`` and restored
on ``rollback()``. Scope locks are process-wide ``threading.Lock`` objects,
one per scope name.
"""

logger = logging.getLogger(__name__)


@dataclass
class StoredProperty:
    id: str
    prop: NormalizedProperty
    created_by: str
    created_at: datetime
    deleted_at: datetime | None = None


@dataclass
class _State:
    properties: dict[str, StoredProperty] = field(default_factory=dict)
    sessions: dict[str, ImportSession] = field(default_factory=dict)
    links: dict[str, list[str]] = field(default_factory=dict)


class InMemoryPropertyStore:
    _locks: ClassVar[dict[str, threading.Lock]] = {}
    _locks_guard: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        users: Iterable[UserProfile] = (),
        teams: dict[str, list[str]] | None = None,
    ) -> None:
        self.users: dict[str, UserProfile] = {u.id: u for u in users}
        self.teams: dict[str, list[str]] = dict(teams or {})
        self.state = _State()
        self._snapshot: _State | None = None
        self._held: set[str] = set()

    # --- transaction -------------------------------------------------

    def begin(self) -> None:
        if self._snapshot is not None:
            raise StoreError("begin: transaction already open")
        self._snapshot = copy.deepcopy(self.state)

    def commit(self) -> None:
        if self._snapshot is None:
            raise StoreError("commit: no transaction open")
        self._snapshot = None

    def rollback(self) -> None:
        if self._snapshot is not None:
            self.state = self._snapshot
            self._snapshot = None

    def close(self) -> None:
        for scope in list(self._held):
            self.release_lock(scope)

    # --- collaborators -----------------------------------------------

    def add_user(self, user: UserProfile) -> None:
        self.users[user.id] = user

    def get_user_profile(self, user_id: str) -> UserProfile | None:
        return self.users.get(user_id)

    def get_teams_by_battalion(self, batalhao: str) -> list[str]:
        return list(self.teams.get(batalhao, []))

    # --- properties --------------------------------------------------

    def active_properties(self) -> list[StoredProperty]:
        return [p for p in self.state.properties.values() if p.deleted_at is None]

    def seed_property(self, prop: NormalizedProperty, created_by: str = "seed") -> str:
        """Insert an existing property outside any import session."""
        pid = str(uuid.uuid4())
        self.state.properties[pid] = StoredProperty(pid, prop, created_by, datetime.now(UTC))
        return pid

    def find_duplicate_candidates(
        self, name: str, latitude: float, longitude: float, radius_m: float
    ) -> list[ExistingProperty]:
        min_lat, max_lat, min_lng, max_lng = bounding_box(latitude, longitude, radius_m)
        key = name.strip().casefold()
        found = []
        for stored in self.active_properties():
            p = stored.prop
            same_name = p.name.strip().casefold() == key
            in_box = min_lat <= p.latitude <= max_lat and lng_in_range(p.longitude, min_lng, max_lng)
            if same_name or in_box:
                found.append(ExistingProperty(stored.id, p.name, p.latitude, p.longitude))
        return found

    def create_property(self, prop: NormalizedProperty, created_by: UserProfile) -> str:
        if self._snapshot is None:
            raise StoreError("create_property: no transaction open")
        if len(prop.name) > 255:
            raise PropertyRejectedError("value too long for property name")
        pid = str(uuid.uuid4())
        self.state.properties[pid] = StoredProperty(pid, prop, created_by.id, datetime.now(UTC))
        return pid

    # --- lock --------------------------------------------------------

    @classmethod
    def _lock_for(cls, scope: str) -> threading.Lock:
        with cls._locks_guard:
            if scope not in cls._locks:
                cls._locks[scope] = threading.Lock()
            return cls._locks[scope]

    def try_acquire_lock(self, scope: str) -> bool:
        if self._lock_for(scope).acquire(blocking=False):
            self._held.add(scope)
            return True
        return False

    def release_lock(self, scope: str) -> None:
        if scope in self._held:
            self._held.discard(scope)
            self._lock_for(scope).release()

    # --- sessions ----------------------------------------------------

    def insert_session(self, session: ImportSession) -> None:
        self.state.sessions[session.session_id] = session
        self.state.links.setdefault(session.session_id, [])

    def fetch_session(self, session_id: str) -> ImportSession | None:
        return self.state.sessions.get(session_id)

    def lock_session(self, session_id: str) -> ImportSession | None:
        # 単一プロセス内では行ロック不要
        return self.state.sessions.get(session_id)

    def fetch_sessions(self, user_id: str | None = None) -> list[ImportSession]:
        sessions = [s for s in self.state.sessions.values() if user_id is None or s.user_id == user_id]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def _require_session(self, session_id: str) -> ImportSession:
        session = self.state.sessions.get(session_id)
        if session is None:
            raise StoreError(f"unknown session: {session_id}")
        return session

    def add_session_counts(
        self, session_id: str, success: int = 0, error: int = 0, skipped: int = 0
    ) -> None:
        s = self._require_session(session_id)
        self.state.sessions[session_id] = replace(
            s,
            success_count=s.success_count + success,
            error_count=s.error_count + error,
            skipped_count=s.skipped_count + skipped,
        )

    def set_session_status(self, session_id: str, status: SessionStatus) -> None:
        s = self._require_session(session_id)
        self.state.sessions[session_id] = replace(s, status=status)

    def link_session_properties(self, session_id: str, property_ids: Iterable[str]) -> int:
        self._require_session(session_id)
        links = self.state.links.setdefault(session_id, [])
        added = 0
        for pid in property_ids:
            if pid not in links:
                links.append(pid)
                added += 1
        return added

    def session_property_ids(self, session_id: str) -> list[str]:
        return list(self.state.links.get(session_id, []))

    def count_active_session_properties(self, session_id: str) -> int:
        return sum(
            1
            for pid in self.state.links.get(session_id, [])
            if pid in self.state.properties and self.state.properties[pid].deleted_at is None
        )

    def soft_delete_session_properties(self, session_id: str) -> int:
        now = datetime.now(UTC)
        count = 0
        for pid in self.state.links.get(session_id, []):
            stored = self.state.properties.get(pid)
            if stored is not None and stored.deleted_at is None:
                stored.deleted_at = now
                count += 1
        return count

    def property(self, property_id: str) -> StoredProperty | None:
        return self.state.properties.get(property_id)

    def __repr__(self) -> str:
        st: Any = self.state
        return f"InMemoryPropertyStore(properties={len(st.properties)}, sessions={len(st.sessions)})"
