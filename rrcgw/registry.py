from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from .models import Role, Session

PresenceListener = Callable[[], None]


class SessionRegistry:
    """
    In-memory map of admitted connections to their Session state.

    This class is responsible for:
    - Admission and removal of sessions, keyed by connection id
    - Lookups by connection id and by subject id
    - Atomic in-place updates
    - Presence snapshots for broadcast

    All access is serialized by one re-entrant lock. Readers get copies, and
    ``update`` swaps in a fully mutated copy, so no reader observes a
    half-updated Session. The presence listener is invoked after the lock has
    been released.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("rrcgw.registry")
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._index_by_subject: dict[str, set[str]] = {}  # subject id -> connection ids
        self._listeners: list[PresenceListener] = []

    def add_presence_listener(self, listener: PresenceListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                self.log.exception("Presence listener failed")

    @staticmethod
    def _copy(sess: Session) -> Session:
        return replace(sess)

    def _index_add(self, sess: Session) -> None:
        if sess.subject_id:
            self._index_by_subject.setdefault(sess.subject_id, set()).add(sess.connection_id)

    def _index_discard(self, sess: Session) -> None:
        if not sess.subject_id:
            return
        ids = self._index_by_subject.get(sess.subject_id)
        if ids is None:
            return
        ids.discard(sess.connection_id)
        if not ids:
            self._index_by_subject.pop(sess.subject_id, None)

    def admit(self, connection_id: str, session: Session, *, notify: bool = True) -> bool:
        """
        Register an authenticated session.

        Returns False (and registers nothing) when the connection id is already
        present or the session lacks a subject id or a valid role. The caller
        is expected to close the connection in that case.
        """
        if not connection_id or session.connection_id != connection_id:
            self.log.warning("Refusing admission with mismatched connection id conn=%s", connection_id)
            return False
        if not session.subject_id or not isinstance(session.role, Role):
            self.log.warning("Refusing admission of incomplete session conn=%s", connection_id)
            return False

        with self._lock:
            if connection_id in self._sessions:
                self.log.warning("Refusing duplicate admission conn=%s", connection_id)
                return False
            stored = self._copy(session)
            self._sessions[connection_id] = stored
            self._index_add(stored)
            total = len(self._sessions)

        self.log.info(
            "Session admitted conn=%s subject=%s role=%s total=%s",
            connection_id,
            session.subject_id,
            session.role.value,
            total,
        )
        if notify:
            self._notify()
        return True

    def remove(self, connection_id: str, *, notify: bool = True) -> Session | None:
        """Remove a session. Removing an absent connection id is a no-op."""
        with self._lock:
            sess = self._sessions.pop(connection_id, None)
            if sess is not None:
                self._index_discard(sess)

        if sess is None:
            return None

        self.log.info("Session removed conn=%s subject=%s", connection_id, sess.subject_id)
        if notify:
            self._notify()
        return sess

    def get(self, connection_id: str) -> Session | None:
        with self._lock:
            sess = self._sessions.get(connection_id)
            return self._copy(sess) if sess is not None else None

    def find_by_subject_id(self, subject_id: str) -> Session | None:
        with self._lock:
            ids = self._index_by_subject.get(subject_id)
            if not ids:
                return None
            return self._copy(self._sessions[min(ids)])

    def find_all_by_subject_id(self, subject_id: str) -> list[Session]:
        with self._lock:
            ids = self._index_by_subject.get(subject_id, set())
            return [self._copy(self._sessions[cid]) for cid in sorted(ids)]

    def all(self) -> list[Session]:
        with self._lock:
            return [self._copy(s) for s in self._sessions.values()]

    def contains(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._sessions

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def update(
        self,
        connection_id: str,
        mutator: Callable[[Session], Any],
        *,
        notify: bool = True,
    ) -> Session | None:
        """
        Atomically apply ``mutator`` to the session for ``connection_id``.

        The mutator receives a private copy; the copy replaces the stored
        session only after the mutator returns. The connection id and subject
        id cannot be changed through an update. Returns the updated session, or
        None when the connection is not registered.
        """
        with self._lock:
            current = self._sessions.get(connection_id)
            if current is None:
                return None
            draft = self._copy(current)
            mutator(draft)
            draft.connection_id = current.connection_id
            draft.subject_id = current.subject_id
            if not isinstance(draft.role, Role):
                raise TypeError("session role must be a Role")
            self._sessions[connection_id] = draft
            result = self._copy(draft)

        if notify:
            self._notify()
        return result

    def update_subject(
        self,
        subject_id: str,
        mutator: Callable[[Session], Any],
        *,
        notify: bool = True,
    ) -> list[Session]:
        """Apply ``mutator`` to every live session of ``subject_id`` in one step."""
        updated: list[Session] = []
        with self._lock:
            for cid in sorted(self._index_by_subject.get(subject_id, set())):
                s = self.update(cid, mutator, notify=False)
                if s is not None:
                    updated.append(s)

        if notify and updated:
            self._notify()
        return updated

    def snapshot(self) -> tuple[list[dict[str, Any]], list[Session]]:
        """Presence entries and recipient sessions taken under one lock hold."""
        with self._lock:
            sessions = [self._copy(s) for s in self._sessions.values()]
        return [s.presence() for s in sessions], sessions

    def clear_all(self) -> list[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._index_by_subject.clear()
        return sessions

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = len(self._sessions)
            banned = sum(1 for s in self._sessions.values() if s.banned)
            by_role: dict[str, int] = {}
            for s in self._sessions.values():
                by_role[s.role.value] = by_role.get(s.role.value, 0) + 1
            subjects = len(self._index_by_subject)

        return {
            "total": total,
            "subjects": subjects,
            "banned": banned,
            "by_role": by_role,
        }
