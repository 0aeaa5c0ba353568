"""Identity store interface and the TOML-file backed implementation."""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from dataclasses import replace
from collections.abc import Iterable
from typing import Any, Protocol

from .constants import (
    BAN_MAX_HOURS,
    BAN_MIN_HOURS,
    COSMETIC_AVATAR,
    COSMETIC_PAWN,
    COSMETIC_STAR_PAWN,
)
from .errors import AuthorizationDenied, NotFound
from .models import BanRecord, BanRequest, Role, UserRecord

REL_FRIEND = "friend"
REL_IGNORED = "ignored"

_COSMETIC_FIELDS = (COSMETIC_AVATAR, COSMETIC_PAWN, COSMETIC_STAR_PAWN)


class IdentityStore(Protocol):
    """Authoritative user, ban and relationship lookups used by the gateway."""

    def find_by_id(self, subject_id: str) -> UserRecord | None: ...

    def is_banned(self, subject_id: str) -> bool: ...

    def is_allow_listed(self, email: str) -> bool: ...

    def get_friends(self, subject_id: str) -> list[UserRecord]: ...

    def get_ignored(self, subject_id: str) -> list[UserRecord]: ...

    def is_ignored_by(self, subject_id: str, by_subject_id: str) -> bool: ...

    def remove_relationship(self, subject_id: str, related_id: str) -> None: ...

    def ban_user(self, actor_id: str, request: BanRequest) -> BanRecord: ...

    def update_role(self, actor_id: str, target_id: str, role: Role) -> UserRecord: ...

    def update_cosmetic(self, subject_id: str, field: str, value: Any) -> UserRecord: ...

    def get_powers(self, subject_id: str) -> frozenset[str]: ...


def _opt_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _opt_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class TomlIdentityStore:
    """
    Identity store kept in memory and mirrored to a TOML file.

    File layout::

        allowlist = ["alice@example.com"]

        [users.<id>]
        username = "alice"
        email = "alice@example.com"
        role = "member"
        avatar = "cat"
        pawn = "knight"
        show_star_pawn = false
        powers = ["colors"]
        friends = ["<id>"]
        ignored = ["<id>"]

        [[bans]]
        id = "..."
        user_id = "<id>"
        banned_by_id = "<id>"
        reason = "spam"
        created_at = 1730000000.0
        expires_at = 1730003600.0
        is_permanent = false
        is_revoked = false

    With ``path=None`` the store is in-memory only. Every mutation is written
    back with tomlkit while holding the store lock, through a temporary file
    that replaces the original. A failed write rolls the mutation back and
    the ``OSError`` propagates to the caller.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = path
        self.log = logging.getLogger("rrcgw.identity")
        self._lock = threading.RLock()

        self._users: dict[str, UserRecord] = {}
        self._powers: dict[str, set[str]] = {}
        # subject id -> related subject id -> relationship kind
        self._relationships: dict[str, dict[str, str]] = {}
        self._bans: list[BanRecord] = []
        self._allowlist: set[str] = set()

        if path and os.path.exists(path):
            self.load()

    # Loading and persistence

    def load(self) -> None:
        from tomlkit import parse

        if not self.path:
            return
        with open(self.path, encoding="utf-8") as f:
            doc = parse(f.read()).unwrap()

        users: dict[str, UserRecord] = {}
        powers: dict[str, set[str]] = {}
        rels: dict[str, dict[str, str]] = {}

        raw_users = doc.get("users")
        if isinstance(raw_users, dict):
            for uid, raw in raw_users.items():
                if not isinstance(uid, str) or not isinstance(raw, dict):
                    continue
                role = Role.parse(raw.get("role")) or Role.GUEST
                users[uid] = UserRecord(
                    id=uid,
                    username=str(raw.get("username") or uid),
                    email=str(raw.get("email") or ""),
                    role=role,
                    avatar=_opt_str(raw.get("avatar")),
                    pawn=_opt_str(raw.get("pawn")),
                    show_star_pawn=bool(raw.get("show_star_pawn", False)),
                    is_active=bool(raw.get("is_active", True)),
                )
                powers[uid] = {str(p) for p in raw.get("powers") or () if str(p)}
                rel: dict[str, str] = {}
                for other in raw.get("friends") or ():
                    rel[str(other)] = REL_FRIEND
                for other in raw.get("ignored") or ():
                    rel[str(other)] = REL_IGNORED
                if rel:
                    rels[uid] = rel

        bans: list[BanRecord] = []
        raw_bans = doc.get("bans")
        if isinstance(raw_bans, list):
            for raw in raw_bans:
                if not isinstance(raw, dict) or not raw.get("user_id"):
                    continue
                bans.append(
                    BanRecord(
                        id=str(raw.get("id") or uuid.uuid4().hex),
                        user_id=str(raw["user_id"]),
                        banned_by_id=str(raw.get("banned_by_id") or ""),
                        reason=str(raw.get("reason") or ""),
                        created_at=_opt_float(raw.get("created_at")) or 0.0,
                        expires_at=_opt_float(raw.get("expires_at")),
                        is_permanent=bool(raw.get("is_permanent", False)),
                        is_revoked=bool(raw.get("is_revoked", False)),
                    )
                )

        allow = doc.get("allowlist")
        allowlist = {
            str(e).strip().lower() for e in allow or () if str(e).strip()
        } if isinstance(allow, list) else set()

        with self._lock:
            self._users = users
            self._powers = powers
            self._relationships = rels
            self._bans = bans
            self._allowlist = allowlist

        self.log.info(
            "Loaded identity store path=%s users=%s bans=%s allowlist=%s",
            self.path,
            len(users),
            len(bans),
            len(allowlist),
        )

    def _save_locked(self) -> None:
        if not self.path:
            return

        from tomlkit import aot, document, dumps, table

        doc = document()
        doc.add("allowlist", sorted(self._allowlist))

        users = table()
        for uid in sorted(self._users):
            u = self._users[uid]
            t = table()
            t.add("username", u.username)
            t.add("email", u.email)
            t.add("role", u.role.value)
            if u.avatar is not None:
                t.add("avatar", u.avatar)
            if u.pawn is not None:
                t.add("pawn", u.pawn)
            t.add("show_star_pawn", bool(u.show_star_pawn))
            t.add("is_active", bool(u.is_active))
            t.add("powers", sorted(self._powers.get(uid, ())))
            rel = self._relationships.get(uid, {})
            t.add("friends", sorted(k for k, v in rel.items() if v == REL_FRIEND))
            t.add("ignored", sorted(k for k, v in rel.items() if v == REL_IGNORED))
            users.add(uid, t)
        doc.add("users", users)

        bans = aot()
        for b in self._bans:
            t = table()
            t.add("id", b.id)
            t.add("user_id", b.user_id)
            t.add("banned_by_id", b.banned_by_id)
            t.add("reason", b.reason)
            t.add("created_at", float(b.created_at))
            if b.expires_at is not None:
                t.add("expires_at", float(b.expires_at))
            t.add("is_permanent", bool(b.is_permanent))
            t.add("is_revoked", bool(b.is_revoked))
            bans.append(t)
        doc.add("bans", bans)

        st = None
        try:
            st = os.stat(self.path)
        except OSError:
            st = None

        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(dumps(doc))
            if st is not None:
                os.chmod(tmp_path, st.st_mode)
            os.replace(tmp_path, self.path)
        except OSError:
            self.log.error("Failed to persist identity store path=%s", self.path)
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _snapshot_locked(self) -> tuple:
        # Records are immutable, so shallow copies of the containers suffice.
        return (
            dict(self._users),
            {k: set(v) for k, v in self._powers.items()},
            {k: dict(v) for k, v in self._relationships.items()},
            list(self._bans),
            set(self._allowlist),
        )

    def _commit_locked(self, saved: tuple) -> None:
        """Persist the current state; on failure roll back to ``saved`` and re-raise."""
        try:
            self._save_locked()
        except OSError:
            (
                self._users,
                self._powers,
                self._relationships,
                self._bans,
                self._allowlist,
            ) = saved
            raise

    # Seeding (used by tooling and tests; not part of the gateway interface)

    def add_user(
        self,
        record: UserRecord,
        *,
        powers: Iterable[str] = (),
        allow_list: bool = False,
    ) -> UserRecord:
        with self._lock:
            saved = self._snapshot_locked()
            self._users[record.id] = record
            self._powers[record.id] = set(powers)
            if allow_list and record.email:
                self._allowlist.add(record.email.strip().lower())
            self._commit_locked(saved)
        return record

    def set_relationship(self, subject_id: str, related_id: str, kind: str) -> None:
        if kind not in (REL_FRIEND, REL_IGNORED):
            raise ValueError(f"unknown relationship kind {kind!r}")
        with self._lock:
            saved = self._snapshot_locked()
            if subject_id not in self._users or related_id not in self._users:
                raise NotFound("User not found")
            self._relationships.setdefault(subject_id, {})[related_id] = kind
            self._commit_locked(saved)

    def list_bans(self, subject_id: str | None = None) -> list[BanRecord]:
        with self._lock:
            return [b for b in self._bans if subject_id is None or b.user_id == subject_id]

    # Lookups

    def find_by_id(self, subject_id: str) -> UserRecord | None:
        with self._lock:
            return self._users.get(subject_id)

    def is_banned(self, subject_id: str) -> bool:
        now = time.time()
        with self._lock:
            return any(b.user_id == subject_id and b.is_active(now) for b in self._bans)

    def is_allow_listed(self, email: str) -> bool:
        if not isinstance(email, str) or not email.strip():
            return False
        with self._lock:
            return email.strip().lower() in self._allowlist

    def _related(self, subject_id: str, kind: str) -> list[UserRecord]:
        with self._lock:
            rel = self._relationships.get(subject_id, {})
            return [
                self._users[other]
                for other, k in sorted(rel.items())
                if k == kind and other in self._users
            ]

    def get_friends(self, subject_id: str) -> list[UserRecord]:
        return self._related(subject_id, REL_FRIEND)

    def get_ignored(self, subject_id: str) -> list[UserRecord]:
        return self._related(subject_id, REL_IGNORED)

    def is_ignored_by(self, subject_id: str, by_subject_id: str) -> bool:
        """True when ``by_subject_id`` has ignored ``subject_id``."""
        with self._lock:
            return self._relationships.get(by_subject_id, {}).get(subject_id) == REL_IGNORED

    def get_powers(self, subject_id: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._powers.get(subject_id, ()))

    # Mutations

    def remove_relationship(self, subject_id: str, related_id: str) -> None:
        with self._lock:
            saved = self._snapshot_locked()
            rel = self._relationships.get(subject_id)
            if not rel or related_id not in rel:
                raise NotFound("Relationship not found")
            rel.pop(related_id, None)
            if not rel:
                self._relationships.pop(subject_id, None)
            self._commit_locked(saved)

    def ban_user(self, actor_id: str, request: BanRequest) -> BanRecord:
        with self._lock:
            saved = self._snapshot_locked()
            actor = self._users.get(actor_id)
            target = self._users.get(request.target_id)
            if actor is None or target is None:
                raise NotFound("User not found")

            if not actor.role.is_staff:
                raise AuthorizationDenied("You do not have permission to ban users")
            if actor.role is Role.MOD and target.role.is_staff:
                raise AuthorizationDenied("You cannot ban moderators or owners")
            if request.permanent and actor.role is not Role.OWNER:
                raise AuthorizationDenied("Only the owner can permanently ban users")

            now = time.time()
            expires_at = None
            if not request.permanent:
                hours = request.hours
                if hours is None or not BAN_MIN_HOURS <= int(hours) <= BAN_MAX_HOURS:
                    raise ValueError(
                        f"ban hours must be between {BAN_MIN_HOURS} and {BAN_MAX_HOURS}"
                    )
                expires_at = now + int(hours) * 3600.0

            ban = BanRecord(
                id=uuid.uuid4().hex,
                user_id=target.id,
                banned_by_id=actor.id,
                reason=request.reason,
                created_at=now,
                expires_at=expires_at,
                is_permanent=bool(request.permanent),
            )
            self._bans.append(ban)
            self._commit_locked(saved)

        self.log.info(
            "Ban recorded user=%s by=%s permanent=%s expires_at=%s",
            ban.user_id,
            ban.banned_by_id,
            ban.is_permanent,
            ban.expires_at,
        )
        return ban

    def update_role(self, actor_id: str, target_id: str, role: Role) -> UserRecord:
        with self._lock:
            saved = self._snapshot_locked()
            actor = self._users.get(actor_id)
            target = self._users.get(target_id)
            if actor is None or target is None:
                raise NotFound("User not found")
            if actor.role is not Role.OWNER:
                raise AuthorizationDenied("Only the owner can update user roles")

            updated = replace(target, role=Role(role))
            self._users[target_id] = updated
            self._commit_locked(saved)
        return updated

    def update_cosmetic(self, subject_id: str, field: str, value: Any) -> UserRecord:
        if field not in _COSMETIC_FIELDS:
            raise ValueError(f"unknown cosmetic field {field!r}")
        if field == COSMETIC_STAR_PAWN:
            value = bool(value)
        elif value is not None and not isinstance(value, str):
            raise ValueError(f"{field} must be a string")

        with self._lock:
            saved = self._snapshot_locked()
            user = self._users.get(subject_id)
            if user is None:
                raise NotFound("User not found")
            updated = replace(user, **{field: value})
            self._users[subject_id] = updated
            self._commit_locked(saved)
        return updated


def authoritative_role(store: IdentityStore, subject_id: str | None) -> Role:
    """Role held by the store for ``subject_id``; unknown subjects count as guests."""
    if not subject_id:
        return Role.GUEST
    user = store.find_by_id(subject_id)
    return user.role if user is not None else Role.GUEST
