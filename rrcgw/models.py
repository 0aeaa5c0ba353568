from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .transport import Connection


class Role(str, enum.Enum):
    GUEST = "guest"
    MEMBER = "member"
    MOD = "mod"
    OWNER = "owner"

    @property
    def is_staff(self) -> bool:
        return self in (Role.MOD, Role.OWNER)

    @classmethod
    def parse(cls, value: Any) -> Role | None:
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: Role | None = None


@dataclass(frozen=True)
class UserRecord:
    id: str
    username: str
    email: str
    role: Role = Role.GUEST
    avatar: str | None = None
    pawn: str | None = None
    show_star_pawn: bool = False
    is_active: bool = True

    def public_dict(self) -> dict[str, Any]:
        """Client-facing view of the record (no email)."""
        out: dict[str, Any] = {
            "id": self.id,
            "username": self.username,
            "role": self.role.value,
            "showStarPawn": self.show_star_pawn,
        }
        if self.avatar is not None:
            out["avatar"] = self.avatar
        if self.pawn is not None:
            out["pawn"] = self.pawn
        return out


@dataclass(frozen=True)
class BanRequest:
    target_id: str
    reason: str
    hours: int | None = None
    permanent: bool = False


@dataclass(frozen=True)
class BanRecord:
    id: str
    user_id: str
    banned_by_id: str
    reason: str
    created_at: float
    expires_at: float | None = None
    is_permanent: bool = False
    is_revoked: bool = False

    def is_active(self, now: float | None = None) -> bool:
        if self.is_revoked:
            return False
        if self.is_permanent:
            return True
        if self.expires_at is None:
            return False
        return self.expires_at > (time.time() if now is None else now)


@dataclass
class Session:
    """Live state for one admitted connection."""

    connection_id: str
    subject_id: str | None
    username: str
    role: Role
    authenticated: bool = True
    banned: bool = False
    avatar: str | None = None
    pawn: str | None = None
    show_star_pawn: bool = False
    powers: frozenset[str] = frozenset()
    last_send_ms: float | None = None
    connection: Connection | None = field(default=None, compare=False, repr=False)

    def presence(self) -> dict[str, Any]:
        return {
            "id": self.connection_id,
            "username": self.username,
            "role": self.role.value,
            "isBanned": bool(self.banned),
            "avatar": self.avatar,
            "showStarPawn": bool(self.show_star_pawn),
            "pawn": self.pawn,
        }
