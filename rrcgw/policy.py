"""Per-event policy decisions.

Every function here is pure: it looks only at its arguments, raises
``PolicyDenied`` or ``AuthorizationDenied`` on violation, and mutates nothing.
"""

from __future__ import annotations

import math
import re

from .constants import BAN_MAX_HOURS, BAN_MIN_HOURS
from .errors import AuthorizationDenied, PolicyDenied
from .models import BanRequest, Role, Session

COOLDOWN_MS: dict[Role, int] = {
    Role.GUEST: 3000,
    Role.MEMBER: 1000,
    Role.MOD: 500,
    Role.OWNER: 0,
}

_LINK_RE = re.compile(r"https?://\S+", re.IGNORECASE)

BANNED_NOTICE = "You are currently banned from sending messages"


def cooldown_ms(role: Role) -> int:
    return COOLDOWN_MS[role]


def contains_link(text: str) -> bool:
    return isinstance(text, str) and _LINK_RE.search(text) is not None


def check_not_banned(session: Session) -> None:
    if session.banned:
        raise PolicyDenied(BANNED_NOTICE)


def remaining_cooldown_ms(last_send_ms: float | None, role: Role, now_ms: float) -> float:
    if last_send_ms is None:
        return 0.0
    return max(0.0, (last_send_ms + cooldown_ms(role)) - now_ms)


def check_rate_limit(last_send_ms: float | None, role: Role, now_ms: float) -> None:
    """Deny a send strictly inside the role's cooldown window."""
    remaining = remaining_cooldown_ms(last_send_ms, role, now_ms)
    if remaining > 0:
        seconds = math.ceil(remaining / 1000.0)
        raise PolicyDenied(
            f"Please wait {seconds} seconds before sending another message"
        )


def check_links(role: Role, text: str, *, general: bool, direct: bool) -> None:
    """Guests may not post links in the general channel or in direct messages."""
    if role is not Role.GUEST:
        return
    if direct:
        if contains_link(text):
            raise PolicyDenied("Guests cannot send links in messages")
        return
    if general and contains_link(text):
        raise PolicyDenied("Guests cannot send links in the general chat")


def check_can_moderate(actor_role: Role, target_role: Role, *, action: str = "moderate") -> None:
    if not actor_role.is_staff:
        raise AuthorizationDenied(f"Unauthorized: You do not have permission to {action} users")
    if actor_role is not Role.OWNER and target_role.is_staff:
        raise AuthorizationDenied(f"You cannot {action} moderators or owners")


def check_can_ban(actor_role: Role, target_role: Role, request: BanRequest) -> None:
    check_can_moderate(actor_role, target_role, action="ban")
    if request.permanent:
        if actor_role is not Role.OWNER:
            raise AuthorizationDenied("Only the owner can permanently ban users")
    elif request.hours is None or not BAN_MIN_HOURS <= request.hours <= BAN_MAX_HOURS:
        raise PolicyDenied(
            f"Ban duration must be between {BAN_MIN_HOURS} and {BAN_MAX_HOURS} hours"
        )
    if not request.reason or not request.reason.strip():
        raise PolicyDenied("A ban reason is required")


def check_can_change_role(actor_role: Role, new_role: Role | None) -> Role:
    if actor_role is not Role.OWNER:
        raise AuthorizationDenied("Only the owner can update user roles")
    if new_role is None:
        raise PolicyDenied("Invalid role")
    return new_role
