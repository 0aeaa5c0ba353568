from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .constants import (
    E_BAN_SUCCESS,
    E_KICKED,
    E_ROLE_UPDATE_SUCCESS,
    E_ROLE_UPDATED,
    E_USER_RESTRICTED,
)
from .errors import CollaboratorFailure, NotFound
from .identity import authoritative_role
from .models import BanRequest, Role, Session
from .policy import check_can_ban, check_can_change_role, check_can_moderate

if TYPE_CHECKING:
    from .identity import IdentityStore
    from .messages import MessageHelper
    from .registry import SessionRegistry
    from .router import BroadcastRouter
    from .stats import StatsManager

TARGET_NOT_FOUND = "User not found or not authenticated"


def _parse_hours(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class ModerationCoordinator:
    """
    Kick, ban and role-change actions issued by staff.

    Payloads address the target by connection id. The coordinator resolves the
    subject through the registry, authorizes against the roles the identity
    store holds (never the cached session roles), and only then touches live
    state. Ban and role updates apply to every live session of the subject.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: IdentityStore,
        router: BroadcastRouter,
        messages: MessageHelper,
        stats: StatsManager,
        *,
        close_session: Callable[[Session], None],
    ) -> None:
        self.registry = registry
        self.store = store
        self.router = router
        self.messages = messages
        self.stats = stats
        self.close_session = close_session
        self.log = logging.getLogger("rrcgw.moderation")

    def _resolve_target(self, payload: dict[str, Any]) -> Session:
        target_cid = payload.get("userId")
        target = self.registry.get(target_cid) if isinstance(target_cid, str) else None
        if target is None or not target.subject_id or not target.authenticated:
            raise NotFound(TARGET_NOT_FOUND)
        return target

    def kick(self, actor: Session, payload: dict[str, Any]) -> None:
        target = self._resolve_target(payload)
        actor_role = authoritative_role(self.store, actor.subject_id)
        target_role = authoritative_role(self.store, target.subject_id)
        check_can_moderate(actor_role, target_role, action="kick")

        self.messages.send_event(target.connection, E_KICKED)
        self.close_session(target)
        self.stats.inc("kicks")
        self.log.info(
            "Kicked conn=%s subject=%s by=%s",
            target.connection_id,
            target.subject_id,
            actor.subject_id,
        )

    def ban(self, actor: Session, payload: dict[str, Any]) -> None:
        target = self._resolve_target(payload)
        actor_role = authoritative_role(self.store, actor.subject_id)
        target_role = authoritative_role(self.store, target.subject_id)

        reason = payload.get("reason")
        request = BanRequest(
            target_id=target.subject_id,
            reason=reason.strip() if isinstance(reason, str) else "",
            hours=_parse_hours(payload.get("hours")),
            permanent=payload.get("isPermanent") is True,
        )
        check_can_ban(actor_role, target_role, request)

        try:
            self.store.ban_user(actor.subject_id, request)
        except Exception:
            self.log.exception(
                "Ban failed target=%s by=%s", target.subject_id, actor.subject_id
            )
            raise CollaboratorFailure("Failed to ban user") from None

        sessions = self.registry.update_subject(
            target.subject_id,
            lambda s: setattr(s, "banned", True),
            notify=False,
        )
        self.messages.fan_out(
            [s.connection for s in sessions],
            E_USER_RESTRICTED,
            {
                "type": "ban",
                "message": f"You have been banned by a moderator. Reason: {request.reason}",
            },
        )
        self.router.broadcast_presence()
        self.messages.send_event(
            actor.connection,
            E_BAN_SUCCESS,
            {"message": f"User {target.username} has been banned"},
        )
        self.stats.inc("bans")
        self.log.info(
            "Banned subject=%s by=%s permanent=%s hours=%s sessions=%s",
            target.subject_id,
            actor.subject_id,
            request.permanent,
            request.hours,
            len(sessions),
        )

    def update_role(self, actor: Session, payload: dict[str, Any]) -> None:
        target = self._resolve_target(payload)
        actor_role = authoritative_role(self.store, actor.subject_id)
        new_role = check_can_change_role(actor_role, Role.parse(payload.get("role")))

        try:
            self.store.update_role(actor.subject_id, target.subject_id, new_role)
        except Exception:
            self.log.exception(
                "Role update failed target=%s by=%s", target.subject_id, actor.subject_id
            )
            raise CollaboratorFailure("Failed to update user role") from None

        sessions = self.registry.update_subject(
            target.subject_id,
            lambda s: setattr(s, "role", new_role),
            notify=False,
        )
        self.messages.fan_out(
            [s.connection for s in sessions], E_ROLE_UPDATED, {"role": new_role.value}
        )
        self.router.broadcast_presence()
        self.messages.send_event(
            actor.connection,
            E_ROLE_UPDATE_SUCCESS,
            {"message": f"User role has been updated to {new_role.value}"},
        )
        self.stats.inc("role_changes")
        self.log.info(
            "Role updated subject=%s role=%s by=%s",
            target.subject_id,
            new_role.value,
            actor.subject_id,
        )
