from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .constants import (
    COSMETIC_AVATAR,
    COSMETIC_PAWN,
    COSMETIC_STAR_PAWN,
    E_BAN_USER,
    E_CONNECT,
    E_FRIENDS,
    E_GENERAL_PRIVATE_MESSAGE,
    E_IGNORED_USERS,
    E_KICK_USER,
    E_NOT_WHITELISTED,
    E_REQUEST_USER_UPDATE,
    E_ROLE_UPDATED,
    E_SEND_MESSAGE,
    E_SEND_PRIVATE_MESSAGE,
    E_UNIGNORE_USER,
    E_UPDATE_AVATAR,
    E_UPDATE_PAWN,
    E_UPDATE_STAR_PAWN,
    E_UPDATE_USER_ROLE,
    E_UPDATE_USERNAME,
    E_USER_RESTRICTED,
    E_USER_UPDATED,
)
from .envelope import decode_frame, now_ms
from .errors import (
    AuthenticationFailure,
    AuthorizationDenied,
    CollaboratorFailure,
    GatewayError,
    NotFound,
    PolicyDenied,
)
from .identity import authoritative_role
from .messages import MessageHelper
from .models import Role, Session
from .moderation import ModerationCoordinator
from .policy import BANNED_NOTICE, check_links, check_not_banned, check_rate_limit
from .registry import SessionRegistry
from .router import BroadcastRouter, MessageArchive
from .stats import StatsManager
from .util import normalize_username

if TYPE_CHECKING:
    from .auth import TokenVerifier
    from .config import GatewayConfig
    from .identity import IdentityStore
    from .transport import Connection

GUEST_NOT_ALLOWED = "Guest access is not allowed. Please register with a whitelisted email."
NOT_WHITELISTED = "Your account is not whitelisted. Please contact an administrator."

Handler = Callable[[Session, dict], None]


class ChatGateway:
    """
    Connection admission and inbound event handling.

    Transport adapters call ``on_connect`` when a channel opens, ``on_frame``
    for every inbound frame and ``on_disconnect`` when it closes. The first
    frame on a connection must be ``connect`` carrying a bearer token and the
    claimed subject id; until then the connection is pending and nothing else
    is accepted.

    Frames from one connection are handled one at a time, in arrival order.
    Distinct connections are handled concurrently. Each event handler is a
    failure boundary: gateway errors become an ``error`` event for the actor,
    and anything unexpected is logged and contained to that event.
    """

    def __init__(
        self,
        config: GatewayConfig,
        store: IdentityStore,
        verifier: TokenVerifier,
        *,
        registry: SessionRegistry | None = None,
        stats: StatsManager | None = None,
        archive: MessageArchive | None = None,
        clock_ms: Callable[[], float] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.verifier = verifier
        self.log = logging.getLogger("rrcgw.gateway")

        self.registry = registry if registry is not None else SessionRegistry()
        self.stats = stats if stats is not None else StatsManager()
        self.messages = MessageHelper(self.stats)
        self.router = BroadcastRouter(
            self.registry, store, self.messages, self.stats, archive=archive
        )
        self.moderation = ModerationCoordinator(
            self.registry,
            store,
            self.router,
            self.messages,
            self.stats,
            close_session=self._close_session,
        )
        self.registry.add_presence_listener(self.router.broadcast_presence)

        self._clock = clock_ms if clock_ms is not None else now_ms

        self._lock = threading.RLock()
        # connection id -> (connection, opened at ms) until `connect` completes
        self._pending: dict[str, tuple[Connection, float]] = {}
        self._event_locks: dict[str, threading.Lock] = {}

        self._handlers: dict[str, Handler] = {
            E_SEND_MESSAGE: self._on_send_message,
            E_GENERAL_PRIVATE_MESSAGE: self._on_general_private_message,
            E_SEND_PRIVATE_MESSAGE: self._on_send_private_message,
            E_KICK_USER: self.moderation.kick,
            E_BAN_USER: self.moderation.ban,
            E_UPDATE_USER_ROLE: self.moderation.update_role,
            E_UNIGNORE_USER: self._on_unignore_user,
            E_UPDATE_USERNAME: self._on_update_username,
            E_UPDATE_AVATAR: self._on_update_avatar,
            E_UPDATE_STAR_PAWN: self._on_update_star_pawn,
            E_UPDATE_PAWN: self._on_update_pawn,
            E_REQUEST_USER_UPDATE: self._on_request_user_update,
        }

    # Connection lifecycle

    def on_connect(self, conn: Connection) -> None:
        cid = conn.connection_id
        with self._lock:
            self._pending[cid] = (conn, self._clock())
            self._event_locks[cid] = threading.Lock()
            pending = len(self._pending)
        self.log.debug("Connection opened conn=%s pending=%s", cid, pending)

    def on_disconnect(self, connection_id: str) -> None:
        """Deregister a connection. Safe to call more than once."""
        with self._lock:
            was_pending = self._pending.pop(connection_id, None) is not None
            self._event_locks.pop(connection_id, None)

        sess = self.registry.remove(connection_id)
        if sess is not None:
            self.stats.inc("disconnects")
            self.log.info(
                "Disconnected conn=%s subject=%s username=%s",
                connection_id,
                sess.subject_id,
                sess.username,
            )
        elif was_pending:
            self.log.debug("Pending connection closed conn=%s", connection_id)

    def _close_session(self, session: Session) -> None:
        if session.connection is not None:
            session.connection.close()
        self.on_disconnect(session.connection_id)

    def _reject(self, conn: Connection, reason: str) -> None:
        cid = conn.connection_id
        with self._lock:
            self._pending.pop(cid, None)
            self._event_locks.pop(cid, None)
        self.stats.inc("rejected")
        self.log.info("Rejected conn=%s reason=%s", cid, reason)
        conn.close()

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def sweep_pending(self, now: float | None = None) -> int:
        """Close pending connections that have not completed ``connect`` in time."""
        timeout_s = float(self.config.connect_timeout_s)
        if timeout_s <= 0:
            return 0
        now = self._clock() if now is None else now
        cutoff = now - timeout_s * 1000.0

        with self._lock:
            expired = [conn for conn, opened in self._pending.values() if opened <= cutoff]

        for conn in expired:
            self._reject(conn, "connect timeout")
        return len(expired)

    def shutdown(self) -> None:
        with self._lock:
            pending = [conn for conn, _ in self._pending.values()]
            self._pending.clear()
            self._event_locks.clear()
        for conn in pending:
            conn.close()
        for sess in self.registry.clear_all():
            if sess.connection is not None:
                sess.connection.close()

    # Inbound frames

    def _connection_for(self, connection_id: str) -> tuple[Connection | None, bool]:
        with self._lock:
            entry = self._pending.get(connection_id)
        if entry is not None:
            return entry[0], True
        sess = self.registry.get(connection_id)
        return (sess.connection if sess is not None else None), False

    def on_frame(self, connection_id: str, data: bytes) -> None:
        self.stats.inc("frames_in")
        self.stats.inc("bytes_in", len(data))

        with self._lock:
            event_lock = self._event_locks.get(connection_id)
        if event_lock is None:
            self.log.debug("Frame for unknown connection conn=%s", connection_id)
            return

        with event_lock:
            conn, pending = self._connection_for(connection_id)
            if conn is None:
                return

            try:
                event, body = decode_frame(data)
            except Exception as e:
                self.stats.inc("frames_bad")
                self.log.debug(
                    "Bad frame conn=%s bytes=%s err=%s", connection_id, len(data), e
                )
                self.messages.emit_error(conn, f"bad message: {e}")
                return

            if pending:
                if event != E_CONNECT:
                    self.messages.emit_error(conn, "connect first")
                    return
                self._admit(conn, body)
                return

            if event == E_CONNECT:
                self.messages.emit_error(conn, "already connected")
                return

            handler = self._handlers.get(event)
            if handler is None:
                self.log.debug("Unknown event conn=%s event=%s", connection_id, event)
                self.messages.emit_error(conn, "unknown event")
                return

            session = self.registry.get(connection_id)
            if session is None:
                return
            self._dispatch(session, event, handler, body)

    def _dispatch(self, session: Session, event: str, handler: Handler, body: dict) -> None:
        try:
            handler(session, body)
        except (AuthorizationDenied, PolicyDenied) as e:
            self.stats.inc("denied")
            self.log.info(
                "Denied event=%s conn=%s subject=%s reason=%s",
                event,
                session.connection_id,
                session.subject_id,
                e.message,
            )
            self.messages.emit_error(session.connection, e.message)
        except GatewayError as e:
            self.log.info(
                "Event failed event=%s conn=%s reason=%s",
                event,
                session.connection_id,
                e.message,
            )
            self.messages.emit_error(session.connection, e.message)
        except Exception:
            self.log.exception(
                "Error handling event=%s conn=%s subject=%s",
                event,
                session.connection_id,
                session.subject_id,
            )
            self.messages.emit_error(session.connection, "request failed")

    # Admission

    def _admit(self, conn: Connection, body: dict) -> None:
        cid = conn.connection_id
        token = body.get("token")
        user_id = body.get("userId")

        if not token and not user_id:
            self.messages.send_event(conn, E_NOT_WHITELISTED, {"message": GUEST_NOT_ALLOWED})
            self._reject(conn, "guest")
            return

        try:
            if not isinstance(user_id, str) or not user_id:
                raise AuthenticationFailure("missing subject id")
            claims = self.verifier.verify(token)
            if claims.subject_id != user_id:
                raise AuthenticationFailure("subject mismatch")

            user = self.store.find_by_id(user_id)
            if user is None or not user.is_active:
                raise AuthenticationFailure("unknown subject")

            if not user.role.is_staff and not self.store.is_allow_listed(user.email):
                self.messages.send_event(conn, E_NOT_WHITELISTED, {"message": NOT_WHITELISTED})
                self._reject(conn, "not allow-listed")
                return

            banned = self.store.is_banned(user.id)
            powers = self.store.get_powers(user.id)
            friends = [u.public_dict() for u in self.store.get_friends(user.id)]
            ignored = [u.public_dict() for u in self.store.get_ignored(user.id)]
        except AuthenticationFailure as e:
            self.log.info("Authentication failed conn=%s reason=%s", cid, e.message)
            self.messages.emit_error(conn, "authentication failed")
            self._reject(conn, "authentication failed")
            return
        except Exception:
            self.log.exception("Error verifying connection conn=%s", cid)
            self._reject(conn, "verification error")
            return

        session = Session(
            connection_id=cid,
            subject_id=user.id,
            username=user.username,
            role=user.role,
            banned=banned,
            avatar=user.avatar,
            pawn=user.pawn,
            show_star_pawn=user.show_star_pawn,
            powers=powers,
            connection=conn,
        )

        with self._lock:
            # Closed while verifying.
            if self._pending.pop(cid, None) is None:
                return

        if not self.registry.admit(cid, session, notify=False):
            self._reject(conn, "registry refused")
            return

        # on_disconnect drops the event lock; if it ran between the pending
        # pop and the admit above, it found nothing to remove.
        with self._lock:
            closed = cid not in self._event_locks
        if closed:
            self.registry.remove(cid, notify=False)
            self.log.debug("Connection closed during admission conn=%s", cid)
            return

        self.stats.inc("admitted")
        self.messages.send_event(conn, E_ROLE_UPDATED, {"role": user.role.value})
        if banned:
            self.messages.send_event(
                conn, E_USER_RESTRICTED, {"type": "ban", "message": BANNED_NOTICE}
            )
        self.messages.send_event(conn, E_FRIENDS, friends)
        self.messages.send_event(conn, E_IGNORED_USERS, ignored)
        self.router.broadcast_presence()

        self.log.info(
            "Admitted conn=%s subject=%s username=%s role=%s banned=%s",
            cid,
            user.id,
            user.username,
            user.role.value,
            banned,
        )

    # Messaging

    def _accept_send(self, session: Session, text: Any, *, general: bool, direct: bool) -> Role:
        """Run the send policy; stamp the cooldown only when the send is accepted."""
        if not isinstance(text, str) or not text.strip():
            raise PolicyDenied("Message text is required")

        if self.config.recheck_bans_on_send:
            banned = self.store.is_banned(session.subject_id)
            if banned != session.banned:
                self.registry.update(
                    session.connection_id, lambda s: setattr(s, "banned", banned)
                )
                session.banned = banned

        check_not_banned(session)
        role = authoritative_role(self.store, session.subject_id)
        now = self._clock()
        check_rate_limit(session.last_send_ms, role, now)
        check_links(role, text, general=general, direct=direct)

        limit = int(self.config.max_message_chars)
        if limit > 0 and len(text) > limit:
            raise PolicyDenied(f"Message is too long (max {limit} characters)")

        self.registry.update(
            session.connection_id, lambda s: setattr(s, "last_send_ms", now), notify=False
        )
        return role

    def _on_send_message(self, session: Session, body: dict) -> None:
        role = self._accept_send(
            session,
            body.get("text"),
            general=bool(body.get("inGeneralChat")),
            direct=False,
        )
        self.router.send_message(session, role, body)

    def _on_send_private_message(self, session: Session, body: dict) -> None:
        role = self._accept_send(session, body.get("text"), general=False, direct=True)
        self.router.send_private_message(session, role, body)

    def _on_general_private_message(self, session: Session, body: dict) -> None:
        role = self._accept_send(session, body.get("text"), general=True, direct=True)
        self.router.general_private_message(session, role, body)

    # Profile and cosmetics

    def _on_unignore_user(self, session: Session, body: dict) -> None:
        other = body.get("userId")
        if not isinstance(other, str) or not other:
            raise NotFound("Relationship not found")
        self.store.remove_relationship(session.subject_id, other)
        ignored = [u.public_dict() for u in self.store.get_ignored(session.subject_id)]
        self.messages.send_event(session.connection, E_IGNORED_USERS, ignored)
        self.log.debug("Unignored subject=%s other=%s", session.subject_id, other)

    def _on_update_username(self, session: Session, body: dict) -> None:
        name = normalize_username(
            body.get("newUsername"), max_chars=int(self.config.username_max_chars)
        )
        if name is None:
            raise PolicyDenied("Invalid username")
        self.registry.update(session.connection_id, lambda s: setattr(s, "username", name))
        self.log.info("Username changed conn=%s username=%s", session.connection_id, name)

    def _persist_cosmetic(self, session: Session, field: str, value: Any) -> None:
        try:
            self.store.update_cosmetic(session.subject_id, field, value)
        except Exception:
            self.log.exception(
                "Failed to persist %s subject=%s", field, session.subject_id
            )

    def _on_update_avatar(self, session: Session, body: dict) -> None:
        avatar = body.get("avatarId")
        if not isinstance(avatar, str) or not avatar:
            raise PolicyDenied("Invalid avatar")
        self.registry.update(
            session.connection_id, lambda s: setattr(s, "avatar", avatar), notify=False
        )
        self._persist_cosmetic(session, COSMETIC_AVATAR, avatar)
        self.router.broadcast_presence()

    def _on_update_star_pawn(self, session: Session, body: dict) -> None:
        flag = body.get("showStarPawn")
        if not isinstance(flag, bool):
            raise PolicyDenied("Invalid star pawn setting")
        self.registry.update(
            session.connection_id, lambda s: setattr(s, "show_star_pawn", flag), notify=False
        )
        self._persist_cosmetic(session, COSMETIC_STAR_PAWN, flag)
        self.messages.fan_out(
            [s.connection for s in self.registry.all()],
            E_USER_UPDATED,
            {"id": session.connection_id, "showStarPawn": flag},
        )
        self.router.broadcast_presence()

    def _on_update_pawn(self, session: Session, body: dict) -> None:
        pawn = body.get("pawnType")
        if not isinstance(pawn, str) or not pawn:
            raise PolicyDenied("Invalid pawn")
        try:
            self.store.update_cosmetic(session.subject_id, COSMETIC_PAWN, pawn)
        except Exception:
            self.log.exception("Failed to persist pawn subject=%s", session.subject_id)
            raise CollaboratorFailure("Failed to update pawn") from None

        self.registry.update(
            session.connection_id, lambda s: setattr(s, "pawn", pawn), notify=False
        )
        self.router.broadcast_presence()
        self.messages.send_event(
            session.connection, E_USER_UPDATED, {"id": session.connection_id, "pawn": pawn}
        )

    def _on_request_user_update(self, session: Session, body: dict) -> None:
        user = self.store.find_by_id(session.subject_id)
        if user is None:
            raise NotFound("User not found")
        powers = self.store.get_powers(user.id)

        def sync(s: Session) -> None:
            s.avatar = user.avatar
            s.pawn = user.pawn
            s.show_star_pawn = user.show_star_pawn
            s.role = user.role
            s.powers = powers

        self.registry.update(session.connection_id, sync, notify=False)
        self.router.broadcast_presence()
        self.messages.send_event(
            session.connection,
            E_USER_UPDATED,
            {
                "id": session.connection_id,
                "pawn": user.pawn,
                "avatar": user.avatar,
                "showStarPawn": user.show_star_pawn,
                "powers": sorted(powers),
            },
        )
