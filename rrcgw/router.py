from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Protocol

from .constants import E_MESSAGE, E_PRIVATE_MESSAGE, E_USERS
from .envelope import now_ms

if TYPE_CHECKING:
    from .identity import IdentityStore
    from .messages import MessageHelper
    from .models import Role, Session
    from .registry import SessionRegistry
    from .stats import StatsManager


class MessageArchive(Protocol):
    def save_message(self, record: dict[str, Any]) -> None: ...


class BroadcastRouter:
    """
    Computes delivery sets and delivers chat traffic.

    This class is responsible for:
    - General broadcast with ignore-relationship exclusion
    - Direct messages (both the private and the general-channel variant)
    - Full presence snapshots to every connected session
    - Handing accepted messages to an optional archive

    Nothing here enforces policy; callers pass only accepted messages. Delivery
    always happens with no registry lock held.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store: IdentityStore,
        messages: MessageHelper,
        stats: StatsManager,
        *,
        archive: MessageArchive | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.messages = messages
        self.stats = stats
        self.archive = archive
        self.log = logging.getLogger("rrcgw.router")

        # Serializes presence snapshots with their delivery, so a later snapshot
        # is never overtaken by an earlier one.
        self._presence_lock = threading.Lock()

    def _excluded_subjects(self, sender: Session, recipients: list[Session]) -> set[str]:
        excluded: set[str] = set()
        checked: set[str] = set()
        for other in recipients:
            sid = other.subject_id
            if not sid or sid == sender.subject_id or sid in checked:
                continue
            checked.add(sid)
            try:
                if self.store.is_ignored_by(sender.subject_id, sid):
                    excluded.add(sid)
            except Exception:
                # Unknown ignore state: withhold rather than deliver unwanted traffic.
                self.log.exception(
                    "Ignore lookup failed sender=%s recipient=%s",
                    sender.subject_id,
                    sid,
                )
                excluded.add(sid)
        return excluded

    def send_message(self, sender: Session, role: Role, payload: dict[str, Any]) -> int:
        """Broadcast an accepted general message; returns the number of deliveries."""
        out = dict(payload)
        out["username"] = sender.username
        out["from"] = sender.connection_id
        out["role"] = role.value

        recipients = self.registry.all()
        excluded = self._excluded_subjects(sender, recipients)
        targets = [
            s.connection
            for s in recipients
            if s.subject_id not in excluded or s.subject_id == sender.subject_id
        ]
        skipped = len(recipients) - len(targets)

        delivered = self.messages.fan_out(targets, E_MESSAGE, out)
        self.stats.inc("messages_broadcast")
        if skipped:
            self.stats.inc("messages_ignored", skipped)

        self.log.debug(
            "Broadcast message from=%s subject=%s delivered=%s skipped=%s",
            sender.connection_id,
            sender.subject_id,
            delivered,
            skipped,
        )
        self._archive(sender, out, to=None)
        return delivered

    def send_private_message(self, sender: Session, role: Role, payload: dict[str, Any]) -> bool:
        out = dict(payload)
        out["from"] = sender.connection_id
        out["username"] = sender.username
        out["isPrivate"] = True
        out["role"] = role.value
        return self._direct(sender, E_PRIVATE_MESSAGE, out)

    def general_private_message(self, sender: Session, role: Role, payload: dict[str, Any]) -> bool:
        out = dict(payload)
        out["from"] = sender.connection_id
        out["username"] = sender.username
        out["role"] = role.value
        out["isPrivate"] = True
        out["privateMessage"] = True
        out["inGeneralChat"] = True
        return self._direct(sender, E_MESSAGE, out)

    def _direct(self, sender: Session, event: str, out: dict[str, Any]) -> bool:
        to = out.get("to")
        recipient = self.registry.get(to) if isinstance(to, str) and to else None
        if recipient is None:
            self.stats.inc("direct_dropped")
            self.log.info(
                "Dropping direct message from=%s to=%s: recipient not connected",
                sender.connection_id,
                to,
            )
            return False

        out["to"] = recipient.connection_id
        targets = [recipient.connection]
        if recipient.connection_id != sender.connection_id:
            targets.append(sender.connection)

        self.messages.fan_out(targets, event, out)
        self.stats.inc("direct_messages")
        self.log.debug(
            "Direct message event=%s from=%s to=%s",
            event,
            sender.connection_id,
            recipient.connection_id,
        )
        self._archive(sender, out, to=recipient)
        return True

    def _archive(self, sender: Session, out: dict[str, Any], *, to: Session | None) -> None:
        if self.archive is None:
            return
        record = {
            "from_subject": sender.subject_id,
            "to_subject": to.subject_id if to is not None else None,
            "username": sender.username,
            "text": out.get("text"),
            "private": to is not None,
            "ts": now_ms(),
            "payload": out,
        }
        try:
            self.archive.save_message(record)
        except Exception:
            self.log.exception("Failed to archive message from=%s", sender.connection_id)

    def broadcast_presence(self) -> int:
        # Held across the fan-out so a newer snapshot never overtakes an older
        # one on any link. Sends only queue on RNS, so the hold stays short at
        # the connection counts this gateway serves.
        with self._presence_lock:
            users, sessions = self.registry.snapshot()
            delivered = self.messages.fan_out([s.connection for s in sessions], E_USERS, users)
        self.stats.inc("presence_broadcasts")
        self.log.debug("Presence broadcast users=%s delivered=%s", len(users), delivered)
        return delivered
