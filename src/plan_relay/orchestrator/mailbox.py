"""Inbound/outbound message queues shared with the chat frontend."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from plan_relay.orchestrator.models import (
    DocumentRef,
    Message,
    Origin,
    RecordValidationError,
)
from plan_relay.storage.common import to_iso, utc_now
from plan_relay.storage.files import atomic_write_json, quarantine, read_json, reject_records

logger = logging.getLogger(__name__)

INBOX_FILENAME = "wa_inbox.json"
OUTBOX_FILENAME = "wa_outbox.json"
STOP_COMMAND = "STOP"


@dataclass(slots=True)
class DeliveryReport:
    """Outcome of one outbound delivery pass."""

    delivered: int = 0
    failed_message_id: str | None = None
    error: str | None = None


class MessageQueueStore:
    """Append-only JSON queues; flags flip in place, nothing is deleted.

    Both files hold ``{"messages": [...]}`` and are replaced atomically on
    every write. Reads that hit an undecodable file quarantine it and start
    from an empty collection; individual malformed records are moved to a
    ``.rejected.json`` sidecar and the valid ones are kept.
    """

    def __init__(self, state_dir: Path) -> None:
        self.inbox_path = state_dir / INBOX_FILENAME
        self.outbox_path = state_dir / OUTBOX_FILENAME
        self._last_id_ms = 0
        self._id_counter = 0

    def enqueue_inbound(self, text: str) -> Message:
        message = Message(
            id=self._next_id(),
            timestamp=to_iso(utc_now()),
            origin=Origin.USER,
            text=text,
            read=False,
        )
        self._append(self.inbox_path, message)
        return message

    def enqueue_outbound(
        self,
        content: str | DocumentRef,
        *,
        reply_markup: dict[str, Any] | None = None,
    ) -> Message:
        message = Message(
            id=self._next_id(),
            timestamp=to_iso(utc_now()),
            origin=Origin.AGENT,
            text=content if isinstance(content, str) else None,
            document=content if isinstance(content, DocumentRef) else None,
            sent=False,
            reply_markup=reply_markup,
        )
        self._append(self.outbox_path, message)
        return message

    def has_unread_inbound(self) -> bool:
        return any(not message.read for message in self._load(self.inbox_path))

    def has_unread_stop_request(self) -> bool:
        """Peek for an unread STOP without marking anything read."""

        return any(
            not message.read and is_stop_request(message)
            for message in self._load(self.inbox_path)
        )

    def drain_unread_inbound(self) -> list[Message]:
        """Return unread inbound messages and mark them read in one write."""

        messages = self._load(self.inbox_path)
        unread = [message for message in messages if not message.read]
        if not unread:
            return []
        for message in unread:
            message.read = True
        self._save(self.inbox_path, messages)
        return unread

    def drain_unsent_outbound(self) -> list[Message]:
        """Return unsent outbound messages; flags stay untouched until mark_sent."""

        return [message for message in self._load(self.outbox_path) if not message.sent]

    def mark_sent(self, message_ids: Iterable[str]) -> int:
        """Flip ``sent`` by id on a fresh read so concurrent appends survive."""

        wanted = set(message_ids)
        if not wanted:
            return 0
        messages = self._load(self.outbox_path)
        marked = 0
        for message in messages:
            if message.id in wanted and not message.sent:
                message.sent = True
                marked += 1
        if marked:
            self._save(self.outbox_path, messages)
        return marked

    def deliver_outbound(self, send: Callable[[Message], None]) -> DeliveryReport:
        """Deliver unsent messages in order, stopping at the first failure.

        Only confirmed deliveries are marked sent, so a failed or interrupted
        pass is retried from the same message next time.
        """

        report = DeliveryReport()
        delivered_ids: list[str] = []
        for message in self.drain_unsent_outbound():
            try:
                send(message)
            except Exception as error:  # noqa: BLE001
                report.failed_message_id = message.id
                report.error = str(error)
                logger.warning("Outbound delivery failed for %s: %s", message.id, error)
                break
            delivered_ids.append(message.id)
        report.delivered = self.mark_sent(delivered_ids)
        return report

    def list_outbound(self, *, limit: int | None = None) -> list[Message]:
        messages = self._load(self.outbox_path)
        return messages[-limit:] if limit else messages

    def _append(self, path: Path, message: Message) -> None:
        messages = self._load(path)
        taken = {item.id for item in messages}
        if message.id in taken:
            # another writer produced the same millisecond id
            base, suffix = message.id, 1
            while f"{base}_{suffix}" in taken:
                suffix += 1
            message.id = f"{base}_{suffix}"
        messages.append(message)
        self._save(path, messages)

    def _load(self, path: Path) -> list[Message]:
        try:
            payload = read_json(path)
        except ValueError as error:
            quarantine(path, reason=str(error))
            return []
        if payload is None:
            return []
        if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
            quarantine(path, reason=f"{path.name} must be an object with a messages list")
            return []

        messages: list[Message] = []
        rejected: list[dict[str, object]] = []
        for item in payload["messages"]:
            try:
                messages.append(Message.from_record(item))
            except RecordValidationError as error:
                rejected.append({"record": item, "reason": str(error)})
        if rejected:
            reject_records(path, rejected)
            self._save(path, messages)
        return messages

    def _save(self, path: Path, messages: list[Message]) -> None:
        atomic_write_json(path, {"messages": [message.to_record() for message in messages]})

    def _next_id(self) -> str:
        now_ms = int(utc_now().timestamp() * 1000)
        if now_ms > self._last_id_ms:
            self._last_id_ms = now_ms
            self._id_counter = 0
            return f"msg_{now_ms}"
        self._id_counter += 1
        return f"msg_{self._last_id_ms}_{self._id_counter}"


def is_stop_request(message: Message) -> bool:
    return (message.text or "").strip().upper() == STOP_COMMAND
