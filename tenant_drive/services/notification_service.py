"""Fire-and-forget outbound email notifications."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, List, Optional

import requests

from ..messaging import InMemoryBus, MessageEnvelope
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    body: str
    sender: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class NotificationService(BaseService):
    """Queues messages on the bus and optionally relays them to a mail webhook.

    Delivery problems are logged and counted but never raised; the caller's
    operation has already succeeded by the time a notification is sent.
    """

    bus: Optional[InMemoryBus] = None
    http_client: Any = requests
    outbox: Deque[EmailMessage] = field(default_factory=lambda: deque(maxlen=500))

    def send_email(self, to: str, subject: str, body: str) -> None:
        message = EmailMessage(to=to, subject=subject, body=body, sender=self.config.notifications.sender)
        self.outbox.append(message)
        if self.bus is not None:
            self.bus.publish(
                MessageEnvelope(
                    topic="notifications.email",
                    payload={"to": to, "subject": subject, "body": body, "sender": message.sender},
                )
            )
        self._relay(message)

    def send_share_notification(self, to_email: str, share_url: str, file_name: str, shared_by: str) -> None:
        subject = f"{shared_by} shared \"{file_name}\" with you"
        body = (
            f"{shared_by} has shared a file with you.\n\n"
            f"File: {file_name}\n"
            f"Open it here: {share_url}\n\n"
            "You will be asked to confirm your email address before downloading."
        )
        self.send_email(to_email, subject, body)

    def send_magic_link(self, to_email: str, link: str, file_name: str) -> None:
        minutes = self.config.auth.magic_link_ttl_seconds // 60
        subject = f"Your access link for \"{file_name}\""
        body = (
            f"Use the link below to access \"{file_name}\".\n\n"
            f"{link}\n\n"
            f"The link expires in {minutes} minutes. If you did not request it, ignore this email."
        )
        self.send_email(to_email, subject, body)

    def messages_for(self, to: str) -> List[EmailMessage]:
        target = to.strip().lower()
        return [message for message in self.outbox if message.to.strip().lower() == target]

    def _relay(self, message: EmailMessage) -> None:
        webhook = self.config.notifications.webhook_url
        if not webhook or self.http_client is None:
            return
        try:
            response = self.http_client.post(
                webhook,
                json={
                    "from": message.sender,
                    "to": message.to,
                    "subject": message.subject,
                    "text": message.body,
                },
                timeout=self.config.notifications.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Notification relay to %s failed: %s", message.to, exc)
            self.emit_metric("notifications.failed", 1)
            return
        self.emit_metric("notifications.sent", 1)
