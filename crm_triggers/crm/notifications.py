from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from sqlalchemy.orm import Session

from crm_triggers.crm.models import CRMNotificationMessage
from crm_triggers.crm.schemas import NotificationMessage, NotificationResult


class NotificationService(Protocol):
    def send(self, messages: Sequence[NotificationMessage]) -> list[NotificationResult]: ...


class OutboxNotificationService:
    """Queues messages as outbox rows; delivery is owned by the mail relay."""

    intent_type = "OPPORTUNITY_DELETED"

    def __init__(self, session: Session) -> None:
        self.session = session

    def send(self, messages: Sequence[NotificationMessage]) -> list[NotificationResult]:
        rows = [
            CRMNotificationMessage(
                intent_type=self.intent_type,
                entity_type="opportunity",
                entity_id=message.entity_id,
                recipients=list(message.recipients),
                subject=message.subject,
                body=message.body,
            )
            for message in messages
        ]
        self.session.add_all(rows)
        self.session.flush()
        return [NotificationResult(success=True) for _ in rows]
