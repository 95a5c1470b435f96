"""
Change events and the notification sink.

Sinks are fire-and-forget: they are invoked from post-commit hooks and
can never roll back the change they describe.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from household_ledger.storage.interface import UnitOfWork

logger = structlog.get_logger(__name__)


class LedgerEvent(BaseModel):
    """'Entity changed' message for UI refresh and cache invalidation."""

    entity_type: str
    action: str
    entity_id: Optional[UUID] = None
    user_id: UUID
    payload: dict[str, Any] = Field(default_factory=dict)


class NotificationSink(ABC):
    @abstractmethod
    def publish(self, event: LedgerEvent) -> None:
        pass


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes the event to the structured log."""

    def publish(self, event: LedgerEvent) -> None:
        logger.info(
            "ledger_event",
            entity_type=event.entity_type,
            action=event.action,
            entity_id=str(event.entity_id) if event.entity_id else None,
            user_id=str(event.user_id),
        )


def publish_after_commit(uow: UnitOfWork, sink: NotificationSink, event: LedgerEvent) -> None:
    uow.on_commit(lambda: sink.publish(event))
