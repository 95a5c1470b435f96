"""
Tests for the audit logger and the audit_log table.
"""

from uuid import uuid4

import pytest
import structlog

from household_ledger.audit.logger import AuditLogger, configure_logging, create_correlation_id
from household_ledger.ledger.errors import NotFoundError
from household_ledger.models import AuditEvent, AuditEventBuilder, AuditEventType, AuditSeverity
from household_ledger.storage import AuditStorageInterface, SqlAuditStorage, StorageError


class MemoryAuditStorage(AuditStorageInterface):
    def __init__(self):
        self.events: list[AuditEvent] = []

    def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    def get_events_by_entity(self, entity_type, entity_id):
        return [e for e in self.events if e.entity_type == entity_type and e.entity_id == entity_id]

    def get_recent_events(self, limit=100):
        return self.events[-limit:]


class BrokenAuditStorage(MemoryAuditStorage):
    def append_event(self, event: AuditEvent) -> bool:
        raise StorageError("audit table locked")


def _event(**overrides):
    fields = dict(
        event_type=AuditEventType.ACCOUNT_CREATED,
        entity_type="account",
        entity_id=uuid4(),
        user_id=uuid4(),
        description="Account created",
    )
    fields.update(overrides)
    return AuditEvent(**fields)


class TestAuditLogger:
    def test_without_storage_only_logs_locally(self):
        assert AuditLogger().log(_event()) is True

    def test_persists_to_storage(self):
        storage = MemoryAuditStorage()
        event = _event()

        assert AuditLogger(storage).log(event) is True
        assert storage.events == [event]

    def test_storage_failure_is_reported_not_raised(self):
        assert AuditLogger(BrokenAuditStorage()).log(_event()) is False

    def test_integrity_gap_helper(self):
        storage = MemoryAuditStorage()
        entity_id = uuid4()

        AuditLogger(storage).log_integrity_gap(
            entity_type="transaction",
            entity_id=entity_id,
            user_id=None,
            description="Sibling missing",
            details={"transfer_to_transaction_id": "gone"},
        )

        event = storage.get_events_by_entity("transaction", entity_id)[0]
        assert event.event_type == AuditEventType.INTEGRITY_GAP
        assert event.severity == AuditSeverity.WARNING

    def test_error_helper_keeps_correlation(self):
        storage = MemoryAuditStorage()
        correlation_id = create_correlation_id()

        AuditLogger(storage).log_error("billing", "boom", correlation_id=correlation_id)

        event = storage.events[0]
        assert event.event_type == AuditEventType.SYSTEM_ERROR
        assert event.correlation_id == correlation_id


class TestAfterCommit:
    """Events tied to a unit of work follow its outcome."""

    def test_logged_when_unit_commits(self, database):
        database.create_schema()
        storage = MemoryAuditStorage()
        event = _event()

        database.atomic(lambda uow: AuditLogger(storage).log_after_commit(uow, event))

        assert storage.events == [event]

    def test_dropped_when_unit_rolls_back(self, database):
        database.create_schema()
        storage = MemoryAuditStorage()

        def work(uow):
            AuditLogger(storage).log_after_commit(uow, _event())
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            database.atomic(work)
        assert storage.events == []


class TestSqlAuditStorage:
    def test_round_trip_through_table(self, database):
        database.create_schema()
        storage = SqlAuditStorage(database)
        correlation_id = create_correlation_id()
        event = AuditEventBuilder.card_billing_failed(
            card_id=uuid4(),
            user_id=uuid4(),
            error_message="Linked account not found",
            correlation_id=correlation_id,
        )

        storage.append_event(event)

        stored = storage.get_events_by_entity("credit_card", event.entity_id)
        assert len(stored) == 1
        assert stored[0].event_id == event.event_id
        assert stored[0].correlation_id == correlation_id
        assert stored[0].error_message == "Linked account not found"

    def test_recent_events_newest_first(self, ledger, user_id, checking, savings):
        recent = SqlAuditStorage(ledger.database).get_recent_events(limit=1)
        assert len(recent) == 1
        assert recent[0].entity_id == savings.id

    def test_ledger_writes_are_audited(self, ledger, user_id, checking, make_entry):
        entry = make_entry(checking, "20.00")

        events = SqlAuditStorage(ledger.database).get_events_by_entity("transaction", entry.id)

        assert [e.event_type for e in events] == [AuditEventType.TRANSACTION_CREATED]
        assert events[0].user_id == user_id


class TestConfigureLogging:
    def test_json_rendering(self):
        configure_logging(level="DEBUG", json_logs=True)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_rendering(self):
        configure_logging(level="INFO", json_logs=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
