"""
Tests for the hash-chained audit log.

Verifies:
- Events are linked by prev_hash and numbered by a gap-free seq
- verify_chain detects a tampered payload or hash
- Audit rows are insert-only
"""

from uuid import uuid4

import pytest
from sqlalchemy import text

from settlement_kernel.exceptions import (
    AuditChainBrokenError,
    ImmutabilityViolationError,
)
from settlement_kernel.models.audit_event import AuditAction
from settlement_kernel.services.auditor_service import AuditEntry, AuditorService


@pytest.fixture
def auditor(session, clock):
    return AuditorService(session, clock)


def _write_events(auditor, actor_id, count=3):
    entity_id = uuid4()
    return [
        auditor.record(
            entity_type="Milestone",
            entity_id=entity_id,
            action=AuditAction.MILESTONE_UPDATED,
            actor_id=actor_id,
            detail={"revision": i},
        )
        for i in range(count)
    ]


class TestChain:

    def test_genesis_then_linked(self, auditor, test_actor_id):
        events = _write_events(auditor, test_actor_id)

        assert events[0].prev_hash is None
        assert events[1].prev_hash == events[0].hash
        assert events[2].prev_hash == events[1].hash
        assert [e.seq for e in events] == [1, 2, 3]

    def test_verify_valid_chain(self, auditor, test_actor_id):
        _write_events(auditor, test_actor_id, count=5)
        assert auditor.verify_chain() is True

    def test_empty_chain_is_valid(self, auditor):
        assert auditor.verify_chain() is True

    def test_record_entry(self, auditor, test_actor_id):
        entity_id = uuid4()
        auditor.record_entry(AuditEntry(
            entity_type="Project",
            entity_id=entity_id,
            action=AuditAction.TOKEN_PRICE_RECALCULATED,
            actor_id=test_actor_id,
            detail={"value_per_token": "2.5"},
        ))

        trace = auditor.get_trace("Project", entity_id)
        assert trace.actions == (AuditAction.TOKEN_PRICE_RECALCULATED,)
        assert trace.entries[0].payload == {"value_per_token": "2.5"}

    def test_trace_of_unknown_entity_is_empty(self, auditor):
        trace = auditor.get_trace("Project", uuid4())
        assert trace.is_empty
        assert trace.last_action is None


class TestTamperDetection:

    def test_tampered_hash(self, session, auditor, test_actor_id):
        _write_events(auditor, test_actor_id)
        session.execute(text("UPDATE audit_events SET hash = 'x' WHERE seq = 2"))
        session.expire_all()

        with pytest.raises(AuditChainBrokenError):
            auditor.verify_chain()

    def test_tampered_payload(self, session, auditor, test_actor_id):
        _write_events(auditor, test_actor_id)
        session.execute(
            text("UPDATE audit_events SET payload = :payload WHERE seq = 1"),
            {"payload": '{"revision": 99}'},
        )
        session.expire_all()

        with pytest.raises(AuditChainBrokenError) as exc_info:
            auditor.verify_chain()
        assert exc_info.value.code == "AUDIT_CHAIN_BROKEN"


class TestInsertOnly:

    def test_update_blocked(self, session, auditor, test_actor_id):
        event = _write_events(auditor, test_actor_id, count=1)[0]

        event.new_status = "forged"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, session, auditor, test_actor_id):
        event = _write_events(auditor, test_actor_id, count=1)[0]

        session.delete(event)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
