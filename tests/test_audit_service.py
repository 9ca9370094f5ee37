import asyncio

import pytest

from patient_identity.domains.audit.models.audit import AuditEventType, PHICategory
from patient_identity.domains.audit.repositories.audit_repository import AuditLogger
from patient_identity.domains.audit.services.audit_service import SafeAuditor


class FailingAuditLogger(AuditLogger):
    def __init__(self, error):
        self.error = error

    async def record(self, event):
        raise self.error


@pytest.mark.asyncio
async def test_access_event_fields(audit_logger):
    auditor = SafeAuditor(audit_logger, role="registrar", source_context="10.0.0.5")

    assert await auditor.access(
        "dr-who", "master_patient_index_access", {"patient_id": "1"}, "RecordMatchingService",
        category=PHICategory.PATIENT_IDENTIFIERS
    )

    event = audit_logger.events[0]
    assert event.event_type == AuditEventType.ACCESS
    assert event.role == "registrar"
    assert event.source_context == "10.0.0.5"
    assert event.component == "RecordMatchingService"
    assert event.category == PHICategory.PATIENT_IDENTIFIERS
    assert event.success is True


@pytest.mark.asyncio
async def test_error_event_carries_error_details(auditor, audit_logger):
    await auditor.error(
        "dr-who", "patient_records_merge_error", ValueError("bad record"),
        "PatientIdentificationService", {"match_id": "dup:1"}
    )

    event = audit_logger.events[0]
    assert event.event_type == AuditEventType.ERROR
    assert event.success is False
    assert event.details == {
        "match_id": "dup:1",
        "error": "bad record",
        "error_type": "ValueError",
    }


@pytest.mark.asyncio
async def test_sink_failures_are_counted_not_raised():
    auditor = SafeAuditor(FailingAuditLogger(ConnectionError("down")))

    assert await auditor.access("dr-who", "merge_history_access", {}, "PatientIdentificationService") is False
    assert await auditor.error("dr-who", "merge_history_error", KeyError("x"), "PatientIdentificationService") is False
    assert auditor.failure_count == 2


@pytest.mark.asyncio
async def test_cancellation_is_not_swallowed():
    auditor = SafeAuditor(FailingAuditLogger(asyncio.CancelledError()))

    with pytest.raises(asyncio.CancelledError):
        await auditor.access("dr-who", "merge_history_access", {}, "PatientIdentificationService")
    assert auditor.failure_count == 0
