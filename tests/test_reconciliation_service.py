import asyncio
import json
from datetime import date

import pytest

from patient_identity.core.exceptions import (
    ConfigurationError,
    MergeConflictError,
    NotFoundError,
    ValidationError
)
from patient_identity.domains.audit.models.audit import AuditEventType, PHICategory
from patient_identity.domains.reconciliation.models.reconciliation import (
    DEFAULT_EXTERNAL_SYSTEMS,
    ExternalIdentifier,
    IdentifierSource,
    MatchClassification
)
from patient_identity.domains.reconciliation.repositories.mpi_repository import (
    InMemoryMasterPatientIndexRepository
)
from patient_identity.domains.reconciliation.services.reconciliation_service import (
    ReconciliationService,
    load_external_systems
)
from patient_identity.providers import InMemoryExternalSystemClient


class SlowExternalSystemClient(InMemoryExternalSystemClient):
    def __init__(self, slow_system, delay=5.0):
        super().__init__()
        self.slow_system = slow_system
        self.delay = delay

    async def lookup(self, system, patient):
        if system.id == self.slow_system:
            await asyncio.sleep(self.delay)
        return await super().lookup(system, patient)


class ConflictingMasterPatientIndexRepository(InMemoryMasterPatientIndexRepository):
    """Loses the version race a fixed number of times"""

    def __init__(self, conflicts):
        super().__init__()
        self.conflicts = conflicts
        self.save_calls = 0

    async def save(self, mpi, expected_version):
        self.save_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise MergeConflictError(mpi.patient_id, "simulated concurrent writer")
        return await super().save(mpi, expected_version)


def build_service(patients, mpi_repository, client, auditor, calculator,
                  reconciliation_config, matching_config):
    return ReconciliationService(
        patients, mpi_repository, client, auditor,
        calculator=calculator,
        config=reconciliation_config,
        matching_config=matching_config,
    )


@pytest.mark.asyncio
async def test_exact_external_record_is_matched_and_indexed(
    reconciliation_service, external_client, mpi_repository, make_patient, john
):
    external_client.add_candidate("emr1", "EMR1-100", make_patient("remote", ssn="123456789"))

    result = await reconciliation_service.find_matches(john)

    assert result.succeeded_systems == ["emr1", "lab", "pharmacy"]
    assert result.failed_systems == []
    assert len(result.matches) == 1
    match = result.matches[0]
    assert match.classification == MatchClassification.MATCHED
    assert match.external_id == "EMR1-100"

    mpi = await mpi_repository.get(john.id)
    identifier = mpi.identifier_for("emr1")
    assert identifier.external_id == "EMR1-100"
    assert identifier.source == IdentifierSource.AUTOMATIC
    assert identifier.verified is False
    assert mpi.match_result(match.match_id) is not None


@pytest.mark.asyncio
async def test_failing_system_does_not_affect_others(
    reconciliation_service, external_client, make_patient, john
):
    external_client.add_candidate("emr1", "EMR1-100", make_patient("remote"))
    external_client.mark_unavailable("lab", "connection refused")

    result = await reconciliation_service.find_matches(john)

    assert result.succeeded_systems == ["emr1", "pharmacy"]
    assert [failure.system_id for failure in result.failed_systems] == ["lab"]
    assert "connection refused" in result.failed_systems[0].error
    assert [match.system_id for match in result.matches] == ["emr1"]


@pytest.mark.asyncio
async def test_slow_system_is_reported_as_timed_out(
    patients, mpi_repository, auditor, calculator, reconciliation_config,
    matching_config, make_patient, john
):
    client = SlowExternalSystemClient("pharmacy")
    client.add_candidate("lab", "LAB-7", make_patient("remote"))
    service = build_service(
        patients, mpi_repository, client, auditor, calculator,
        reconciliation_config, matching_config
    )

    result = await service.find_matches(john)

    assert result.succeeded_systems == ["emr1", "lab"]
    assert len(result.failed_systems) == 1
    assert result.failed_systems[0].system_id == "pharmacy"
    assert result.failed_systems[0].timed_out is True
    assert [match.external_id for match in result.matches] == ["LAB-7"]


@pytest.mark.asyncio
async def test_matches_sorted_by_score_then_system_and_external_id(
    reconciliation_service, external_client, make_patient, john
):
    partial = make_patient("remote", medical_record_number=None, phone_number="")
    external_client.add_candidate("lab", "LAB-1", partial)
    external_client.add_candidate("pharmacy", "PH-2", make_patient("remote"))
    external_client.add_candidate("pharmacy", "PH-1", make_patient("remote"))
    external_client.add_candidate("emr1", "EMR1-9", make_patient("remote"))

    result = await reconciliation_service.find_matches(john)

    assert [(m.system_id, m.external_id) for m in result.matches] == [
        ("emr1", "EMR1-9"),
        ("pharmacy", "PH-1"),
        ("pharmacy", "PH-2"),
        ("lab", "LAB-1"),
    ]
    assert result.matches[-1].classification == MatchClassification.POTENTIAL


@pytest.mark.asyncio
async def test_potential_match_is_stored_without_identifier(
    reconciliation_service, external_client, mpi_repository, make_patient, john
):
    external_client.add_candidate("lab", "LAB-1", make_patient("remote", medical_record_number=None))

    result = await reconciliation_service.find_matches(john)

    assert result.matches[0].classification == MatchClassification.POTENTIAL
    mpi = await mpi_repository.get(john.id)
    assert mpi.identifier_for("lab") is None
    assert [item.external_id for item in mpi.match_results] == ["LAB-1"]


@pytest.mark.asyncio
async def test_best_matched_record_supplies_the_system_identifier(
    reconciliation_service, external_client, mpi_repository, make_patient, john
):
    external_client.add_candidate("lab", "LAB-1", make_patient("remote", first_name="Jon"))
    external_client.add_candidate("lab", "LAB-9", make_patient("remote", ssn="123-45-6789"))

    result = await reconciliation_service.find_matches(john)

    assert [match.external_id for match in result.matches] == ["LAB-9", "LAB-1"]
    assert all(match.classification == MatchClassification.MATCHED for match in result.matches)

    mpi = await mpi_repository.get(john.id)
    identifier = mpi.identifier_for("lab")
    assert identifier.external_id == "LAB-9"
    assert identifier.confidence == 1.0
    assert len(mpi.match_results) == 2


@pytest.mark.asyncio
async def test_unrelated_external_records_are_dropped(
    reconciliation_service, external_client, jane, john
):
    external_client.add_candidate("emr1", "EMR1-5", jane)

    result = await reconciliation_service.find_matches(john)
    assert result.matches == []


@pytest.mark.asyncio
async def test_reconciliation_is_audited_as_identifier_access(
    reconciliation_service, external_client, audit_logger, john
):
    external_client.mark_unavailable("pharmacy")

    await reconciliation_service.find_matches(john, actor="dr-who")

    event = audit_logger.events[-1]
    assert event.action == "patient_record_match_search"
    assert event.category == PHICategory.PATIENT_IDENTIFIERS
    assert event.details["failed_systems"] == ["pharmacy"]


@pytest.mark.asyncio
async def test_automatic_discovery_never_replaces_manual_identifier(
    reconciliation_service, external_client, mpi_repository, make_patient, john
):
    await reconciliation_service.verify_identifier(john.id, "emr1", "EMR1-MANUAL", "dr-who")
    external_client.add_candidate("emr1", "EMR1-AUTO", make_patient("remote"))

    await reconciliation_service.find_matches(john)

    identifier = (await mpi_repository.get(john.id)).identifier_for("emr1")
    assert identifier.external_id == "EMR1-MANUAL"
    assert identifier.manually_verified


@pytest.mark.asyncio
async def test_conflicting_manual_identifier_requires_override(
    reconciliation_service, audit_logger, john
):
    await reconciliation_service.verify_identifier(john.id, "lab", "LAB-1", "dr-who")

    with pytest.raises(MergeConflictError):
        await reconciliation_service.verify_identifier(john.id, "lab", "LAB-2", "dr-who")
    assert audit_logger.actions(AuditEventType.ERROR) == ["master_patient_index_update_error"]

    mpi = await reconciliation_service.verify_identifier(
        john.id, "lab", "LAB-2", "dr-who", override=True
    )
    assert mpi.identifier_for("lab").external_id == "LAB-2"


@pytest.mark.asyncio
async def test_reverifying_same_identifier_is_not_a_conflict(reconciliation_service, john):
    await reconciliation_service.verify_identifier(john.id, "lab", "LAB-1", "dr-who")
    mpi = await reconciliation_service.verify_identifier(john.id, "lab", "LAB-1", "dr-no")

    assert mpi.identifier_for("lab").external_id == "LAB-1"
    assert mpi.updated_by == "dr-no"


@pytest.mark.asyncio
async def test_concurrent_updates_for_one_patient_are_all_kept(reconciliation_service, john):
    await asyncio.gather(*[
        reconciliation_service.verify_identifier(john.id, system.id, f"{system.id}-1", "dr-who")
        for system in DEFAULT_EXTERNAL_SYSTEMS
    ])

    mpi = await reconciliation_service.get_master_patient_index(john.id)
    assert [item.system_id for item in mpi.external_identifiers] == ["emr1", "lab", "pharmacy"]
    assert mpi.version == 3


@pytest.mark.asyncio
async def test_version_conflict_is_retried(
    patients, external_client, auditor, calculator, reconciliation_config, matching_config, john
):
    repository = ConflictingMasterPatientIndexRepository(conflicts=2)
    service = build_service(
        patients, repository, external_client, auditor, calculator,
        reconciliation_config, matching_config
    )

    mpi = await service.verify_identifier(john.id, "emr1", "EMR1-1", "dr-who")

    assert repository.save_calls == 3
    assert mpi.identifier_for("emr1").external_id == "EMR1-1"


@pytest.mark.asyncio
async def test_persistent_version_conflict_gives_up(
    patients, external_client, auditor, calculator, reconciliation_config, matching_config, john
):
    repository = ConflictingMasterPatientIndexRepository(conflicts=100)
    service = build_service(
        patients, repository, external_client, auditor, calculator,
        reconciliation_config, matching_config
    )

    with pytest.raises(MergeConflictError):
        await service.verify_identifier(john.id, "emr1", "EMR1-1", "dr-who")
    assert repository.save_calls == reconciliation_config.max_write_retries + 1
    assert await repository.get(john.id) is None


@pytest.mark.asyncio
async def test_identifier_for_another_patient_is_rejected(reconciliation_service, john):
    identifier = ExternalIdentifier(
        system_id="lab",
        external_id="LAB-1",
        patient_id="someone-else",
        confidence=1.0,
        source=IdentifierSource.IMPORT,
    )
    with pytest.raises(ValidationError):
        await reconciliation_service.update_master_patient_index(john.id, identifier, "dr-who")


@pytest.mark.asyncio
async def test_unknown_system_is_rejected(reconciliation_service, john):
    with pytest.raises(NotFoundError):
        await reconciliation_service.verify_identifier(john.id, "radiology", "RAD-1", "dr-who")


@pytest.mark.asyncio
async def test_missing_index_entry(reconciliation_service, audit_logger):
    with pytest.raises(NotFoundError):
        await reconciliation_service.get_master_patient_index("1", actor="dr-who")
    assert audit_logger.actions(AuditEventType.ERROR) == ["master_patient_index_error"]


@pytest.mark.asyncio
async def test_unknown_patient_id(reconciliation_service, audit_logger):
    with pytest.raises(NotFoundError):
        await reconciliation_service.find_matches_for_patient_id("missing")
    assert audit_logger.actions(AuditEventType.ERROR) == ["patient_record_match_error"]


@pytest.mark.asyncio
async def test_verifying_for_unknown_patient_creates_nothing(reconciliation_service, mpi_repository):
    with pytest.raises(NotFoundError):
        await reconciliation_service.verify_identifier("missing", "lab", "LAB-1", "dr-who")
    assert await mpi_repository.get("missing") is None


@pytest.mark.asyncio
async def test_invalid_patient_payload(reconciliation_service):
    with pytest.raises(ValidationError):
        await reconciliation_service.find_matches({"id": "x", "dateOfBirth": str(date(1980, 1, 15))})


def test_default_catalog_without_file():
    assert load_external_systems(None) == DEFAULT_EXTERNAL_SYSTEMS
    assert [system.id for system in DEFAULT_EXTERNAL_SYSTEMS] == ["emr1", "lab", "pharmacy"]


def test_catalog_loaded_from_file(tmp_path):
    catalog = tmp_path / "systems.json"
    catalog.write_text(json.dumps([{
        "id": "emr2",
        "name": "Secondary EMR",
        "identifierPrefix": "EMR2",
        "apiEndpoint": "https://emr2.example.org/lookup",
        "apiKey": "secret",
    }]))

    systems = load_external_systems(str(catalog))

    assert systems[0].api_endpoint == "https://emr2.example.org/lookup"
    assert systems[0].api_key == "secret"
    assert "api_key" not in systems[0].model_dump()
    assert "secret" not in repr(systems[0])


@pytest.mark.parametrize("content", [
    "not json",
    json.dumps([{"id": "lab"}]),
    json.dumps([
        {"id": "lab", "name": "Lab", "identifierPrefix": "LAB"},
        {"id": "lab", "name": "Lab again", "identifierPrefix": "LAB2"},
    ]),
])
def test_invalid_catalog_is_a_configuration_error(tmp_path, content):
    catalog = tmp_path / "systems.json"
    catalog.write_text(content)

    with pytest.raises(ConfigurationError):
        load_external_systems(str(catalog))
