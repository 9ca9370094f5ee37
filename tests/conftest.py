from datetime import date

import pytest

from patient_identity.core.config import (
    IdentifierMatchWeights,
    MatchingConfig,
    MatchWeights,
    ReconciliationConfig
)
from patient_identity.domains.audit.repositories.audit_repository import InMemoryAuditLogger
from patient_identity.domains.audit.services.audit_service import SafeAuditor
from patient_identity.domains.matching.calculator import MatchCalculator
from patient_identity.domains.matching.repositories.duplicate_repository import (
    InMemoryDuplicateMatchRepository
)
from patient_identity.domains.matching.services.duplicate_service import DuplicateDetectionService
from patient_identity.domains.patient.models.patient import Address, PatientRecord
from patient_identity.domains.patient.repositories.patient_repository import InMemoryPatientRepository
from patient_identity.domains.reconciliation.repositories.mpi_repository import (
    InMemoryMasterPatientIndexRepository
)
from patient_identity.domains.reconciliation.services.reconciliation_service import ReconciliationService
from patient_identity.domains.review.repositories.merge_history_repository import (
    InMemoryMergeHistoryRepository
)
from patient_identity.domains.review.services.review_service import ReviewService
from patient_identity.providers import InMemoryExternalSystemClient


def build_patient(patient_id="1", **overrides):
    data = {
        "id": patient_id,
        "first_name": "John",
        "last_name": "Smith",
        "date_of_birth": date(1980, 1, 15),
        "gender": "M",
        "address": Address(street="123 Main St", city="Boston", state="MA", zip_code="02108"),
        "phone_number": "617-555-0123",
        "email": "john.smith@email.com",
        "medical_record_number": "MRN001",
    }
    data.update(overrides)
    return PatientRecord(**data)


@pytest.fixture
def make_patient():
    return build_patient


@pytest.fixture
def john():
    return build_patient("1", ssn="123-45-6789")


@pytest.fixture
def jon():
    return build_patient(
        "2",
        first_name="Jon",
        last_name="Smyth",
        address=Address(street="123 Maine Street", city="Boston", state="MA", zip_code="02108"),
        email="jon.smyth@email.com",
        medical_record_number="MRN002",
    )


@pytest.fixture
def jane():
    return build_patient(
        "3",
        first_name="Jane",
        last_name="Doe",
        date_of_birth=date(1985, 6, 20),
        gender="F",
        address=Address(street="456 Oak Ave", city="Cambridge", state="MA", zip_code="02139"),
        phone_number="617-555-0456",
        email="jane.doe@email.com",
        medical_record_number="MRN003",
    )


@pytest.fixture
def matching_config():
    return MatchingConfig(
        weights=MatchWeights(name=0.4, dob=0.3, address=0.2, phone=0.1),
        external_weights=IdentifierMatchWeights(name=0.4, dob=0.3, identifier=0.3),
        duplicate_threshold=0.85,
        potential_threshold=0.6,
        scan_page_size=2,
        max_concurrent_comparisons=4,
    )


@pytest.fixture
def reconciliation_config():
    return ReconciliationConfig(
        client="memory",
        systems_file=None,
        max_concurrent_lookups=8,
        lookup_timeout_seconds=0.2,
        max_write_retries=3,
    )


@pytest.fixture
def calculator(matching_config):
    return MatchCalculator(matching_config.weights, matching_config.external_weights)


@pytest.fixture
def audit_logger():
    return InMemoryAuditLogger()


@pytest.fixture
def auditor(audit_logger):
    return SafeAuditor(audit_logger)


@pytest.fixture
def patients(john, jon, jane):
    return InMemoryPatientRepository([john, jon, jane])


@pytest.fixture
def matches():
    return InMemoryDuplicateMatchRepository()


@pytest.fixture
def mpi_repository():
    return InMemoryMasterPatientIndexRepository()


@pytest.fixture
def history():
    return InMemoryMergeHistoryRepository()


@pytest.fixture
def external_client():
    return InMemoryExternalSystemClient()


@pytest.fixture
def duplicate_service(patients, matches, history, auditor, calculator, matching_config):
    return DuplicateDetectionService(
        patients, matches, auditor, calculator, matching_config, history=history
    )


@pytest.fixture
def reconciliation_service(
    patients, mpi_repository, external_client, auditor, calculator,
    reconciliation_config, matching_config
):
    return ReconciliationService(
        patients,
        mpi_repository,
        external_client,
        auditor,
        calculator=calculator,
        config=reconciliation_config,
        matching_config=matching_config,
    )


@pytest.fixture
def merge_calls():
    return []


@pytest.fixture
def review_service(patients, matches, history, reconciliation_service, auditor, merge_calls):
    return ReviewService(
        patients,
        matches,
        history,
        reconciliation_service,
        auditor,
        on_merge=lambda primary, secondary: merge_calls.append((primary, secondary)),
    )
