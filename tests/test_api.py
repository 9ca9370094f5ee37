import pytest
from fastapi.testclient import TestClient

from patient_identity.app import IdentityServiceContext, create_app
from patient_identity.core.config import ApplicationConfig, DatabaseConfig, AuditConfig
from patient_identity.domains.audit.repositories.audit_repository import InMemoryAuditLogger
from patient_identity.domains.patient.repositories.patient_repository import InMemoryPatientRepository
from patient_identity.providers import InMemoryExternalSystemClient


@pytest.fixture
def api_audit_logger():
    return InMemoryAuditLogger()


@pytest.fixture
def api_client_stub(make_patient):
    client = InMemoryExternalSystemClient()
    client.add_candidate("emr1", "EMR1-100", make_patient("remote"))
    client.mark_unavailable("pharmacy")
    return client


@pytest.fixture
def api(john, jon, jane, api_client_stub, api_audit_logger, merge_calls):
    config = ApplicationConfig(
        database=DatabaseConfig(backend="memory"),
        audit=AuditConfig(backend="memory"),
    )
    context = IdentityServiceContext(
        config=config,
        patients=InMemoryPatientRepository([john, jon, jane]),
        client=api_client_stub,
        audit_logger=api_audit_logger,
        on_merge=lambda primary, secondary: merge_calls.append(secondary.id),
    )
    with TestClient(create_app(context)) as client:
        yield client


def test_health(api):
    response = api.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["storage"] == "memory"
    assert body["audit_failures"] == 0


def test_metrics_endpoint(api):
    api.get("/duplicates/1")
    response = api.get("/metrics")

    assert response.status_code == 200
    assert "identity_duplicate_scans_total" in response.text


def test_duplicates_for_stored_patient(api):
    response = api.get("/duplicates/1", params={"actor": "dr-who"})

    assert response.status_code == 200
    matches = response.json()
    assert len(matches) == 1
    assert matches[0]["patient2"]["id"] == "2"
    assert matches[0]["status"] == "pending"
    assert matches[0]["match_score"] >= 0.85


def test_scan_with_inline_patient(api):
    response = api.post("/duplicates/scan", json={
        "actor": "dr-who",
        "patient": {
            "id": "new",
            "firstName": "Jane",
            "lastName": "Doe",
            "dateOfBirth": "1985-06-20",
            "gender": "F",
            "address": {"street": "456 Oak Ave", "city": "Cambridge", "state": "MA", "zipCode": "02139"},
            "phoneNumber": "617-555-0456",
        },
    })

    assert response.status_code == 200
    assert [match["patient2"]["id"] for match in response.json()] == ["3"]


def test_corpus_scan(api):
    response = api.post("/duplicates/scan", json={})

    assert response.status_code == 200
    pairs = [{m["patient1"]["id"], m["patient2"]["id"]} for m in response.json()]
    assert pairs == [{"1", "2"}]


def test_invalid_patient_is_a_bad_request(api):
    response = api.post("/duplicates/scan", json={"patient": {"id": "x", "firstName": "John"}})

    assert response.status_code == 400
    assert "lastName" in response.json()["detail"]["fields"]


def test_unknown_patient_is_not_found(api):
    assert api.get("/duplicates/missing").status_code == 404


def test_review_flow(api, merge_calls):
    match_id = api.get("/duplicates/1").json()[0]["match_id"]

    merged = api.post(f"/matches/{match_id}/merge", json={"reviewer": "dr-who", "notes": "same"})
    assert merged.status_code == 200
    body = merged.json()
    assert body["match"]["status"] == "merged"
    assert body["history_entry"]["merged_from"] == ["2"]
    assert merge_calls == ["2"]

    again = api.post(f"/matches/{match_id}/reject", json={"reviewer": "dr-who"})
    assert again.status_code == 409

    history = api.get("/patients/1/merge-history")
    assert [entry["match_id"] for entry in history.json()] == [match_id]

    assert api.get("/duplicates/1").json() == []


def test_reconciliation_and_index(api):
    response = api.post("/reconciliation/1", json={"actor": "dr-who"})

    assert response.status_code == 200
    result = response.json()
    assert result["succeeded_systems"] == ["emr1", "lab"]
    assert [failure["system_id"] for failure in result["failed_systems"]] == ["pharmacy"]
    assert result["matches"][0]["external_id"] == "EMR1-100"

    mpi = api.get("/mpi/1").json()
    assert mpi["external_identifiers"][0]["external_id"] == "EMR1-100"
    assert mpi["version"] == 1


def test_verify_identifier_conflict(api):
    url = "/mpi/1/identifiers/lab/verify"

    assert api.post(url, json={"external_id": "LAB-1", "actor": "dr-who"}).status_code == 200
    assert api.post(url, json={"external_id": "LAB-2", "actor": "dr-who"}).status_code == 409

    response = api.post(url, json={"external_id": "LAB-2", "actor": "dr-who", "override": True})
    assert response.status_code == 200
    assert response.json()["external_identifiers"][0]["source"] == "manual"


def test_accept_external_match(api):
    result = api.post("/reconciliation/1", json={}).json()
    match_id = result["matches"][0]["match_id"]

    response = api.post(f"/mpi/1/matches/{match_id}/accept", json={"reviewer": "dr-who"})

    assert response.status_code == 200
    identifier = response.json()["external_identifiers"][0]
    assert identifier["verified"] is True
    assert identifier["source"] == "manual"


def test_missing_index_entry(api):
    assert api.get("/mpi/3").status_code == 404


def test_external_systems_hide_api_keys(api):
    response = api.get("/external-systems")

    assert response.status_code == 200
    systems = response.json()
    assert [system["id"] for system in systems] == ["emr1", "lab", "pharmacy"]
    assert all("api_key" not in system for system in systems)
