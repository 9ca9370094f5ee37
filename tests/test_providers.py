import pytest
from aiohttp import web
from aiohttp import test_utils

from patient_identity.core.config import HTTPConfig
from patient_identity.core.exceptions import ExternalSystemError
from patient_identity.domains.reconciliation.models.reconciliation import ExternalSystem
from patient_identity.providers import (
    CLIENT_REGISTRY,
    HttpExternalSystemClient,
    InMemoryExternalSystemClient,
    create_client,
    get_client_class
)


def lab_system(endpoint=None, api_key=None):
    return ExternalSystem(
        id="lab",
        name="Laboratory System",
        identifier_prefix="LAB",
        api_endpoint=endpoint,
        api_key=api_key,
    )


def http_config():
    return HTTPConfig(total_timeout=5, connect_timeout=2, max_pool_size=10, max_per_host=5)


@pytest.fixture
async def lab_server(make_patient):
    received = []

    async def lookup(request):
        received.append((request.headers.get("X-API-Key"), await request.json()))
        if request.headers.get("X-API-Key") != "secret":
            return web.Response(status=401, text="unauthorized")
        remote = make_patient("remote").to_dict()
        return web.json_response({"candidates": [{"externalId": "LAB-1", "record": remote}]})

    async def broken(request):
        return web.json_response({"candidates": [{"record": {}}]})

    app = web.Application()
    app.router.add_post("/lookup", lookup)
    app.router.add_post("/broken", broken)

    server = test_utils.TestServer(app)
    await server.start_server()
    server.received = received
    yield server
    await server.close()


def test_registry():
    assert set(CLIENT_REGISTRY) == {"http", "memory"}
    assert get_client_class("HTTP") is HttpExternalSystemClient
    assert isinstance(create_client("memory"), InMemoryExternalSystemClient)

    with pytest.raises(ValueError, match="Unknown client"):
        get_client_class("verato")


@pytest.mark.asyncio
async def test_memory_client_returns_registered_candidates(make_patient, john):
    client = InMemoryExternalSystemClient()
    client.add_candidate("lab", "LAB-1", make_patient("remote"))

    candidates = await client.lookup(lab_system(), john)

    assert [candidate.external_id for candidate in candidates] == ["LAB-1"]
    assert client.get_stats()["total_calls"] == 1


@pytest.mark.asyncio
async def test_memory_client_unavailable_system(john):
    client = InMemoryExternalSystemClient()
    client.mark_unavailable("lab", "maintenance window")

    with pytest.raises(ExternalSystemError, match="maintenance window"):
        await client.lookup(lab_system(), john)
    assert client.failed_calls == 1


@pytest.mark.asyncio
async def test_http_client_requires_endpoint(john):
    client = HttpExternalSystemClient(http_config())

    with pytest.raises(ExternalSystemError, match="no API endpoint"):
        await client.lookup(lab_system(), john)
    await client.cleanup()


@pytest.mark.asyncio
async def test_http_client_parses_candidates(lab_server, john):
    client = HttpExternalSystemClient(http_config())
    await client.initialize()
    try:
        system = lab_system(str(lab_server.make_url("/lookup")), api_key="secret")
        candidates = await client.lookup(system, john)
    finally:
        await client.cleanup()

    assert [candidate.external_id for candidate in candidates] == ["LAB-1"]
    assert candidates[0].record.first_name == "John"

    api_key, payload = lab_server.received[0]
    assert api_key == "secret"
    assert payload["systemId"] == "lab"
    assert payload["patient"]["id"] == john.id


@pytest.mark.asyncio
async def test_http_client_reports_error_status(lab_server, john):
    client = HttpExternalSystemClient(http_config())
    try:
        system = lab_system(str(lab_server.make_url("/lookup")), api_key="wrong")
        with pytest.raises(ExternalSystemError, match="401"):
            await client.lookup(system, john)
    finally:
        await client.cleanup()

    assert client.failed_calls == 1


@pytest.mark.asyncio
async def test_http_client_rejects_malformed_candidates(lab_server, john):
    client = HttpExternalSystemClient(http_config())
    try:
        system = lab_system(str(lab_server.make_url("/broken")))
        with pytest.raises(ExternalSystemError, match="malformed candidate"):
            await client.lookup(system, john)
    finally:
        await client.cleanup()
