import httpx
import pytest
import pytest_asyncio

from fiscalflow.integrations.vector_index import InMemoryVectorIndex
from fiscalflow.main import app
from fiscalflow.pipeline.runtime import build_runtime
from fiscalflow.store.job_store import InMemoryJobStore

from conftest import FakeRegistryClient, ScriptedProvider, analysis_script, sample_files


@pytest_asyncio.fixture
async def runtime():
    runtime = build_runtime(
        store=InMemoryJobStore(),
        provider=ScriptedProvider(analysis_script()),
        registry_client=FakeRegistryClient(),
        vector_index=InMemoryVectorIndex(),
        lookup_delay=0,
        enable_reviews=False,
    )
    runtime.start()
    app.state.runtime = runtime
    yield runtime
    app.state.runtime = None
    await runtime.aclose()


@pytest_asyncio.fixture
async def client(runtime):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_submit_then_poll(client, runtime):
    response = await client.post("/api/v1/jobs", json={"files": sample_files(), "jobId": "api-1"})

    assert response.status_code == 202
    body = response.json()
    assert body["id"] == "api-1"
    assert body["pipeline"][0]["status"] == "in-progress"

    await runtime.wait_for_job("api-1", timeout=5)
    polled = (await client.get("/api/v1/jobs/api-1")).json()
    assert polled["status"] == "completed"
    assert polled["result"]["simulationResult"]["success"] is True

    alerts = (await client.get("/api/v1/jobs/api-1/alerts")).json()
    assert alerts == {"data": [], "total": 0}


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    response = await client.get("/api/v1/jobs/nope")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_submission_needs_files(client):
    response = await client.post("/api/v1/jobs", json={"files": []})
    assert response.status_code == 422
