"""HTTP API tests.

The application is driven through httpx's ASGI transport with its lifespan
entered explicitly, so the same services the server builds at startup are used.
"""

from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio

from promptforge.app import create_app


@pytest_asyncio.fixture
async def app(settings, adapter, events, session_factory):
    app = create_app(settings=settings, adapter=adapter, events=events)
    async with app.router.lifespan_context(app):
        yield app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


ALICE = {"X-User-Id": "alice"}


async def create_job(client, prompts=("red sneaker", "blue sneaker"), headers=ALICE, **body):
    payload = {"name": "Sneakers", "model_id": "test-image", "prompts": list(prompts), **body}
    return await client.post("/api/batch/jobs", json=payload, headers=headers)


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_missing_user_header_rejected(client):
    response = await client.get("/api/credits")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_new_user_gets_welcome_credits(client):
    response = await client.get("/api/credits", headers=ALICE)

    assert response.status_code == 200
    assert response.json() == {"user_id": "alice", "credits": 10}

    history = (await client.get("/api/credits/transactions", headers=ALICE)).json()
    assert [(tx["type"], tx["amount"]) for tx in history] == [("earned", 10)]


@pytest.mark.asyncio
async def test_list_models(client):
    response = await client.get("/api/models")

    assert response.status_code == 200
    models = {model["key"]: model for model in response.json()}
    assert models["test-image"]["credit_cost"] == 2
    assert models["test-image"]["available"] is True
    assert models["dall-e-3"]["available"] is True
    assert models["sdxl"]["available"] is False
    assert models["hailuo-02"]["media_type"] == "video"


@pytest.mark.asyncio
async def test_job_lifecycle(app, client):
    created = await create_job(client, prompts=["red sneaker", "blue sneaker", "green sneaker"])
    assert created.status_code == 201
    job = created.json()
    assert job["status"] == "pending"
    assert job["total_items"] == 3

    started = await client.post(f"/api/batch/jobs/{job['id']}/start", headers=ALICE)
    assert started.status_code == 200
    assert started.json()["status"] == "processing"

    await app.state.orchestrator.wait_for_job(UUID(job["id"]), timeout=10)

    current = (await client.get(f"/api/batch/jobs/{job['id']}", headers=ALICE)).json()
    assert current["status"] == "completed"
    assert current["processed_items"] == 3
    assert current["credits_used"] == 6

    items = (await client.get(f"/api/batch/jobs/{job['id']}/items", headers=ALICE)).json()
    assert [item["sequence_index"] for item in items] == [0, 1, 2]
    assert all(item["status"] == "succeeded" and item["result_ref"] for item in items)

    credits = (await client.get("/api/credits", headers=ALICE)).json()
    assert credits["credits"] == 4

    listed = (await client.get("/api/batch/jobs", headers=ALICE)).json()
    assert [j["id"] for j in listed["jobs"]] == [job["id"]]

    deleted = await client.delete(f"/api/batch/jobs/{job['id']}", headers=ALICE)
    assert deleted.status_code == 204

    missing = await client.get(f"/api/batch/jobs/{job['id']}", headers=ALICE)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_insufficient_credits_reported_per_item(app, client):
    job = (await create_job(client, prompts=[f"sneaker {i}" for i in range(6)])).json()

    await client.post(f"/api/batch/jobs/{job['id']}/start", headers=ALICE)
    await app.state.orchestrator.wait_for_job(UUID(job["id"]), timeout=10)

    current = (await client.get(f"/api/batch/jobs/{job['id']}", headers=ALICE)).json()
    assert current["status"] == "completed_with_failures"
    assert (current["completed_items"], current["failed_items"]) == (5, 1)

    items = (await client.get(f"/api/batch/jobs/{job['id']}/items", headers=ALICE)).json()
    assert items[-1]["error_kind"] == "insufficient_credits"


@pytest.mark.asyncio
async def test_cancel_pending_job(client):
    job = (await create_job(client)).json()

    response = await client.post(f"/api/batch/jobs/{job['id']}/cancel", headers=ALICE)

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    again = await client.post(f"/api/batch/jobs/{job['id']}/cancel", headers=ALICE)
    assert again.status_code == 200
    assert again.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_start_twice_conflicts(app, client):
    job = (await create_job(client)).json()
    await client.post(f"/api/batch/jobs/{job['id']}/start", headers=ALICE)
    await app.state.orchestrator.wait_for_job(UUID(job["id"]), timeout=10)

    response = await client.post(f"/api/batch/jobs/{job['id']}/start", headers=ALICE)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "INVALID_STATE"


@pytest.mark.asyncio
async def test_delete_pending_job_conflicts(client):
    job = (await create_job(client)).json()

    response = await client.delete(f"/api/batch/jobs/{job['id']}", headers=ALICE)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_other_users_cannot_see_job(client):
    job = (await create_job(client)).json()

    response = await client.get(f"/api/batch/jobs/{job['id']}", headers={"X-User-Id": "mallory"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_unknown_job(client):
    response = await client.post(f"/api/batch/jobs/{uuid4()}/start", headers=ALICE)

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_validation_errors_use_error_body(client):
    unknown_model = await create_job(client, model_id="imaginary-model")
    assert unknown_model.status_code == 400
    body = unknown_model.json()["error"]
    assert body["code"] == "VALIDATION_ERROR"
    assert "test-image" in body["details"]["known_models"]

    empty_prompt = await create_job(client, prompts=["fine", "   "])
    assert empty_prompt.status_code == 400
    assert empty_prompt.json()["error"]["details"]["index"] == 1

    malformed = await client.post("/api/batch/jobs", json={"name": "x"}, headers=ALICE)
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == "VALIDATION_ERROR"
    assert malformed.json()["error"]["details"]["errors"]


@pytest.mark.asyncio
async def test_prompt_entries_with_settings(client, fake_transport, app):
    created = await create_job(
        client,
        prompts=["plain", {"prompt": "tall", "settings": {"size": "1024x1792"}}],
    )
    assert created.status_code == 201
    job = created.json()

    await client.post(f"/api/batch/jobs/{job['id']}/start", headers=ALICE)
    await app.state.orchestrator.wait_for_job(UUID(job["id"]), timeout=10)

    assert [payload["aspect_ratio"] for _, payload in fake_transport.calls] == ["1:1", "9:16"]
