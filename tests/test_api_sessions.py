"""Tests for the session HTTP API."""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from persona_sim.api.server import Services, app, generate_session_id, get_services
from persona_sim.config import Settings
from persona_sim.gateway.chat import ChatResult
from persona_sim.gateway.pools import StaticModelPoolRegistry
from persona_sim.models import AnalysisMessage, PersonaProfile
from persona_sim.personas.catalog import PersonaCatalog
from persona_sim.services.lifecycle import SessionLifecycle
from persona_sim.storage.content import LocalContentStore
from persona_sim.storage.records import SQLiteRecordStore

pytestmark = pytest.mark.asyncio

CONTENT = '{"opened": true, "status": "opened", "browseTime": 12, "interest": 55, "innerMonologue": "hm"}'


class RecordingQueue:
    def __init__(self):
        self.messages = []

    async def send(self, message):
        self.messages.append(message)


class StubGateway:
    async def call(self, routing_key, messages, *, instance_id=0):
        return ChatResult(success=True, content=CONTENT)

    async def aclose(self):
        pass


@pytest_asyncio.fixture
async def services(tmp_path):
    settings = Settings(db_path=str(tmp_path / "api.db"), content_dir=tmp_path / "content", stage="test")
    store = SQLiteRecordStore(settings.db_path)
    await store.init()
    queue = RecordingQueue()
    lifecycle = SessionLifecycle(
        store=store,
        content=LocalContentStore(settings.content_dir, "http://test", settings.signing_secret),
        catalog=PersonaCatalog([
            PersonaProfile(user_id=f"{i:03d}", name=f"P{i}", system_prompt="p") for i in range(1, 6)
        ]),
        gateway=StubGateway(),
        registry=StaticModelPoolRegistry(["pool-a"]),
        queue=queue,
    )
    svc = Services(settings=settings, lifecycle=lifecycle, queue=queue, gateway=StubGateway())
    app.dependency_overrides[get_services] = lambda: svc
    yield svc
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(services):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


async def _upload(client, data=b"\x89PNG"):
    r = await client.post("/api/sessions/upload-url", json={"fileName": "cover.png", "contentType": "image/png"})
    assert r.status_code == 200
    body = r.json()
    put = await client.put(body["uploadUrl"], content=data)
    assert put.status_code == 200
    return body


async def test_session_id_format():
    session_id = generate_session_id()
    date, suffix = session_id.rsplit("-", 1)
    assert len(date) == 10
    assert len(suffix) == 6 and suffix.isalnum()


async def test_health(client):
    r = await client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.json()["environment"] == "test"


async def test_upload_then_analyze(client, services):
    body = await _upload(client)
    assert body["objectKey"].startswith(f"sessions/{body['sessionId']}/")
    assert body["expiresIn"] == 300

    r = await client.post(
        "/api/sessions/analyze",
        json={"sessionId": body["sessionId"], "objectKey": body["objectKey"], "personaCount": 5},
    )
    assert r.status_code == 201
    assert r.json()["status"] == "analyzing"
    assert services.queue.messages[0].persona_count == 5

    r = await client.get(f"/api/sessions/{body['sessionId']}")
    assert r.status_code == 200
    session = r.json()
    assert session["status"] == "analyzing"
    assert session["totalUsers"] == 5

    r = await client.get(session["contentUrl"])
    assert r.status_code == 200
    assert r.content == b"\x89PNG"
    assert r.headers["content-type"] == "image/png"


async def test_upload_with_bad_signature_rejected(client):
    r = await client.put("/api/uploads/sessions/x/1.png?expires=9999999999&signature=bad", content=b"x")
    assert r.status_code == 403


async def test_analyze_without_upload_is_400(client):
    r = await client.post("/api/sessions/analyze", json={"sessionId": "s1", "objectKey": "sessions/s1/none.png"})
    assert r.status_code == 400


async def test_analyze_rejects_key_outside_content_dir(client):
    r = await client.post("/api/sessions/analyze", json={"sessionId": "s1", "objectKey": "../x"})
    assert r.status_code == 400


async def test_analyze_twice_is_409(client, services):
    body = await _upload(client)
    request = {"sessionId": body["sessionId"], "objectKey": body["objectKey"]}
    assert (await client.post("/api/sessions/analyze", json=request)).status_code == 201
    await services.lifecycle.process(services.queue.messages[0])

    r = await client.post("/api/sessions/analyze", json={**request, "personaCount": 5})
    assert r.status_code == 409
    assert len(services.queue.messages) == 1
    assert (await client.get(f"/api/sessions/{body['sessionId']}")).json()["status"] == "completed"


async def test_analyze_rejects_unsupported_persona_count(client):
    r = await client.post(
        "/api/sessions/analyze", json={"sessionId": "s1", "objectKey": "k.png", "personaCount": 7}
    )
    assert r.status_code == 422


async def test_analyze_requires_object_key(client):
    r = await client.post("/api/sessions/analyze", json={"sessionId": "s1", "objectKey": ""})
    assert r.status_code == 422


async def test_unknown_session_is_404(client):
    assert (await client.get("/api/sessions/nope")).status_code == 404
    assert (await client.get("/api/sessions/nope/users/001")).status_code == 404


async def test_completed_session_users(client, services):
    body = await _upload(client)
    session_id = body["sessionId"]
    await client.post("/api/sessions/analyze", json={"sessionId": session_id, "objectKey": body["objectKey"]})
    await services.lifecycle.process(services.queue.messages[0])

    r = await client.get(f"/api/sessions/{session_id}")
    session = r.json()
    assert session["status"] == "completed"
    assert session["metrics"]["open"] == 100
    assert [s["label"] for s in session["journeySteps"]][0] == "browsed"

    r = await client.get(f"/api/sessions/{session_id}/users", params={"limit": 2})
    page = r.json()
    assert [u["userId"] for u in page["users"]] == ["001", "002"]
    assert page["pagination"]["hasMore"] is True

    r = await client.get(
        f"/api/sessions/{session_id}/users", params={"limit": 2, "nextToken": page["pagination"]["nextToken"]}
    )
    assert [u["userId"] for u in r.json()["users"]] == ["003", "004"]

    r = await client.get(f"/api/sessions/{session_id}/users", params={"status": "opened"})
    assert len(r.json()["users"]) == 5

    r = await client.get(f"/api/sessions/{session_id}/users/002")
    user = r.json()
    assert user["innerMonologue"] == "hm"
    assert "usedFallback" not in user


async def test_list_sessions(client, services):
    for _ in range(2):
        body = await _upload(client)
        await client.post("/api/sessions/analyze", json={"sessionId": body["sessionId"], "objectKey": body["objectKey"]})

    r = await client.get("/api/sessions")
    data = r.json()
    assert len(data["sessions"]) == 2
    assert "journeySteps" not in data["sessions"][0]
    assert data["pagination"]["hasMore"] is False

    r = await client.get("/api/sessions", params={"status": "completed"})
    assert r.json()["sessions"] == []


async def test_bad_pagination_token_is_400(client):
    r = await client.get("/api/sessions", params={"nextToken": "garbage"})
    assert r.status_code == 400
