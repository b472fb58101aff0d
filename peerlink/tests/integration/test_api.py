from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from peerlink.apps.api.main import create_app
from peerlink.persistence.db import Database
from peerlink.services.auth.tokens import LocalSignatureVerifier
from peerlink.tests.utils.tokens import TEST_JWT_SECRET, mint_token


@pytest.fixture
async def client(settings, db):
    app = create_app(settings, db=db, verifier=LocalSignatureVerifier(TEST_JWT_SECRET))
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.mark.asyncio
async def test_health(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "store_ready": False}
    assert "X-Request-Id" in response.headers


@pytest.mark.asyncio
async def test_identity_lifecycle(client) -> None:
    missing = await client.get("/v1/identity", params={"channel": "whatsapp", "peer_id": "+15551230000"})
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "IDENTITY_NOT_FOUND"

    registered = await client.post(
        "/v1/identity/register",
        json={"channel": "whatsapp", "peer_id": "+15551230000", "first_name": "Ana", "last_name": "Lopez"},
    )
    assert registered.status_code == 200
    body = registered.json()
    assert body["meta"]["api_version"] == "v1"
    assert body["data"]["created"] is True
    user_id = body["data"]["identity"]["user_id"]

    verified = await client.post(
        "/v1/identity/verify",
        json={"channel": "web", "peer_id": "sess-9", "token": mint_token("ext-42")},
    )
    assert verified.status_code == 200
    assert verified.json()["data"]["status"] == "created"

    merged = await client.post(
        "/v1/identity/verify",
        json={"channel": "whatsapp", "peer_id": "+15551230000", "token": mint_token("ext-42")},
    )
    assert merged.json()["data"]["status"] == "linked"
    assert merged.json()["data"]["identity"]["user_id"] != user_id

    channels = await client.get("/v1/identity/channels", params={"channel": "web", "peer_id": "sess-9"})
    assert [(c["channel"], c["peer_id"]) for c in channels.json()["data"]] == [
        ("web", "sess-9"),
        ("whatsapp", "+15551230000"),
    ]


@pytest.mark.asyncio
async def test_verify_rejects_bad_token(client) -> None:
    response = await client.post(
        "/v1/identity/verify",
        json={"channel": "web", "peer_id": "sess-9", "token": "abc.def.ghi"},
    )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_verify_not_configured_maps_to_conflict(settings, db) -> None:
    app = create_app(settings.model_copy(update={"auth_mode": None}), db=db)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/v1/identity/verify",
            json={"channel": "web", "peer_id": "sess-9", "token": "abc.def.ghi"},
        )
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "VERIFICATION_NOT_CONFIGURED"


@pytest.mark.asyncio
async def test_store_outage_maps_to_service_unavailable(tmp_path, settings) -> None:
    broken = Database(f"sqlite+aiosqlite:///{tmp_path}/missing/dir/peerlink.db")
    app = create_app(settings, db=broken)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/identity", params={"channel": "web", "peer_id": "sess-9"})
    await broken.dispose()
    assert response.status_code == 503
    assert response.json()["error"]["message"] == "Identity service is temporarily unavailable."


@pytest.mark.asyncio
async def test_validation_errors_use_envelope(client) -> None:
    response = await client.post("/v1/identity/register", json={"channel": "web", "peer_id": "sess-9"})
    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "REQUEST_VALIDATION_ERROR"
    assert [issue["loc"] for issue in error["errors"]] == [["body", "first_name"]]

    missing = await client.get("/v1/identity", params={"channel": "web", "peer_id": "sess-9"})
    assert "errors" not in missing.json()["error"]


@pytest.mark.asyncio
async def test_hooks_record_once_per_direction(client) -> None:
    context = {"sessionKey": "agent:a1:telegram:direct:777"}
    started = await client.post(
        "/v1/hooks/before_agent_start", json={"event": {"prompt": "hello"}, "context": context}
    )
    assert started.status_code == 200
    data = started.json()["data"]
    assert data["recorded"] is True
    assert "status: unregistered" in data["prepend_context"]

    received = await client.post(
        "/v1/hooks/message_received", json={"event": {"from": "777", "content": "hello"}}
    )
    assert received.json()["data"] == {"prepend_context": None, "recorded": False}

    ended = await client.post(
        "/v1/hooks/agent_end",
        json={"event": {"messages": [{"role": "assistant", "content": "hi there"}]}, "context": context},
    )
    assert ended.json()["data"]["recorded"] is True

    conversations = await client.get("/v1/conversations")
    entries = conversations.json()["data"]
    assert len(entries) == 1
    assert entries[0]["messageCount"] == 2
    assert entries[0]["displayName"] == "gateway:agent:a1:telegram:direct:777"

    messages = await client.get("/v1/conversations/agent:a1:telegram:direct:777/messages")
    assert [(m["role"], m["content"]) for m in messages.json()["data"]] == [
        ("user", "hello"),
        ("assistant", "hi there"),
    ]


@pytest.mark.asyncio
async def test_unknown_hook_and_command(client) -> None:
    assert (await client.post("/v1/hooks/gateway_stop", json={})).status_code == 404
    assert (await client.post("/v1/commands/forget", json={})).status_code == 404
    missing = await client.get("/v1/conversations/nope/messages")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_commands_endpoint(client) -> None:
    response = await client.post(
        "/v1/commands/register",
        json={"args": "Ana Lopez", "channel": "whatsapp", "peer_id": "+15551230000"},
    )
    assert response.status_code == 200
    assert response.json()["data"]["text"].startswith("Registered as Ana Lopez.")

    whoami = await client.post("/v1/commands/whoami", json={"channel": "whatsapp", "peer_id": "+15551230000"})
    assert "Verified: no" in whoami.json()["data"]["text"]


@pytest.mark.asyncio
async def test_metrics_expose_counters(client) -> None:
    await client.post(
        "/v1/identity/verify",
        json={"channel": "web", "peer_id": "sess-9", "token": mint_token("ext-1")},
    )
    response = await client.get("/v1/ops/metrics")
    assert response.status_code == 200
    assert response.json()["data"]["counters"]["token_verify_accepted_total"] == 1
    requests = response.json()["data"]["requests"]
    assert requests["count"] == 1
    assert requests["by_status"] == {"2xx": 1}
