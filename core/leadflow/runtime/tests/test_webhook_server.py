"""
Tests for WebhookServer - lead replies and operator commands over HTTP.
"""

import hashlib
import hmac as hmac_mod
import json

import aiohttp
import pytest
import pytest_asyncio

from leadflow.config import EngineConfig, RetryPolicy
from leadflow.graph.edge import FlowGraph
from leadflow.llm.mock import ScriptedDecisionService
from leadflow.runtime.event_bus import EventType
from leadflow.runtime.flow_runtime import FlowRuntime
from leadflow.runtime.gateways import OutboxGateway
from leadflow.runtime.webhook_server import WebhookServer, WebhookServerConfig
from leadflow.storage.memory import InMemoryStore

WELCOME = {
    "campaign_id": "welcome",
    "nodes": [
        {"id": "start", "kind": "trigger"},
        {"id": "wait", "kind": "delay", "duration": 1, "unit": "days"},
        {"id": "done", "kind": "closing"},
    ],
    "edges": [{"source": "start", "target": "wait"}, {"source": "wait", "target": "done"}],
}

SUPPORT = {
    "campaign_id": "support",
    "nodes": [
        {"id": "start", "kind": "trigger"},
        {"id": "human", "kind": "handoff", "reason": "needs a person"},
    ],
    "edges": [{"source": "start", "target": "human"}],
}


def _make_runtime() -> FlowRuntime:
    config = EngineConfig(
        retry=RetryPolicy(max_attempts=1, base_delay=0.0),
        worker_count=1,
        lease_wait_seconds=1.0,
        ai_api_key=None,
    )
    return FlowRuntime(
        store=InMemoryStore(),
        ai=ScriptedDecisionService(),
        messaging=OutboxGateway(),
        config=config,
    )


def _sign(body: bytes, secret: str) -> str:
    return "sha256=" + hmac_mod.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest_asyncio.fixture
async def served():
    runtime = _make_runtime()
    for doc in (WELCOME, SUPPORT):
        await runtime.publish_graph(FlowGraph.model_validate(doc))
    await runtime.start()
    server = WebhookServer(runtime, WebhookServerConfig(host="127.0.0.1", port=0))
    await server.start()
    try:
        yield runtime, f"http://127.0.0.1:{server.port}"
    finally:
        await server.stop()
        await runtime.stop()


class TestWebhookServerLifecycle:
    """Tests for server start/stop."""

    @pytest.mark.asyncio
    async def test_start_stop(self):
        server = WebhookServer(_make_runtime(), WebhookServerConfig(port=0))

        await server.start()
        assert server.is_running
        assert server.port is not None

        await server.stop()
        assert not server.is_running
        assert server.port is None

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self):
        server = WebhookServer(_make_runtime())
        await server.stop()
        assert not server.is_running


class TestCommands:
    @pytest.mark.asyncio
    async def test_enroll_returns_context_summary(self, served):
        runtime, base = served
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/commands/enroll", json={"lead_id": "lead-1", "campaign_id": "welcome"}
            ) as resp:
                assert resp.status == 200
                body = await resp.json()

        assert body["status"] == "waiting_timer"
        assert body["current_node_id"] == "wait"
        assert body["graph_version"] == 1
        assert body["pending_wake_at"] is not None

    @pytest.mark.asyncio
    async def test_enroll_unknown_campaign(self, served):
        _, base = served
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/commands/enroll", json={"lead_id": "lead-1", "campaign_id": "ghost"}
            ) as resp:
                assert resp.status == 422

    @pytest.mark.asyncio
    async def test_force_advance_on_handed_off_lead_conflicts(self, served):
        runtime, base = served
        await runtime.enroll("lead-1", "support")

        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/commands/force-advance", json={"lead_id": "lead-1"}
            ) as resp:
                assert resp.status == 409
                assert "handed_off" in (await resp.json())["error"]

    @pytest.mark.asyncio
    async def test_force_advance_moves_waiting_lead(self, served):
        runtime, base = served
        await runtime.enroll("lead-1", "welcome")

        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/commands/force-advance", json={"lead_id": "lead-1", "reason": "called"}
            ) as resp:
                assert resp.status == 200
                body = await resp.json()

        assert body["status"] == "closed"
        assert body["final_status"] == "completed"

    @pytest.mark.asyncio
    async def test_invalid_command(self, served):
        _, base = served
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base}/commands/enroll", json={"lead_id": "x"}) as resp:
                assert resp.status == 400
                body = await resp.json()
                assert body["error"] == "Invalid command"
                assert body["details"][0]["loc"] == ["campaign_id"]


class TestInbound:
    @pytest.mark.asyncio
    async def test_reply_is_queued_and_applied(self, served):
        runtime, base = served
        await runtime.enroll("lead-1", "welcome")
        seen = []

        async def handler(event):
            seen.append(event)

        runtime.event_bus.subscribe([EventType.WEBHOOK_RECEIVED], handler)

        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{base}/inbound", json={"lead_id": "lead-1", "text": "call me"}
            ) as resp:
                assert resp.status == 202
                body = await resp.json()
                assert body["status"] == "accepted"
                assert body["event_id"]

        await runtime.join()
        ctx = await runtime.get_context("lead-1")
        assert ctx.conversation[-1].text == "call me"
        assert ctx.status == "closed"
        assert seen[0].data["path"] == "/inbound"
        assert seen[0].lead_id == "lead-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[1, 2]", b'{"lead_id": "lead-1"}'],
        ids=["not-json", "not-object", "missing-text"],
    )
    async def test_bad_bodies(self, served, body):
        _, base = served
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base}/inbound", data=body) as resp:
                assert resp.status == 400


class TestSignature:
    @pytest.mark.asyncio
    async def test_signature_required_when_secret_set(self):
        runtime = _make_runtime()
        server = WebhookServer(runtime, WebhookServerConfig(port=0, secret="s3cret"))
        await server.start()
        base = f"http://127.0.0.1:{server.port}"
        body = json.dumps({"lead_id": "lead-1", "text": "hi"}).encode()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{base}/inbound", data=body) as resp:
                    assert resp.status == 401
                async with session.post(
                    f"{base}/inbound",
                    data=body,
                    headers={"X-Hub-Signature-256": _sign(body, "wrong")},
                ) as resp:
                    assert resp.status == 401
                async with session.post(
                    f"{base}/inbound",
                    data=body,
                    headers={"X-Hub-Signature-256": _sign(body, "s3cret")},
                ) as resp:
                    assert resp.status == 202
        finally:
            await server.stop()


class TestLeadLookup:
    @pytest.mark.asyncio
    async def test_get_lead(self, served):
        runtime, base = served
        await runtime.enroll("lead-1", "welcome", variables={"plan": "pro"})

        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base}/leads/lead-1") as resp:
                assert resp.status == 200
                body = await resp.json()
            async with session.get(f"{base}/leads/nobody") as resp:
                assert resp.status == 404

        assert body["variables"] == {"plan": "pro"}
        assert [h["node_id"] for h in body["history"]] == ["start", "wait"]
