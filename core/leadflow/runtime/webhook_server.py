"""
Webhook HTTP Server - receives lead replies and operator commands.

Uses aiohttp for a lightweight embedded HTTP server that runs within the
runtime's asyncio loop.

Routes:
    POST /inbound                       lead reply, queued (202)
    POST /commands/enroll               enroll a lead, applied now (200)
    POST /commands/force-advance        operator override (200 / 409)
    POST /commands/return-from-handoff  hand a lead back (200 / 409)
    GET  /leads/{lead_id}               current context
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from leadflow.errors import CommandRejectedError, GraphValidationError
from leadflow.runtime.flow_runtime import FlowRuntime
from leadflow.schemas.context import LeadExecutionContext
from leadflow.schemas.events import EnrollLead, ForceAdvance, InboundMessage, ReturnFromHandoff

logger = logging.getLogger(__name__)

_COMMANDS = {
    "/commands/enroll": EnrollLead,
    "/commands/force-advance": ForceAdvance,
    "/commands/return-from-handoff": ReturnFromHandoff,
}


@dataclass
class WebhookServerConfig:
    """Configuration for the webhook HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080
    secret: str | None = None  # For HMAC-SHA256 signature verification


def context_summary(ctx: LeadExecutionContext | None) -> dict[str, Any]:
    if ctx is None:
        return {"status": "dropped"}
    return {
        "lead_id": ctx.lead_id,
        "campaign_id": ctx.campaign_id,
        "graph_version": ctx.graph_version,
        "current_node_id": ctx.current_node_id,
        "status": ctx.status.value,
        "final_status": ctx.final_status.value if ctx.final_status else None,
        "pending_wake_at": ctx.pending_wake_at.isoformat() if ctx.pending_wake_at else None,
    }


def _invalid(what: str, error: ValidationError) -> web.Response:
    details = error.errors(include_url=False, include_context=False)
    return web.json_response({"error": f"Invalid {what}", "details": details}, status=400)


class WebhookServer:
    """
    Embedded HTTP server in front of a FlowRuntime.

    Lifecycle:
        server = WebhookServer(runtime, WebhookServerConfig(port=8080, secret="..."))
        await server.start()
        # ... server running ...
        await server.stop()
    """

    def __init__(self, runtime: FlowRuntime, config: WebhookServerConfig | None = None):
        self._runtime = runtime
        self._config = config or WebhookServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/inbound", self._handle_inbound)
        for path in _COMMANDS:
            app.router.add_post(path, self._handle_command)
        app.router.add_get("/leads/{lead_id}", self._handle_lead)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Webhook server started on {self._config.host}:{self._config.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Webhook server stopped")

    async def _read_payload(self, request: web.Request) -> dict[str, Any] | web.Response:
        try:
            body = await request.read()
        except Exception:
            return web.json_response({"error": "Failed to read request body"}, status=400)

        if self._config.secret and not self._verify_signature(request, body, self._config.secret):
            return web.json_response({"error": "Invalid signature"}, status=401)

        try:
            payload = json.loads(body) if body else {}
        except (json.JSONDecodeError, ValueError):
            return web.json_response({"error": "Body must be JSON"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        await self._runtime.event_bus.emit_webhook_received(
            path=request.path,
            method=request.method,
            payload=payload,
            lead_id=str(payload.get("lead_id", "")),
        )
        return payload

    async def _handle_inbound(self, request: web.Request) -> web.Response:
        payload = await self._read_payload(request)
        if isinstance(payload, web.Response):
            return payload
        try:
            event = InboundMessage.model_validate(payload)
        except ValidationError as e:
            return _invalid("message", e)

        await self._runtime.submit(event)
        return web.json_response({"status": "accepted", "event_id": event.event_id}, status=202)

    async def _handle_command(self, request: web.Request) -> web.Response:
        payload = await self._read_payload(request)
        if isinstance(payload, web.Response):
            return payload
        try:
            event = _COMMANDS[request.path].model_validate(payload)
        except ValidationError as e:
            return _invalid("command", e)

        try:
            ctx = await self._runtime.process(event)
        except CommandRejectedError as e:
            return web.json_response({"error": str(e)}, status=409)
        except GraphValidationError as e:
            return web.json_response({"error": str(e), "details": e.errors}, status=422)
        return web.json_response(context_summary(ctx))

    async def _handle_lead(self, request: web.Request) -> web.Response:
        lead_id = request.match_info["lead_id"]
        try:
            ctx = await self._runtime.get_context(lead_id)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        if ctx is None:
            return web.json_response({"error": "Not found"}, status=404)
        return web.json_response(json.loads(ctx.model_dump_json()))

    def _verify_signature(self, request: web.Request, body: bytes, secret: str) -> bool:
        """Verify HMAC-SHA256 signature from X-Hub-Signature-256 header."""
        signature_header = request.headers.get("X-Hub-Signature-256", "")
        if not signature_header.startswith("sha256="):
            return False

        expected_sig = signature_header[7:]
        computed_sig = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected_sig, computed_sig)

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None
