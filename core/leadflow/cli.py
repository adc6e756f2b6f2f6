"""
Command-line interface for the lead flow engine.

Usage:
    leadflow validate campaigns/welcome.json
    leadflow publish campaigns/welcome.json --store ./store
    leadflow simulate campaigns/welcome.json --leads 1000
    leadflow serve --graph campaigns/welcome.json --port 8080 --secret s3cret \
        --messaging-url https://msg.example.com
    leadflow status lead-42 --store ./store
"""

import argparse
import asyncio
import json
import sys
from collections import Counter
from datetime import datetime
from pathlib import Path

import httpx

from leadflow.config import EngineConfig, RetryPolicy
from leadflow.errors import GraphValidationError
from leadflow.graph.edge import FlowGraph
from leadflow.graph.nodes import NodeKind
from leadflow.graph.registry import GraphRegistry
from leadflow.graph.validator import load_graph_file
from leadflow.llm.litellm_service import LiteLLMDecisionService
from leadflow.llm.mock import ScriptedDecisionService
from leadflow.observability.logging import configure_logging
from leadflow.runtime.driver import FlowDriver
from leadflow.runtime.flow_runtime import FlowRuntime
from leadflow.runtime.gateways import HttpMessagingGateway, OutboxGateway, WebhookClient
from leadflow.runtime.scheduler import WakeScheduler
from leadflow.runtime.webhook_server import WebhookServer, WebhookServerConfig, context_summary
from leadflow.schemas.context import LeadExecutionContext, utc_now
from leadflow.schemas.events import EnrollLead, InboundMessage
from leadflow.storage.file_store import FileStore
from leadflow.storage.memory import InMemoryStore


class SimulatedClock:
    """Clock the simulator moves forward by hand."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now


def _load_or_report(path: str) -> FlowGraph | None:
    try:
        return load_graph_file(path)
    except GraphValidationError as e:
        print(f"✗ {path} is invalid:", file=sys.stderr)
        for error in e.errors:
            print(f"  - {error}", file=sys.stderr)
        return None
    except OSError as e:
        print(f"✗ Cannot read {path}: {e}", file=sys.stderr)
        return None


# ---------------------------------------------------------------------------
# validate / publish / status
# ---------------------------------------------------------------------------


def cmd_validate(args: argparse.Namespace) -> int:
    failed = 0
    for path in args.graphs:
        graph = _load_or_report(path)
        if graph is None:
            failed += 1
            continue
        kinds = Counter(node.kind for node in graph.nodes.values())
        summary = ", ".join(f"{count} {kind}" for kind, count in sorted(kinds.items()))
        print(f"✓ {path}: campaign '{graph.campaign_id}' ({summary})")
    return 1 if failed else 0


async def _publish(paths: list[str], store_path: Path) -> int:
    registry = GraphRegistry(FileStore(store_path))
    for path in paths:
        graph = _load_or_report(path)
        if graph is None:
            return 1
        published = await registry.publish(graph)
        print(f"✓ Published '{published.campaign_id}' v{published.version}")
    return 0


def cmd_publish(args: argparse.Namespace) -> int:
    return asyncio.run(_publish(args.graphs, _store_path(args)))


async def _status(lead_id: str, store_path: Path) -> LeadExecutionContext | None:
    return await FileStore(store_path).load_context(lead_id)


def cmd_status(args: argparse.Namespace) -> int:
    try:
        ctx = asyncio.run(_status(args.lead_id, _store_path(args)))
    except ValueError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    if ctx is None:
        print(f"✗ Lead '{args.lead_id}' not found", file=sys.stderr)
        return 1
    if args.full:
        print(ctx.model_dump_json(indent=2))
    else:
        print(json.dumps(context_summary(ctx), indent=2))
    return 0


def _store_path(args: argparse.Namespace) -> Path:
    return Path(args.store).expanduser() if args.store else EngineConfig().store_path


# ---------------------------------------------------------------------------
# simulate
# ---------------------------------------------------------------------------


async def simulate(
    graph: FlowGraph,
    leads: int,
    source: str = "inbound",
    reply: str | None = None,
) -> dict:
    """
    Run ``leads`` leads through ``graph`` offline.

    Everything is in memory: messages go to an outbox, webhooks are answered
    locally with 200, agents use a scripted AI, and time jumps straight to
    the next scheduled wake.
    """
    clock = SimulatedClock()
    store = InMemoryStore()
    registry = GraphRegistry(store)
    published = await registry.publish(graph)
    outbox = OutboxGateway()
    webhooks = WebhookClient(
        httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    )
    driver = FlowDriver(
        store=store,
        registry=registry,
        ai=ScriptedDecisionService(),
        messaging=outbox,
        webhooks=webhooks,
        config=EngineConfig(retry=RetryPolicy(max_attempts=1, base_delay=0.0), worker_count=1),
        clock=clock,
    )

    async def dispatch(event) -> None:
        await driver.handle(event)

    scheduler = WakeScheduler(store, dispatch=dispatch, clock=clock)

    for i in range(leads):
        await driver.handle(
            EnrollLead(lead_id=f"sim-{i:05d}", campaign_id=published.campaign_id, source=source)
        )
        if reply:
            await driver.handle(InboundMessage(lead_id=f"sim-{i:05d}", text=reply))

    while (next_at := await store.next_wake_at()) is not None:
        clock.now = max(clock.now, next_at)
        if not await scheduler.run_due():
            break
    await webhooks.aclose()

    contexts = await store.list_contexts()
    split_ports = {
        node.id: set(node.branches)
        for node in published.nodes.values()
        if node.kind == NodeKind.SPLIT
    }
    branches: Counter = Counter()
    for ctx in contexts:
        for entry in ctx.history:
            if entry.port and entry.port in split_ports.get(entry.node_id, ()):
                branches[f"{entry.node_id}:{entry.port}"] += 1

    return {
        "campaign_id": published.campaign_id,
        "leads": len(contexts),
        "status": dict(Counter(ctx.status.value for ctx in contexts)),
        "final_status": dict(
            Counter(ctx.final_status.value for ctx in contexts if ctx.final_status)
        ),
        "branches": dict(branches),
        "messages_sent": len(outbox.sent),
    }


def cmd_simulate(args: argparse.Namespace) -> int:
    graph = _load_or_report(args.graph)
    if graph is None:
        return 1
    report = asyncio.run(simulate(graph, args.leads, source=args.source, reply=args.reply))
    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    print(f"Simulated {report['leads']} lead(s) through '{report['campaign_id']}'")
    for title, counts in (
        ("Status", report["status"]),
        ("Final status", report["final_status"]),
        ("Branches", report["branches"]),
    ):
        if counts:
            print(f"{title}:")
            for name, count in sorted(counts.items()):
                print(f"  {name}: {count}")
    print(f"Messages sent: {report['messages_sent']}")
    return 0


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


async def _serve(args: argparse.Namespace) -> int:
    config = EngineConfig()
    if args.workers:
        config.worker_count = args.workers
    store = FileStore(_store_path(args))
    ai = LiteLLMDecisionService(model=args.model or config.ai_model, api_key=config.ai_api_key)
    messaging = HttpMessagingGateway(args.messaging_url, api_key=args.messaging_key)
    webhooks = WebhookClient()
    runtime = FlowRuntime(store, ai, messaging, webhooks=webhooks, config=config)

    for path in args.graph or []:
        graph = _load_or_report(path)
        if graph is None:
            return 1
        published = await runtime.publish_graph(graph)
        print(f"✓ Published '{published.campaign_id}' v{published.version}")

    server = WebhookServer(
        runtime, WebhookServerConfig(host=args.host, port=args.port, secret=args.secret)
    )
    await runtime.start()
    await server.start()
    print(f"Listening on http://{args.host}:{server.port}")
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()
        await runtime.stop()
        await webhooks.aclose()
        await messaging.aclose()
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_serve(args))
    except KeyboardInterrupt:
        print("\nShutting down")
        return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    validate_parser = subparsers.add_parser("validate", help="Validate graph documents")
    validate_parser.add_argument("graphs", nargs="+", help="Graph JSON files")
    validate_parser.set_defaults(func=cmd_validate)

    publish_parser = subparsers.add_parser("publish", help="Publish graphs to the store")
    publish_parser.add_argument("graphs", nargs="+", help="Graph JSON files")
    publish_parser.add_argument("--store", help="Store directory (default from config)")
    publish_parser.set_defaults(func=cmd_publish)

    simulate_parser = subparsers.add_parser("simulate", help="Run a graph offline")
    simulate_parser.add_argument("graph", help="Graph JSON file")
    simulate_parser.add_argument("--leads", type=int, default=100, help="Number of leads")
    simulate_parser.add_argument("--source", default="inbound", help="Enrollment source")
    simulate_parser.add_argument("--reply", help="Send this reply from every lead after entry")
    simulate_parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    simulate_parser.set_defaults(func=cmd_simulate)

    serve_parser = subparsers.add_parser("serve", help="Run the engine with its HTTP server")
    serve_parser.add_argument("--graph", action="append", help="Publish this graph at startup")
    serve_parser.add_argument("--store", help="Store directory (default from config)")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8080)
    serve_parser.add_argument("--secret", help="HMAC secret for X-Hub-Signature-256")
    serve_parser.add_argument("--workers", type=int, help="Worker count")
    serve_parser.add_argument("--model", help="Override the AI model")
    serve_parser.add_argument(
        "--messaging-url", required=True, help="Outbound messaging service base URL"
    )
    serve_parser.add_argument("--messaging-key", help="Bearer token for the messaging service")
    serve_parser.set_defaults(func=cmd_serve)

    status_parser = subparsers.add_parser("status", help="Show a lead's execution context")
    status_parser.add_argument("lead_id")
    status_parser.add_argument("--store", help="Store directory (default from config)")
    status_parser.add_argument("--full", action="store_true", help="Print the whole context")
    status_parser.set_defaults(func=cmd_status)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="leadflow",
        description="Lead flow engine - run multi-step outreach campaigns",
    )
    parser.add_argument("--log-level", default="WARNING", help="Log level")
    parser.add_argument(
        "--log-format", default="auto", choices=["auto", "human", "json"], help="Log format"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, format=args.log_format)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
