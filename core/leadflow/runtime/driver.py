"""
Flow Driver - applies lead events to lead contexts.

For one event the driver:
1. Takes the lead's lease
2. Loads the context and its pinned graph, drops stale or duplicate events
3. Evaluates the current node (consulting the AI first for agent nodes)
4. Delivers side effects with retries, escalating on exhaustion
5. Applies the outcome and persists the context with an optimistic check
6. Repeats for the next node while the outcome is an immediate advance

Every hop is saved before the next begins, so a crash loses at most the
hop in flight. A lead is only ever touched while its lease is held.
"""

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from leadflow.config import EngineConfig
from leadflow.errors import (
    AIServiceError,
    CommandRejectedError,
    ConcurrencyConflict,
    GraphValidationError,
    StaleEventError,
    TransientSideEffectError,
)
from leadflow.graph.edge import DEFAULT_PORT, FlowGraph
from leadflow.graph.evaluators import EvaluationContext, evaluate
from leadflow.graph.evaluators.agent import is_filled
from leadflow.graph.evaluators.jump import GOTO_PORT
from leadflow.graph.nodes import TRANSFER_SOURCE, AgentNode, NodeKind, NodeSpec
from leadflow.graph.outcome import (
    Advance,
    CallWebhook,
    Effect,
    Escalate,
    Evaluation,
    Outcome,
    SendMessage,
    Terminate,
    TransferCampaign,
    Wait,
    outcome_name,
)
from leadflow.graph.registry import GraphRegistry
from leadflow.graph.summary import HandoffSummarizer
from leadflow.llm.decision import AIDecision, AIDecisionRequest, AIDecisionService
from leadflow.observability.logging import lead_trace, set_trace_context
from leadflow.runtime.event_bus import EventBus
from leadflow.runtime.gateways import MessagingGateway, WebhookClient
from leadflow.runtime.lease import LeadLeases, LeaseHandle
from leadflow.runtime.retry import retry_async
from leadflow.schemas.context import (
    Enrollment,
    Escalation,
    HistoryEntry,
    LeadExecutionContext,
    LeadStatus,
    utc_now,
)
from leadflow.schemas.events import (
    EXTERNAL_EVENT_KINDS,
    EnrollLead,
    ForceAdvance,
    InboundMessage,
    LeadEvent,
    NodeEntered,
    ReturnFromHandoff,
    TimerFired,
)
from leadflow.storage.backend import DurableStore

logger = logging.getLogger(__name__)

DELIVERED_EFFECT_LIMIT = 200
SUMMARY_VARIABLE = "last_handoff_summary"

Clock = Callable[[], datetime]
RngFactory = Callable[[str, str, int], random.Random]


def seeded_rng(lead_id: str, node_id: str, generation: int) -> random.Random:
    """One deterministic stream per (lead, node, generation)."""
    return random.Random(f"{lead_id}:{node_id}:{generation}")


@dataclass
class Transition:
    """One applied hop, for announcing after it is saved."""

    node: NodeSpec
    outcome: Outcome
    previous_campaign: str
    previous_status: LeadStatus
    previous_generation: int
    previous_wake: datetime | None
    next_event: LeadEvent | None = None
    summary: str | None = None


class FlowDriver:
    """
    Applies events to lead contexts, one lead at a time.

    Example:
        driver = FlowDriver(store, registry, ai, OutboxGateway())
        await driver.handle(EnrollLead(lead_id="lead-1", campaign_id="welcome"))
        await driver.handle(InboundMessage(lead_id="lead-1", text="Tell me more"))
    """

    def __init__(
        self,
        store: DurableStore,
        registry: GraphRegistry,
        ai: AIDecisionService,
        messaging: MessagingGateway,
        webhooks: WebhookClient | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Clock = utc_now,
        rng_factory: RngFactory = seeded_rng,
        on_wake_scheduled: Callable[[datetime], None] | None = None,
        owner: str | None = None,
    ):
        self.store = store
        self.registry = registry
        self.ai = ai
        self.messaging = messaging
        self.webhooks = webhooks or WebhookClient()
        self.config = config or EngineConfig()
        self.event_bus = event_bus
        self.clock = clock
        self.rng_factory = rng_factory
        self.on_wake_scheduled = on_wake_scheduled
        self.summarizer = HandoffSummarizer(ai, window=self.config.conversation_window)
        self.leases = LeadLeases(
            store,
            clock=clock,
            ttl_seconds=self.config.lease_ttl_seconds,
            wait_seconds=self.config.lease_wait_seconds,
            owner=owner,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, event: LeadEvent) -> LeadExecutionContext | None:
        """
        Apply ``event`` and everything it immediately causes.

        Returns:
            The saved context, or None when the event was stale and dropped

        Raises:
            CommandRejectedError: An operator command does not fit the lead's state
            TransientSideEffectError: The context kept changing underneath us
            LeaseUnavailableError: Another worker held the lead for too long
        """
        with lead_trace(trace_id=event.event_id, lead_id=event.lead_id):
            async with self.leases.hold(event.lead_id) as lease:
                try:
                    try:
                        return await self._process(event, lease)
                    except ConcurrencyConflict as first:
                        logger.warning(f"{first}; re-applying {event.kind} once")
                        try:
                            return await self._process(event, lease)
                        except ConcurrencyConflict as second:
                            raise TransientSideEffectError(
                                f"Lead '{event.lead_id}' changed concurrently twice"
                            ) from second
                except StaleEventError as e:
                    logger.info(f"Dropped {event.kind} for lead {event.lead_id}: {e}")
                    if self.event_bus:
                        await self.event_bus.emit_event_dropped(event.lead_id, event.kind, str(e))
                    return None

    async def _process(self, event: LeadEvent, lease: LeaseHandle) -> LeadExecutionContext:
        ctx = await self.store.load_context(event.lead_id)

        if ctx is not None and ctx.has_seen_event(event.event_id):
            if ctx.status != LeadStatus.RUNNING:
                raise StaleEventError(f"event {event.event_id} already applied")
            # Applied, but the chain it started was cut short; finish it
            return await self._resume(ctx, lease)
        if isinstance(event, EnrollLead):
            return await self._enroll(ctx, event, lease)
        if ctx is None:
            if isinstance(event, TimerFired):
                await self.store.cancel_wake(event.lead_id, event.generation)
            raise StaleEventError("lead has no execution context")
        if isinstance(event, NodeEntered):
            if ctx.status != LeadStatus.RUNNING:
                raise StaleEventError(f"lead is {ctx.status}, not between hops")
            return await self._resume(ctx, lease)

        set_trace_context(campaign_id=ctx.campaign_id)
        if ctx.status == LeadStatus.CLOSED:
            if isinstance(event, TimerFired):
                await self.store.cancel_wake(ctx.lead_id, event.generation)
            raise StaleEventError("lead is closed")

        graph = await self.registry.load(ctx.campaign_id, ctx.graph_version)

        if isinstance(event, ForceAdvance):
            return await self._force_advance(ctx, graph, event, lease)
        if isinstance(event, ReturnFromHandoff):
            return await self._return_from_handoff(ctx, graph, event, lease)
        if isinstance(event, TimerFired):
            await self._check_timer(ctx, event)

        if ctx.status == LeadStatus.HANDED_OFF:
            if isinstance(event, InboundMessage):
                # Kept for the operator; automation stays out of it
                ctx.record_turn("lead", event.text, event.received_at, ctx.current_node_id)
                ctx.remember_event(event.event_id)
                return await self.store.save_context(ctx, ctx.version)
            raise StaleEventError("lead is with a human operator")

        if isinstance(event, InboundMessage):
            ctx.record_turn("lead", event.text, event.received_at, ctx.current_node_id)

        return await self._run_chain(ctx, graph, event, lease, expected_version=ctx.version)

    async def _resume(self, ctx: LeadExecutionContext, lease: LeaseHandle) -> LeadExecutionContext:
        set_trace_context(campaign_id=ctx.campaign_id)
        graph = await self.registry.load(ctx.campaign_id, ctx.graph_version)
        logger.info(f"Resuming lead {ctx.lead_id} at '{ctx.current_node_id}'")
        entered = NodeEntered(lead_id=ctx.lead_id)
        return await self._run_chain(ctx, graph, entered, lease, expected_version=ctx.version)

    async def _check_timer(self, ctx: LeadExecutionContext, event: TimerFired) -> None:
        if ctx.status != LeadStatus.WAITING_TIMER or event.generation != ctx.generation:
            # Superseded; make sure the orphaned wake does not fire again
            await self.store.cancel_wake(ctx.lead_id, event.generation)
            raise StaleEventError(
                f"timer for generation {event.generation} is stale "
                f"(lead at generation {ctx.generation}, {ctx.status})"
            )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _enroll(
        self, existing: LeadExecutionContext | None, event: EnrollLead, lease: LeaseHandle
    ) -> LeadExecutionContext:
        if existing is not None and not event.rebind:
            raise StaleEventError(f"lead already enrolled in '{existing.campaign_id}'")

        graph = await self.registry.load(event.campaign_id)
        entry = graph.require_node(graph.entry_node_id)
        if not entry.admits(event.source):
            # No context is created, so the lead can still enroll from an admitted source
            raise StaleEventError(f"trigger '{entry.id}' does not admit source '{event.source}'")
        now = self.clock()
        set_trace_context(campaign_id=graph.campaign_id)

        ctx = LeadExecutionContext(
            lead_id=event.lead_id,
            campaign_id=graph.campaign_id,
            graph_version=graph.version,
            current_node_id=graph.entry_node_id,
            channel=event.source,
            profile=dict(event.profile),
            variables=dict(event.variables),
            enrollments=[
                Enrollment(
                    campaign_id=graph.campaign_id,
                    graph_version=graph.version,
                    enrolled_at=now,
                    reason="enrolled",
                )
            ],
            created_at=now,
            updated_at=now,
        )
        expected_version = None
        if existing is not None:
            # Re-enrollment keeps the lead's record; only the binding restarts
            ctx.profile = {**existing.profile, **event.profile}
            ctx.variables = {**existing.variables, **event.variables}
            ctx.history = existing.history
            ctx.conversation = existing.conversation
            ctx.enrollments = existing.enrollments + ctx.enrollments
            ctx.tags = existing.tags
            ctx.lead_status = existing.lead_status
            ctx.recent_event_ids = existing.recent_event_ids
            ctx.delivered_effects = existing.delivered_effects
            ctx.generation = existing.generation + 1
            ctx.created_at = existing.created_at
            expected_version = existing.version
            await self.store.cancel_wake(existing.lead_id)

        logger.info(f"Enrolling lead {ctx.lead_id} in '{graph.campaign_id}' v{graph.version}")
        if self.event_bus:
            await self.event_bus.emit_lead_enrolled(
                ctx.lead_id, graph.campaign_id, graph.version, event.source
            )
        return await self._run_chain(ctx, graph, event, lease, expected_version=expected_version)

    async def _force_advance(
        self,
        ctx: LeadExecutionContext,
        graph: FlowGraph,
        event: ForceAdvance,
        lease: LeaseHandle,
    ) -> LeadExecutionContext:
        if ctx.status == LeadStatus.HANDED_OFF:
            raise CommandRejectedError(f"Cannot force-advance a lead that is {ctx.status}")

        node = graph.require_node(ctx.current_node_id)
        if node.kind == NodeKind.GOTO:
            port, target = GOTO_PORT, node.target_node_id
        else:
            port = event.port or DEFAULT_PORT
            target = graph.edge_target(node.id, port)
        if target is None:
            raise CommandRejectedError(f"Node '{node.id}' has no edge on port '{port}'")

        logger.info(f"Force-advancing lead {ctx.lead_id} from '{node.id}' via '{port}'")
        forced = Evaluation(
            outcome=Advance(target_node_id=target, port=port),
            detail={"forced": True, "reason": event.reason},
        )
        return await self._run_chain(
            ctx, graph, event, lease, expected_version=ctx.version, first=forced
        )

    async def _return_from_handoff(
        self,
        ctx: LeadExecutionContext,
        graph: FlowGraph,
        event: ReturnFromHandoff,
        lease: LeaseHandle,
    ) -> LeadExecutionContext:
        if ctx.status != LeadStatus.HANDED_OFF:
            raise CommandRejectedError(f"Lead is {ctx.status}, not handed off")

        resume = event.resume_node_id or (ctx.escalation.resume_node_id if ctx.escalation else None)
        if resume is None:
            raise CommandRejectedError("No resume node given and none recorded at handoff")
        if graph.get_node(resume) is None:
            raise CommandRejectedError(f"Resume node '{resume}' is not in the lead's graph")

        now = self.clock()
        expected_version = ctx.version
        ctx.history.append(
            HistoryEntry(
                node_id=resume,
                campaign_id=ctx.campaign_id,
                graph_version=ctx.graph_version,
                entered_at=now,
                outcome="resume",
                detail={"note": event.note} if event.note else {},
            )
        )
        ctx.status = LeadStatus.RUNNING
        ctx.current_node_id = resume
        ctx.escalation = None
        ctx.generation += 1
        ctx.remember_event(event.event_id)

        logger.info(f"Lead {ctx.lead_id} returned to automation at '{resume}'")
        if self.event_bus:
            await self.event_bus.emit_lead_returned(ctx.lead_id, ctx.campaign_id, resume)
        entered = NodeEntered(lead_id=ctx.lead_id)
        return await self._run_chain(ctx, graph, entered, lease, expected_version=expected_version)

    async def migrate(
        self,
        lead_id: str,
        to_version: int | None = None,
        node_map: dict[str, str] | None = None,
    ) -> LeadExecutionContext:
        """
        Re-pin a lead to another version of its campaign.

        The lead keeps its position (optionally renamed through ``node_map``),
        status and pending timer. Raises CommandRejectedError when the
        position does not exist, or is a different kind, in the target version.
        """
        with lead_trace(lead_id=lead_id):
            async with self.leases.hold(lead_id):
                ctx = await self.store.load_context(lead_id)
                if ctx is None:
                    raise CommandRejectedError(f"Lead '{lead_id}' has no execution context")
                if ctx.status == LeadStatus.CLOSED:
                    raise CommandRejectedError(f"Lead '{lead_id}' is closed")

                old_graph = await self.registry.load(ctx.campaign_id, ctx.graph_version)
                new_graph = await self.registry.load(ctx.campaign_id, to_version)
                node_id = (node_map or {}).get(ctx.current_node_id, ctx.current_node_id)
                old_node = old_graph.require_node(ctx.current_node_id)
                new_node = new_graph.get_node(node_id)
                if new_node is None or new_node.kind != old_node.kind:
                    raise CommandRejectedError(
                        f"Node '{node_id}' has no {old_node.kind} counterpart in "
                        f"'{ctx.campaign_id}' v{new_graph.version}"
                    )

                expected_version = ctx.version
                ctx.history.append(
                    HistoryEntry(
                        node_id=node_id,
                        campaign_id=ctx.campaign_id,
                        graph_version=new_graph.version,
                        entered_at=self.clock(),
                        outcome="migrate",
                        detail={
                            "from_version": ctx.graph_version,
                            "from_node": ctx.current_node_id,
                        },
                    )
                )
                ctx.graph_version = new_graph.version
                ctx.current_node_id = node_id
                saved = await self.store.save_context(ctx, expected_version)
                logger.info(f"Migrated lead {lead_id} to v{new_graph.version} at '{node_id}'")
                return saved

    async def escalate(
        self, event: LeadEvent, reason: str, error: str
    ) -> LeadExecutionContext | None:
        """
        Hand the lead to a human because ``event`` could not be applied.

        The lead stays on its current node, which becomes the resume point.
        Leads that are closed, already handed off or never enrolled are left
        alone and None is returned.
        """
        with lead_trace(trace_id=event.event_id, lead_id=event.lead_id):
            async with self.leases.hold(event.lead_id) as lease:
                ctx = await self.store.load_context(event.lead_id)
                if ctx is None or ctx.status in (LeadStatus.CLOSED, LeadStatus.HANDED_OFF):
                    state = ctx.status if ctx else "not enrolled"
                    logger.error(f"Gave up on {event.kind} for lead {event.lead_id} ({state})")
                    return None

                set_trace_context(campaign_id=ctx.campaign_id)
                graph = await self.registry.load(ctx.campaign_id, ctx.graph_version)
                if isinstance(event, InboundMessage) and not ctx.has_seen_event(event.event_id):
                    ctx.record_turn("lead", event.text, event.received_at, ctx.current_node_id)

                escalation = Evaluation(
                    outcome=Escalate(reason=reason, resume_node_id=ctx.current_node_id),
                    detail={"error": error, "event": event.kind},
                )
                return await self._run_chain(
                    ctx, graph, event, lease, expected_version=ctx.version, first=escalation
                )

    # ------------------------------------------------------------------
    # Chain
    # ------------------------------------------------------------------

    async def _run_chain(
        self,
        ctx: LeadExecutionContext,
        graph: FlowGraph,
        event: LeadEvent,
        lease: LeaseHandle,
        expected_version: int | None,
        first: Evaluation | None = None,
    ) -> LeadExecutionContext:
        steps = 0
        while True:
            node = graph.require_node(ctx.current_node_id)
            set_trace_context(node_id=node.id, campaign_id=ctx.campaign_id)
            now = self.clock()
            if self.event_bus and isinstance(event, (NodeEntered, EnrollLead)):
                await self.event_bus.emit_node_entered(
                    ctx.lead_id, ctx.campaign_id, node.id, node.kind
                )

            if first is not None:
                evaluation, first = first, None
            elif steps >= self.config.max_chain_steps:
                logger.error(f"Lead {ctx.lead_id} exceeded {steps} hops without waiting")
                evaluation = Evaluation(
                    outcome=Escalate(reason="automation loop", resume_node_id=node.id),
                    detail={"steps": steps},
                )
            else:
                evaluation = await self._evaluate(node, graph, ctx, event, now)

            evaluation = await self._deliver_effects(ctx, node, evaluation, now)
            transition, graph = await self._apply(ctx, graph, node, evaluation, now)

            if event.kind in EXTERNAL_EVENT_KINDS:
                ctx.remember_event(event.event_id)
            ctx.updated_at = now
            ctx = await self.store.save_context(ctx, expected_version)
            expected_version = ctx.version

            await self._sync_wake(ctx, transition)
            await self._announce(ctx, transition, event)

            if transition.next_event is None:
                return ctx
            await lease.renew()
            event = transition.next_event
            steps += 1

    async def _evaluate(
        self,
        node: NodeSpec,
        graph: FlowGraph,
        ctx: LeadExecutionContext,
        event: LeadEvent,
        now: datetime,
    ) -> Evaluation:
        decision = None
        if node.kind == NodeKind.AGENT and (
            isinstance(event, InboundMessage)
            or (isinstance(event, NodeEntered) and node.send_opener)
        ):
            try:
                decision = await self._decide(node, ctx, event)
            except AIServiceError as e:
                return Evaluation(
                    outcome=Escalate(reason="ai service failure", resume_node_id=node.id),
                    detail={"error": str(e)},
                )

        eval_ctx = EvaluationContext(
            graph=graph,
            lead=ctx,
            event=event,
            now=now,
            rng=self.rng_factory(ctx.lead_id, node.id, ctx.generation),
            decision=decision,
        )
        return evaluate(node, eval_ctx)

    async def _decide(
        self, node: AgentNode, ctx: LeadExecutionContext, event: LeadEvent
    ) -> AIDecision:
        request = AIDecisionRequest(
            lead_id=ctx.lead_id,
            persona_id=node.persona_id,
            objective=node.objective,
            slots=[s.model_dump() for s in node.slots],
            current_slots={
                name: ctx.variables[name]
                for name in node.slot_names
                if is_filled(ctx.variables.get(name))
            },
            conversation=[
                {"role": t.role, "text": t.text}
                for t in ctx.recent_turns(self.config.conversation_window)
            ],
            allowed_actions=[a.value for a in node.allowed_actions],
            industry=node.industry.model_dump(),
            model=node.model,
            latest_message=event.text if isinstance(event, InboundMessage) else None,
        )

        async def on_retry(attempt: int, error: Exception) -> None:
            if self.event_bus:
                await self.event_bus.emit_effect_retry(
                    ctx.lead_id, "ai_decision", attempt, self.config.retry.max_attempts, str(error)
                )

        return await retry_async(
            lambda: self.ai.decide(request),
            self.config.retry,
            retry_on=(AIServiceError,),
            describe=f"AI decision for lead {ctx.lead_id} at '{node.id}'",
            on_retry=on_retry,
        )

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    async def _deliver(self, effect: Effect) -> None:
        if isinstance(effect, SendMessage):
            await self.messaging.send(effect)
        elif isinstance(effect, CallWebhook):
            await self.webhooks.call(effect)

    async def _deliver_effects(
        self,
        ctx: LeadExecutionContext,
        node: NodeSpec,
        evaluation: Evaluation,
        now: datetime,
    ) -> Evaluation:
        for effect in evaluation.effects:
            key = effect.idempotency_key
            if key in ctx.delivered_effects:
                continue

            async def on_retry(attempt: int, error: Exception, key: str = key) -> None:
                if self.event_bus:
                    await self.event_bus.emit_effect_retry(
                        ctx.lead_id, key, attempt, self.config.retry.max_attempts, str(error)
                    )

            try:
                await retry_async(
                    lambda effect=effect: self._deliver(effect),
                    self.config.retry,
                    retry_on=(TransientSideEffectError,),
                    describe=f"{type(effect).__name__} {key}",
                    on_retry=on_retry,
                )
            except TransientSideEffectError as e:
                # Stay put; a human picks it up and can resume this node
                evaluation.outcome = Escalate(reason="automation failure", resume_node_id=node.id)
                evaluation.detail.update({"error": str(e), "failed_effect": key})
                return evaluation

            ctx.delivered_effects.append(key)
            del ctx.delivered_effects[:-DELIVERED_EFFECT_LIMIT]
            if isinstance(effect, SendMessage):
                ctx.record_turn("agent", effect.text, now, node.id)
                if self.event_bus:
                    await self.event_bus.emit_message_sent(
                        ctx.lead_id, ctx.campaign_id, node.id, effect.text, effect.channel
                    )
        return evaluation

    # ------------------------------------------------------------------
    # Applying outcomes
    # ------------------------------------------------------------------

    async def _apply(
        self,
        ctx: LeadExecutionContext,
        graph: FlowGraph,
        node: NodeSpec,
        evaluation: Evaluation,
        now: datetime,
    ) -> tuple[Transition, FlowGraph]:
        """Mutate ``ctx`` per the evaluation; return the transition and the graph to continue on."""
        ctx.variables.update(evaluation.variables)
        for tag in evaluation.add_tags:
            if tag not in ctx.tags:
                ctx.tags.append(tag)
        ctx.tags = [t for t in ctx.tags if t not in evaluation.remove_tags]
        if evaluation.lead_status:
            ctx.lead_status = evaluation.lead_status

        outcome = evaluation.outcome
        transition = Transition(
            node=node,
            outcome=outcome,
            previous_campaign=ctx.campaign_id,
            previous_status=ctx.status,
            previous_generation=ctx.generation,
            previous_wake=ctx.pending_wake_at,
        )
        entry = HistoryEntry(
            node_id=node.id,
            campaign_id=ctx.campaign_id,
            graph_version=ctx.graph_version,
            entered_at=now,
            outcome=outcome_name(outcome),
            intent=evaluation.intent,
            detail=dict(evaluation.detail),
        )

        if isinstance(outcome, Escalate) and not outcome.to_human:
            outcome = TransferCampaign(campaign_id=outcome.campaign_id, reason=outcome.reason)

        if isinstance(outcome, TransferCampaign):
            try:
                target = await self.registry.load(outcome.campaign_id)
            except GraphValidationError as e:
                logger.error(f"Cannot transfer lead {ctx.lead_id}: {e}")
                outcome = Escalate(reason="transfer target unavailable", resume_node_id=node.id)
                entry.outcome = outcome_name(outcome)
                entry.detail["error"] = str(e)
                transition.outcome = outcome
            else:
                entry.detail.update({"to_campaign": target.campaign_id, "reason": outcome.reason})
                ctx.history.append(entry)
                ctx.campaign_id = target.campaign_id
                ctx.graph_version = target.version
                ctx.current_node_id = target.entry_node_id
                ctx.status = LeadStatus.RUNNING
                ctx.pending_wake_at = None
                ctx.generation += 1
                if not outcome.carry_variables:
                    ctx.variables = {}
                ctx.enrollments.append(
                    Enrollment(
                        campaign_id=target.campaign_id,
                        graph_version=target.version,
                        enrolled_at=now,
                        reason=outcome.reason,
                    )
                )
                transition.next_event = EnrollLead(
                    lead_id=ctx.lead_id, campaign_id=target.campaign_id, source=TRANSFER_SOURCE
                )
                return transition, target

        if isinstance(outcome, Advance):
            entry.port = outcome.port
            ctx.history.append(entry)
            ctx.current_node_id = outcome.target_node_id
            ctx.status = LeadStatus.RUNNING
            ctx.pending_wake_at = None
            ctx.generation += 1
            transition.next_event = NodeEntered(
                lead_id=ctx.lead_id, from_node_id=node.id, intent=evaluation.intent
            )

        elif isinstance(outcome, Wait):
            status = LeadStatus.WAITING_TIMER if outcome.wake_at else LeadStatus.WAITING_REPLY
            # A reply sent while staying put still starts a new visit for effect keys
            if status != ctx.status or outcome.wake_at != ctx.pending_wake_at or evaluation.effects:
                ctx.generation += 1
            ctx.status = status
            ctx.pending_wake_at = outcome.wake_at
            if outcome.wake_at:
                entry.detail["wake_at"] = outcome.wake_at.isoformat()
            ctx.history.append(entry)

        elif isinstance(outcome, Terminate):
            entry.detail["reason"] = outcome.reason
            ctx.history.append(entry)
            ctx.status = LeadStatus.CLOSED
            ctx.final_status = outcome.final_status
            ctx.pending_wake_at = None
            ctx.generation += 1
            if outcome.clear_variables:
                ctx.variables = {}

        elif isinstance(outcome, Escalate):
            summary = None
            if outcome.summarize:
                summary = await self.summarizer.summarize(ctx)
                ctx.variables[SUMMARY_VARIABLE] = summary
            entry.detail["reason"] = outcome.reason
            ctx.history.append(entry)
            ctx.status = LeadStatus.HANDED_OFF
            ctx.pending_wake_at = None
            ctx.generation += 1
            ctx.escalation = Escalation(
                reason=outcome.reason,
                node_id=node.id,
                at=now,
                resume_node_id=outcome.resume_node_id,
                summary=summary,
            )
            transition.summary = summary

        return transition, graph

    async def _sync_wake(self, ctx: LeadExecutionContext, transition: Transition) -> None:
        """Bring the wake schedule in line with the saved context."""
        if (
            transition.previous_status == LeadStatus.WAITING_TIMER
            and transition.previous_generation != ctx.generation
        ):
            await self.store.cancel_wake(ctx.lead_id, transition.previous_generation)

        if ctx.status == LeadStatus.WAITING_TIMER and (
            transition.previous_generation != ctx.generation
            or transition.previous_wake != ctx.pending_wake_at
        ):
            await self.store.schedule_wake(ctx.lead_id, ctx.pending_wake_at, ctx.generation)
            if self.on_wake_scheduled is not None:
                self.on_wake_scheduled(ctx.pending_wake_at)

    async def _announce(
        self, ctx: LeadExecutionContext, transition: Transition, event: LeadEvent
    ) -> None:
        outcome, node = transition.outcome, transition.node
        if isinstance(outcome, Advance):
            logger.debug(f"'{node.id}' -> '{outcome.target_node_id}' via {outcome.port}")
        elif isinstance(outcome, Wait):
            what = f"timer until {outcome.wake_at.isoformat()}" if outcome.wake_at else "a reply"
            logger.info(f"Lead {ctx.lead_id} waiting at '{node.id}' for {what}")
        elif isinstance(outcome, Terminate):
            logger.info(
                f"✓ Lead {ctx.lead_id} closed as {outcome.final_status} ({outcome.reason})"
            )
        elif isinstance(outcome, Escalate) and outcome.to_human:
            logger.warning(f"Lead {ctx.lead_id} handed to a human at '{node.id}': {outcome.reason}")
        else:
            logger.info(
                f"Lead {ctx.lead_id} moved from '{transition.previous_campaign}' "
                f"to '{ctx.campaign_id}'"
            )

        if self.event_bus is None:
            return
        bus = self.event_bus
        if isinstance(outcome, Advance):
            await bus.emit_lead_advanced(
                ctx.lead_id,
                ctx.campaign_id,
                node.id,
                outcome.target_node_id,
                outcome.port,
                correlation_id=event.event_id,
            )
        elif isinstance(outcome, Wait):
            await bus.emit_lead_waiting(ctx.lead_id, ctx.campaign_id, node.id, outcome.wake_at)
        elif isinstance(outcome, Terminate):
            await bus.emit_lead_closed(
                ctx.lead_id, ctx.campaign_id, node.id, outcome.final_status.value, outcome.reason
            )
        elif isinstance(outcome, Escalate) and outcome.to_human:
            await bus.emit_lead_handed_off(
                ctx.lead_id, ctx.campaign_id, node.id, outcome.reason, transition.summary
            )
        else:
            reason = getattr(outcome, "reason", "")
            await bus.emit_lead_transferred(
                ctx.lead_id, transition.previous_campaign, ctx.campaign_id, reason
            )
