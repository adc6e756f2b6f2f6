"""Logic nodes: route on variable conditions or on the last classified intent."""

import logging
from typing import Any

from leadflow.graph.edge import DEFAULT_PORT
from leadflow.graph.evaluators.base import EvaluationContext
from leadflow.graph.evaluators.intents import normalize_intent
from leadflow.graph.nodes import ConditionOperator, LogicCondition, LogicNode
from leadflow.graph.outcome import Evaluation
from leadflow.graph.validator import condition_port
from leadflow.schemas.context import LeadExecutionContext
from leadflow.schemas.events import InboundMessage, NodeEntered

logger = logging.getLogger(__name__)

_ORDERING = {
    ConditionOperator.GT: lambda a, b: a > b,
    ConditionOperator.LT: lambda a, b: a < b,
    ConditionOperator.GE: lambda a, b: a >= b,
    ConditionOperator.LE: lambda a, b: a <= b,
}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


def lookup_variable(lead: LeadExecutionContext, name: str) -> Any:
    """
    Look up a condition variable in lead fields, then variables, then profile.

    Dotted names walk into nested values.
    """
    head, _, rest = name.partition(".")
    if head == "tags":
        current: Any = lead.tags
    elif head == "status":
        current = lead.lead_status
    elif head in lead.variables:
        current = lead.variables[head]
    else:
        current = lead.profile.get(head)

    for part in rest.split(".") if rest else ():
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def condition_matches(condition: LogicCondition, actual: Any) -> bool:
    op, expected = condition.operator, condition.value

    if op == ConditionOperator.EXISTS:
        return not _is_empty(actual)
    if op == ConditionOperator.NOT_EXISTS:
        return _is_empty(actual)

    if op in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        needle = str(expected).strip().lower()
        if isinstance(actual, (list, tuple, set)):
            found = any(str(item).strip().lower() == needle for item in actual)
        else:
            found = actual is not None and needle in str(actual).lower()
        return found if op == ConditionOperator.CONTAINS else not found

    if op in _ORDERING:
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        return _ORDERING[op](a, b)

    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None:
        equal = a == b
    elif actual is None or expected is None:
        equal = actual is None and expected is None
    else:
        equal = str(actual).strip().lower() == str(expected).strip().lower()
    return equal if op == ConditionOperator.EQ else not equal


def current_intent(ctx: EvaluationContext) -> str | None:
    """Intent carried by the triggering event, else the most recent one on record."""
    event = ctx.event
    if isinstance(event, (InboundMessage, NodeEntered)) and event.intent:
        return event.intent
    return ctx.lead.last_intent()


def evaluate_logic(node: LogicNode, ctx: EvaluationContext) -> Evaluation:
    if node.conditions:
        for index, condition in enumerate(node.conditions):
            actual = lookup_variable(ctx.lead, condition.variable)
            if not condition_matches(condition, actual):
                continue
            port = condition_port(index)
            if ctx.graph.edge_target(node.id, port) is None:
                logger.debug(f"Condition {index} of '{node.id}' matched but is unwired")
                break
            return Evaluation(outcome=ctx.advance(node, port), detail={"matched": index})
        return Evaluation(outcome=ctx.advance(node), detail={"matched": None})

    raw = current_intent(ctx)
    intent = normalize_intent(raw)
    port = intent if intent and ctx.graph.edge_target(node.id, intent) else DEFAULT_PORT
    return Evaluation(outcome=ctx.advance(node, port), detail={"intent": intent, "raw_intent": raw})
