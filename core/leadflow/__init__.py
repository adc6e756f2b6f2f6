"""
Lead flow engine - runs multi-step conversational outreach campaigns.

A campaign is a versioned graph of nodes (delays, A/B splits, actions,
logic, AI agents, handoffs). Each lead is driven through its campaign by
events: replies, timers and operator commands.

Main components:
- FlowGraph / GraphValidator: campaign graphs and their validation
- FlowDriver: applies events to lead contexts
- FlowRuntime: worker pool, wake scheduler and commands
- DurableStore: InMemoryStore and FileStore
- AIDecisionService: LiteLLM-backed or scripted agent decisions
"""

from leadflow.config import EngineConfig, RetryPolicy
from leadflow.errors import (
    AIServiceError,
    CommandRejectedError,
    ConcurrencyConflict,
    GraphValidationError,
    LeadFlowError,
    StaleEventError,
    TransientSideEffectError,
)
from leadflow.graph import EdgeSpec, FlowGraph, GraphValidator, NodeKind, validate_graph
from leadflow.llm import AIDecision, AIDecisionService, LiteLLMDecisionService
from leadflow.runtime import EventBus, EventType, FlowDriver, FlowRuntime, OutboxGateway
from leadflow.schemas import LeadExecutionContext, LeadStatus
from leadflow.storage import DurableStore, FileStore, InMemoryStore

__version__ = "0.1.0"

__all__ = [
    "AIDecision",
    "AIDecisionService",
    "AIServiceError",
    "CommandRejectedError",
    "ConcurrencyConflict",
    "DurableStore",
    "EdgeSpec",
    "EngineConfig",
    "EventBus",
    "EventType",
    "FileStore",
    "FlowDriver",
    "FlowGraph",
    "FlowRuntime",
    "GraphValidationError",
    "GraphValidator",
    "InMemoryStore",
    "LeadExecutionContext",
    "LeadFlowError",
    "LeadStatus",
    "LiteLLMDecisionService",
    "NodeKind",
    "OutboxGateway",
    "RetryPolicy",
    "StaleEventError",
    "TransientSideEffectError",
    "validate_graph",
]
