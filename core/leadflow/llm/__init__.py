"""AI decision services."""

from leadflow.llm.decision import AIDecision, AIDecisionRequest, AIDecisionService
from leadflow.llm.litellm_service import LiteLLMDecisionService
from leadflow.llm.mock import ScriptedDecisionService

__all__ = [
    "AIDecision",
    "AIDecisionRequest",
    "AIDecisionService",
    "LiteLLMDecisionService",
    "ScriptedDecisionService",
]
