"""LiteLLM-backed decision service.

Uses litellm's provider-agnostic ``acompletion`` so any configured model
string (``openai/gpt-4o-mini``, ``anthropic/claude-haiku-4-5-20251001``, ...)
works unchanged.
"""

import json
import logging
import re
import time
from typing import Any

import litellm

from leadflow.errors import AIServiceError
from leadflow.llm.decision import AIDecision, AIDecisionRequest, AIDecisionService

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

_DECIDE_SYSTEM = """You are {persona}, a sales assistant{company}.
Objective: {objective}
Industry: {vertical}. {notes}

Collect these fields from the lead when they come up naturally:
{slots}

Already known: {known}

Reply with a single JSON object and nothing else:
{{"reply_text": "<your next message to the lead>",
  "filled_slots": {{"<slot>": "<value>"}},
  "intent": "<one of {intents}>",
  "requested_action": "<one of {actions} or null>"}}
Only include slots the lead actually stated."""

_INTENTS = (
    "INTERESTED",
    "NOT_INTERESTED",
    "QUESTION",
    "PRICING_QUERY",
    "HANDOFF_REQUEST",
    "COMPLAINT",
    "UNKNOWN",
)

_SUMMARY_SYSTEM = (
    "You are a concise summarizer. Given the conversation between a sales "
    "assistant and a lead, produce a brief summary for the human taking over: "
    "who the lead is, what they want, what was promised, and open questions."
)


def _extract_json(content: str) -> dict[str, Any]:
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(content)
        if match is None:
            raise
        return json.loads(match.group())


def _describe_slot(slot: dict[str, Any]) -> str:
    line = f"- {slot['name']} ({slot.get('type', 'string')})"
    if slot.get("description"):
        line += f": {slot['description']}"
    return line


class LiteLLMDecisionService(AIDecisionService):
    """Decision service calling ``litellm.acompletion`` in JSON mode."""

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 30.0,
        max_tokens: int = 600,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self.max_tokens = max_tokens

    async def _complete(
        self, model: str, system: str, messages: list[dict[str, str]], json_mode: bool
    ) -> str:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": system}, *messages],
            "max_tokens": self.max_tokens,
            "timeout": self.timeout,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        start = time.monotonic()
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise AIServiceError(f"{model} call failed: {e}") from e
        latency_ms = int((time.monotonic() - start) * 1000)
        logger.debug(f"AI call to {model} took {latency_ms}ms", extra={"latency_ms": latency_ms})

        content = response.choices[0].message.content
        if not content:
            raise AIServiceError(f"{model} returned an empty response")
        return content

    async def decide(self, request: AIDecisionRequest) -> AIDecision:
        model = request.model or self.model
        slots = "\n".join(_describe_slot(s) for s in request.slots) or "- none"
        industry = request.industry or {}
        system = _DECIDE_SYSTEM.format(
            persona=request.persona_id,
            company=f" for {industry['company_name']}" if industry.get("company_name") else "",
            objective=request.objective,
            vertical=industry.get("vertical", "GENERIC"),
            notes=industry.get("notes", ""),
            slots=slots,
            known=(
                json.dumps(request.current_slots, default=str)
                if request.current_slots
                else "nothing yet"
            ),
            actions=", ".join(request.allowed_actions) or "none",
            intents=", ".join(_INTENTS),
        )
        messages = [
            {"role": "user" if t["role"] == "lead" else "assistant", "content": t["text"]}
            for t in request.conversation
        ]
        if not messages:
            messages = [{"role": "user", "content": "(Open the conversation.)"}]

        content = await self._complete(model, system, messages, json_mode=True)
        try:
            data = _extract_json(content)
        except json.JSONDecodeError as e:
            raise AIServiceError(f"{model} returned malformed JSON: {content[:200]}") from e
        if not isinstance(data, dict):
            raise AIServiceError(f"{model} returned {type(data).__name__}, expected an object")

        filled = data.get("filled_slots") or {}
        return AIDecision(
            reply_text=data.get("reply_text") or None,
            filled_slots=filled if isinstance(filled, dict) else {},
            intent=data.get("intent") or None,
            requested_action=data.get("requested_action") or None,
        )

    async def summarize(
        self, lead_id: str, conversation: list[dict[str, str]], model: str | None = None
    ) -> str:
        transcript = "\n".join(f"[{t['role']}]: {t['text']}" for t in conversation)
        content = await self._complete(
            model or self.model,
            _SUMMARY_SYSTEM,
            [{"role": "user", "content": transcript or "(no messages)"}],
            json_mode=False,
        )
        return content.strip()
