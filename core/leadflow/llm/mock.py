"""Scripted decision service for tests and offline simulation."""

from collections.abc import Callable

from leadflow.llm.decision import AIDecision, AIDecisionRequest, AIDecisionService

Script = list[AIDecision | Exception] | Callable[[AIDecisionRequest], AIDecision]


class ScriptedDecisionService(AIDecisionService):
    """
    Replays canned decisions.

    ``script`` is either a list consumed in order (an exhausted list keeps
    returning ``fallback``) or a callable computing a decision per request.
    Entries that are exceptions are raised instead of returned.
    """

    def __init__(
        self,
        script: Script | None = None,
        fallback: AIDecision | None = None,
        summary: str | Exception = "Lead summary unavailable offline.",
    ):
        self._script = script if script is not None else []
        self._fallback = fallback or AIDecision(reply_text="Thanks! Could you tell me a bit more?")
        self._summary = summary
        self.requests: list[AIDecisionRequest] = []
        self.summaries_requested = 0

    async def decide(self, request: AIDecisionRequest) -> AIDecision:
        self.requests.append(request)
        if callable(self._script):
            return self._script(request)
        entry = self._script.pop(0) if self._script else self._fallback
        if isinstance(entry, Exception):
            raise entry
        return entry

    async def summarize(
        self, lead_id: str, conversation: list[dict[str, str]], model: str | None = None
    ) -> str:
        self.summaries_requested += 1
        if isinstance(self._summary, Exception):
            raise self._summary
        return self._summary
