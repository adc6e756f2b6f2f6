"""
Outbound collaborators: the messaging gateway and the webhook client.

Both translate their failures into TransientSideEffectError so the driver
can retry them uniformly. Every request carries the effect's idempotency
key so a redelivery after a crash can be deduplicated downstream.
"""

import logging
from abc import ABC, abstractmethod

import httpx

from leadflow.errors import TransientSideEffectError
from leadflow.graph.outcome import CallWebhook, SendMessage

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class MessagingGateway(ABC):
    """Delivers a rendered message to the lead's channel."""

    @abstractmethod
    async def send(self, message: SendMessage) -> None:
        """Deliver or raise TransientSideEffectError."""


class OutboxGateway(MessagingGateway):
    """Collects messages in memory. Used by simulation and tests."""

    def __init__(self) -> None:
        self.sent: list[SendMessage] = []
        self._keys: set[str] = set()

    async def send(self, message: SendMessage) -> None:
        # A redelivered key is acknowledged without a second copy
        if message.idempotency_key in self._keys:
            logger.debug(f"Duplicate delivery {message.idempotency_key} ignored")
            return
        self._keys.add(message.idempotency_key)
        self.sent.append(message)

    def for_lead(self, lead_id: str) -> list[SendMessage]:
        return [m for m in self.sent if m.lead_id == lead_id]


class HttpMessagingGateway(MessagingGateway):
    """POSTs messages to an outbound messaging service (WhatsApp, SMS, email bridge)."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=timeout
        )

    async def send(self, message: SendMessage) -> None:
        try:
            response = await self._client.post(
                "/messages",
                json={
                    "lead_id": message.lead_id,
                    "channel": message.channel,
                    "text": message.text,
                },
                headers={IDEMPOTENCY_HEADER: message.idempotency_key},
            )
        except httpx.HTTPError as e:
            raise TransientSideEffectError(f"message to {message.lead_id} failed: {e}") from e
        if not response.is_success:
            raise TransientSideEffectError(
                f"message to {message.lead_id} rejected: HTTP {response.status_code}"
            )

    async def aclose(self) -> None:
        await self._client.aclose()


class WebhookClient:
    """Calls action-node webhooks. Any 2xx counts as delivered."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient()

    async def call(self, webhook: CallWebhook) -> int:
        headers = {**webhook.headers, IDEMPOTENCY_HEADER: webhook.idempotency_key}
        try:
            response = await self._client.request(
                webhook.method,
                webhook.url,
                json=webhook.payload,
                headers=headers,
                timeout=webhook.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise TransientSideEffectError(f"webhook {webhook.url} failed: {e}") from e
        if not response.is_success:
            raise TransientSideEffectError(
                f"webhook {webhook.url} returned HTTP {response.status_code}"
            )
        logger.debug(f"Webhook {webhook.url} -> {response.status_code}")
        return response.status_code

    async def aclose(self) -> None:
        await self._client.aclose()
