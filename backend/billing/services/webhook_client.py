"""Signed webhook delivery with bounded exponential-backoff retries."""

from __future__ import annotations

import asyncio
from functools import partial
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

import httpx
from loguru import logger

from billing.core.backoff import backoff_seconds
from billing.core.config import Settings
from billing.core.idempotency import IDEMPOTENCY_HEADER
from billing.core.signing import SIGNATURE_HEADER, serialize_payload, sign_payload

if TYPE_CHECKING:
    from loguru import Logger

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_MS = 1000
DEFAULT_TIMEOUT_SEC = 10.0


class WebhookDeliveryError(Exception):
    """A single delivery attempt did not get a 2xx answer."""


class WebhookClient:
    """Delivers event payloads to one configured endpoint.

    ``send_webhook`` never raises for transport problems: it returns ``True``
    once an attempt gets a 2xx response and ``False`` after ``max_attempts``
    failed attempts. Retry state lives only in the running call.
    """

    def __init__(
        self,
        url: str,
        secret: str,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log: Logger = logger,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.url = url
        self.max_attempts = max_attempts
        self.retry_delay_ms = retry_delay_ms
        self.timeout = timeout
        self._secret = secret
        self._http_client = http_client
        self._sleep = sleep
        self._log = log
        self._tasks: set[asyncio.Task[bool]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "WebhookClient":
        return cls(
            settings.SUBSCRIPTION_SERVICE_WEBHOOK_URL,
            settings.WEBHOOK_SECRET,
            max_attempts=settings.WEBHOOK_RETRY_ATTEMPTS,
            retry_delay_ms=settings.WEBHOOK_RETRY_DELAY_MS,
            timeout=settings.WEBHOOK_TIMEOUT_SEC,
            **kwargs,
        )

    async def send_webhook(self, payload: Mapping[str, Any], idempotency_key: str) -> bool:
        body = serialize_payload(payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(self._secret, body),
            IDEMPOTENCY_HEADER: idempotency_key,
        }
        log = self._log.bind(
            url=self.url,
            payment_id=payload.get("paymentId"),
            idempotency_key=idempotency_key,
        )
        log.info("webhook_sending")

        if self._http_client is not None:
            return await self._deliver(self._http_client, body, headers, log)
        async with httpx.AsyncClient() as client:
            return await self._deliver(client, body, headers, log)

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        body: bytes,
        headers: dict[str, str],
        log: Logger,
    ) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._attempt(client, body, headers)
            except (httpx.HTTPError, WebhookDeliveryError) as exc:
                log.bind(
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc),
                ).warning("webhook_attempt_failed")
            else:
                log.bind(attempt=attempt).info("webhook_delivered")
                return True

            if attempt < self.max_attempts:
                await self._sleep(backoff_seconds(self.retry_delay_ms, attempt - 1))

        log.bind(attempts=self.max_attempts).error("webhook_delivery_exhausted")
        return False

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        body: bytes,
        headers: dict[str, str],
    ) -> None:
        response = await client.post(self.url, content=body, headers=headers, timeout=self.timeout)
        if not response.is_success:
            raise WebhookDeliveryError(f"Webhook returned status {response.status_code}")

    def dispatch(self, payload: Mapping[str, Any], idempotency_key: str) -> asyncio.Task[bool]:
        """Deliver in a background task detached from the current request."""

        log = self._log.bind(payment_id=payload.get("paymentId"), idempotency_key=idempotency_key)
        task = asyncio.create_task(self.send_webhook(payload, idempotency_key))
        self._tasks.add(task)
        task.add_done_callback(partial(self._on_dispatch_done, log))
        return task

    def _on_dispatch_done(self, log: Logger, task: asyncio.Task[bool]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            log.warning("webhook_dispatch_cancelled")
        elif task.exception() is not None:
            log.opt(exception=task.exception()).error("webhook_dispatch_crashed")
        elif not task.result():
            log.error("webhook_dispatch_failed")

    async def drain(self) -> None:
        """Wait for all dispatched deliveries; used on shutdown and in tests."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
