"""
Webhook Dispatcher: signed, retried delivery of notification events.

Given one notification event, this module:
1. Resolves the channel and the active webhooks subscribed to the event
2. Builds one canonical payload and serializes it once
3. Signs those exact bytes with each webhook's secret (HMAC-SHA256)
4. POSTs to every webhook concurrently, each with its own retry loop
5. Appends one delivery log row per attempt

Delivery is at-least-once. A receiver can verify the body against the
X-Webhook-Signature header.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.clock import Clock, utc_now
from ..core.config import Settings
from ..core.exceptions import DeliveryError, PersistenceError
from ..core.security import SIGNATURE_HEADER, signature_header_value
from ..models import DeliveryLog, Notification, NotificationChannel, Webhook

logger = logging.getLogger(__name__)

WILDCARD_EVENT = "*"

Sleep = Callable[[float], Awaitable[Any]]


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class DispatcherConfig:
    """Webhook delivery configuration."""
    timeout_seconds: float = 10.0
    default_max_retries: int = 3
    default_retry_delay_ms: int = 1000
    response_body_limit: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "DispatcherConfig":
        return cls(
            timeout_seconds=settings.webhook_timeout_seconds,
            default_max_retries=settings.webhook_default_max_retries,
            default_retry_delay_ms=settings.webhook_default_retry_delay_ms,
            response_body_limit=settings.webhook_response_body_limit,
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    retry_delay_ms: int

    @classmethod
    def from_retry_config(cls, retry_config: dict[str, Any] | None, config: DispatcherConfig) -> "RetryPolicy":
        """Admin-edited values; anything missing or malformed falls back to the defaults."""
        if not isinstance(retry_config, dict):
            retry_config = {}
        return cls(
            max_retries=_non_negative_int(retry_config.get("max_retries"), config.default_max_retries),
            retry_delay_ms=_non_negative_int(retry_config.get("retry_delay_ms"), config.default_retry_delay_ms),
        )


def _non_negative_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring malformed retry setting {value!r}, using {default}")
        return default
    return number if number >= 0 else default


def _string_headers(headers: Any) -> dict[str, str]:
    if not isinstance(headers, dict):
        return {}
    return {str(k): str(v) for k, v in headers.items()}


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class WebhookTarget:
    """Detached snapshot of a webhook, safe to hand to a delivery task."""
    id: UUID
    name: str
    url: str
    secret_key: str | None
    headers: dict[str, str]
    policy: RetryPolicy


@dataclass
class DeliveryOutcome:
    """Final outcome for one webhook."""
    webhook_id: UUID
    webhook_name: str
    success: bool
    status: int | None = None
    error: str | None = None
    duration_ms: int = 0


@dataclass
class DispatchResult:
    dispatched: int = 0
    successful: int = 0
    results: list[DeliveryOutcome] = field(default_factory=list)
    message: str | None = None


# =============================================================================
# PAYLOAD
# =============================================================================


def is_subscribed(events: list[str] | None, event_type: str) -> bool:
    events = events or []
    return event_type in events or WILDCARD_EVENT in events


def build_payload(
    notification: Notification | None,
    notification_id: UUID | None,
    channel_name: str,
    event_type: str,
    timestamp: str,
) -> dict[str, Any]:
    """Canonical event body. Missing notifications fall back to neutral values."""
    return {
        "notification_id": str(notification_id) if notification_id else None,
        "channel_name": channel_name,
        "event_type": event_type,
        "title": notification.title if notification else "Notification",
        "message": notification.message if notification else "",
        "severity": notification.severity if notification else "medium",
        "metadata": (notification.extra or {}) if notification else {},
        "timestamp": timestamp,
    }


def serialize_payload(payload: dict[str, Any]) -> bytes:
    """The bytes that are both signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


# =============================================================================
# WEBHOOK DISPATCHER
# =============================================================================


class WebhookDispatcher:
    """
    Fans one notification event out to the channel's webhooks.

    Every webhook is delivered in its own task with its own sessions.
    Per-webhook failures are reported in the result, never raised.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient | None = None,
        config: DispatcherConfig | None = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._http_client = http_client
        self._config = config or DispatcherConfig()
        self._clock = clock
        self._sleep = sleep

    async def dispatch(
        self,
        notification_id: UUID | None,
        channel_name: str,
        event_type: str,
    ) -> DispatchResult:
        timestamp = self._clock().isoformat()

        async with self._session_factory() as session:
            channel = await self._find_channel(session, channel_name)
            if channel is None:
                logger.info(f"No active channel named {channel_name!r}, nothing to dispatch")
                return DispatchResult(message=f"Channel {channel_name} not found")

            targets = await self._subscribed_targets(session, channel.id, event_type)
            if not targets:
                logger.info(f"No webhooks on {channel_name!r} subscribed to {event_type!r}")
                return DispatchResult(message="No webhooks subscribed to this event")

            notification = await session.get(Notification, notification_id) if notification_id else None
            payload = build_payload(notification, notification_id, channel_name, event_type, timestamp)

        body = serialize_payload(payload)
        logger.info(f"Dispatching {event_type} to {len(targets)} webhooks on {channel_name!r}")

        if self._http_client is not None:
            outcomes = await self._deliver_all(self._http_client, targets, body, payload, event_type, timestamp, notification_id)
        else:
            async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
                outcomes = await self._deliver_all(client, targets, body, payload, event_type, timestamp, notification_id)

        result = DispatchResult(
            dispatched=len(outcomes),
            successful=sum(1 for outcome in outcomes if outcome.success),
            results=outcomes,
        )
        logger.info(f"Dispatch of {event_type}: {result.successful}/{result.dispatched} delivered")
        return result

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    async def _find_channel(self, session: AsyncSession, channel_name: str) -> NotificationChannel | None:
        result = await session.execute(
            select(NotificationChannel).where(
                NotificationChannel.channel_name == channel_name,
                NotificationChannel.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _subscribed_targets(
        self,
        session: AsyncSession,
        channel_id: UUID,
        event_type: str,
    ) -> list[WebhookTarget]:
        result = await session.execute(
            select(Webhook)
            .where(Webhook.channel_id == channel_id, Webhook.is_active.is_(True))
            .order_by(Webhook.name, Webhook.id)
        )
        return [
            WebhookTarget(
                id=webhook.id,
                name=webhook.name,
                url=webhook.url,
                secret_key=webhook.secret_key,
                headers=_string_headers(webhook.headers),
                policy=RetryPolicy.from_retry_config(webhook.retry_config, self._config),
            )
            for webhook in result.scalars().all()
            if is_subscribed(webhook.events, event_type)
        ]

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def _deliver_all(
        self,
        client: httpx.AsyncClient,
        targets: list[WebhookTarget],
        body: bytes,
        payload: dict[str, Any],
        event_type: str,
        timestamp: str,
        notification_id: UUID | None,
    ) -> list[DeliveryOutcome]:
        return list(await asyncio.gather(*(
            self._deliver_isolated(client, target, body, payload, event_type, timestamp, notification_id)
            for target in targets
        )))

    async def _deliver_isolated(
        self,
        client: httpx.AsyncClient,
        target: WebhookTarget,
        *args: Any,
    ) -> DeliveryOutcome:
        try:
            return await self.deliver(client, target, *args)
        except Exception as e:
            logger.error(f"Delivery to webhook {target.name} ({target.id}) aborted: {e}")
            return DeliveryOutcome(webhook_id=target.id, webhook_name=target.name, success=False, error=str(e))

    def request_headers(self, target: WebhookTarget, body: bytes, event_type: str, timestamp: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event_type,
            "X-Webhook-Timestamp": timestamp,
            **target.headers,
        }
        if target.secret_key:
            headers[SIGNATURE_HEADER] = signature_header_value(target.secret_key, body)
        return headers

    async def deliver(
        self,
        client: httpx.AsyncClient,
        target: WebhookTarget,
        body: bytes,
        payload: dict[str, Any],
        event_type: str,
        timestamp: str,
        notification_id: UUID | None,
    ) -> DeliveryOutcome:
        """Retry loop for one webhook: one log row per attempt."""
        headers = self.request_headers(target, body, event_type, timestamp)
        retry_count = 0

        while True:
            started = time.monotonic()
            status: int | None = None
            response_body: str | None = None
            error: DeliveryError | None = None

            try:
                status, response_body = await self._post(client, target.url, body, headers)
            except DeliveryError as e:
                error = e
                status = e.status_code
                response_body = e.response_body

            duration_ms = int((time.monotonic() - started) * 1000)
            await self._log_attempt(
                target.id, notification_id, payload, status, response_body,
                duration_ms, error is None, retry_count, str(error) if error else None,
            )

            if error is None:
                await self._record_success(target.id)
                logger.info(f"Webhook {target.name} delivered (status {status}, attempt {retry_count + 1})")
                return DeliveryOutcome(target.id, target.name, success=True, status=status, duration_ms=duration_ms)

            if not error.retryable:
                logger.warning(f"Webhook {target.name} rejected delivery with {status}, not retrying")
                return DeliveryOutcome(target.id, target.name, success=False, status=status, error=str(error), duration_ms=duration_ms)

            retry_count += 1
            if retry_count > target.policy.max_retries:
                await self._record_exhausted(target.id)
                logger.error(f"Webhook {target.name} failed after {retry_count} attempts: {error}")
                return DeliveryOutcome(target.id, target.name, success=False, status=status, error=str(error), duration_ms=duration_ms)

            delay_ms = target.policy.retry_delay_ms * retry_count
            logger.warning(f"Webhook {target.name} attempt {retry_count} failed ({error}), retrying in {delay_ms}ms")
            await self._sleep(delay_ms / 1000)

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        body: bytes,
        headers: dict[str, str],
    ) -> tuple[int, str]:
        """
        One POST. Returns (status, body) on 2xx.

        Raises:
            DeliveryError: non-2xx (retryable unless 4xx other than 429)
                or transport failure/timeout (retryable)
        """
        try:
            response = await client.post(
                url,
                content=body,
                headers=headers,
                timeout=httpx.Timeout(self._config.timeout_seconds),
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Timed out after {self._config.timeout_seconds}s: {e}") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Request failed: {e}") from e

        response_body = response.text[: self._config.response_body_limit]
        if response.is_success:
            return response.status_code, response_body

        retryable = not (400 <= response.status_code < 500) or response.status_code == 429
        raise DeliveryError(
            f"HTTP {response.status_code}",
            status_code=response.status_code,
            retryable=retryable,
            response_body=response_body,
        )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    async def _log_attempt(
        self,
        webhook_id: UUID,
        notification_id: UUID | None,
        payload: dict[str, Any],
        status: int | None,
        response_body: str | None,
        duration_ms: int,
        success: bool,
        retry_count: int,
        error_message: str | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(DeliveryLog(
                    webhook_id=webhook_id,
                    notification_id=notification_id,
                    payload=payload,
                    response_status=status,
                    response_body=response_body,
                    duration_ms=duration_ms,
                    success=success,
                    retry_count=retry_count,
                    error_message=error_message,
                    created_at=self._clock(),
                ))
                await session.commit()
        except Exception as e:
            raise PersistenceError(f"Could not write delivery log: {e}") from e

    async def _record_success(self, webhook_id: UUID) -> None:
        await self._update_webhook(webhook_id, failure_count=0, last_triggered_at=self._clock())

    async def _record_exhausted(self, webhook_id: UUID) -> None:
        await self._update_webhook(webhook_id, failure_count=Webhook.failure_count + 1)

    async def _update_webhook(self, webhook_id: UUID, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(update(Webhook).where(Webhook.id == webhook_id).values(**values))
            await session.commit()
