"""
Webhook dispatcher - the single delivery path for every outbound webhook.

Three entry points share it:

* ``notify``: fire-and-forget, a single attempt that is recorded but never
  retried, errors are only logged.
* ``enqueue``: the event is stored first, delivered immediately, and handed to
  the retry schedule when any endpoint fails.
* ``retry_due``: called periodically (Celery beat) to re-attempt due events.
  Each event is claimed with a lease first, so overlapping runs never deliver
  the same attempt twice.

HTTP requests for one event run concurrently; their results (delivery rows,
endpoint health, event status) are written afterwards in one unit of work.
"""
from __future__ import annotations

import asyncio
import json
import time
from datetime import timedelta
from typing import Callable, Optional, Sequence

from application.dtos.webhooks import DeliveryAttempt, RetryRunSummary
from application.ports.webhook_transport import WebhookTransport, WebhookTransportError
from core.logging_config import get_logger
from core.settings import WebhookSettings, payment_settings
from domain.common.clock import Clock, utc_now
from domain.common.exceptions import ForbiddenException, WebhookEndpointNotFoundException
from domain.common.identifiers import generate_id
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.webhook.entity import (
    WEBHOOK_TEST,
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventStatus,
)
from domain.webhook.retry import next_retry_delay
from domain.webhook.signing import canonical_payload, sign_payload


logger = get_logger(__name__)

UnitOfWorkFactory = Callable[[], AbstractUnitOfWork]

# 另一轮 retry_due 已认领该事件
_SKIPPED = object()


def normalize_event_data(data: dict) -> dict:
    """JSON 往返一次，保证存储的数据与发出的字节一致（datetime 等转为字符串）"""
    return json.loads(json.dumps(data, default=str))


class WebhookDispatcher:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        transport: WebhookTransport,
        settings: Optional[WebhookSettings] = None,
        *,
        now: Clock = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._transport = transport
        self._settings = settings or payment_settings.webhook
        self._now = now

    # ------------------------------------------------------------------
    # entry points
    # ------------------------------------------------------------------

    async def notify(self, merchant_id: str, event_type: str, data: dict) -> None:
        """Deliver once; the event ends ``sent`` or ``failed`` right away. Never raises."""
        try:
            event = WebhookEvent.create(merchant_id, event_type, normalize_event_data(data), now=self._now())
            async with self._uow_factory() as uow:
                await uow.webhook_events.create(event)
            targets = await self._select_targets(event, first_attempt=True)
            await self._dispatch(event, targets, retryable=False)
        except Exception:
            logger.exception("webhook_notify_failed", merchant_id=merchant_id, event_type=event_type)

    async def enqueue(self, merchant_id: str, event_type: str, data: dict) -> str:
        """Persist the event and attempt delivery right away.

        The event is stored as ``pending`` with a ``next_retry_at`` one retry
        step ahead, so it is still picked up by ``retry_due`` if the immediate
        attempt never records a result.
        """
        now = self._now()
        event = WebhookEvent.create(merchant_id, event_type, normalize_event_data(data), now=now)
        first_delay = next_retry_delay(1, self._settings.retry_delays_minutes)
        if first_delay is not None:
            event.next_retry_at = now + first_delay
        async with self._uow_factory() as uow:
            await uow.webhook_events.create(event)
        logger.info("webhook_event_enqueued", event_id=event.id, event_type=event_type, merchant_id=merchant_id)

        try:
            targets = await self._select_targets(event, first_attempt=True)
            await self._dispatch(event, targets, retryable=True)
        except Exception:
            logger.exception("webhook_immediate_attempt_failed", event_id=event.id)
        return event.id

    async def retry_due(self, limit: Optional[int] = None) -> RetryRunSummary:
        """Re-attempt every event whose ``next_retry_at`` has passed."""
        now = self._now()
        async with self._uow_factory() as uow:
            due = await uow.webhook_events.list_due(now, limit or self._settings.retry_batch_size)

        summary = RetryRunSummary(processed=len(due))
        if not due:
            return summary

        semaphore = asyncio.Semaphore(self._settings.retry_concurrency)
        lease = timedelta(seconds=self._settings.retry_lease_seconds)

        async def _run(candidate: WebhookEvent) -> Optional[WebhookEventStatus]:
            async with semaphore:
                try:
                    claimed_at = self._now()
                    async with self._uow_factory() as uow:
                        event = await uow.webhook_events.claim(candidate.id, claimed_at, claimed_at + lease)
                    if event is None:
                        logger.info("webhook_retry_event_skipped", event_id=candidate.id)
                        return _SKIPPED
                    targets = await self._select_targets(event, first_attempt=event.attempt_count == 0)
                    await self._dispatch(event, targets, retryable=True)
                    return event.status
                except Exception:
                    logger.exception("webhook_retry_event_error", event_id=candidate.id)
                    return None

        for status in await asyncio.gather(*(_run(e) for e in due)):
            if status is None:
                summary.errors += 1
            elif status is _SKIPPED:
                summary.skipped += 1
            elif status == WebhookEventStatus.SENT:
                summary.sent += 1
            elif status == WebhookEventStatus.FAILED:
                summary.failed += 1
            else:
                summary.retrying += 1
        logger.info("webhook_retry_run_completed", **summary.model_dump())
        return summary

    async def send_test_event(self, endpoint_id: str, merchant_id: str) -> DeliveryAttempt:
        """向单个端点（无论是否启用）发送一次 ``webhook.test`` 事件"""
        async with self._uow_factory() as uow:
            endpoint = await uow.webhook_endpoints.get_by_id(endpoint_id)
        if endpoint is None:
            raise WebhookEndpointNotFoundException(endpoint_id)
        if endpoint.merchant_id != merchant_id:
            raise ForbiddenException()

        event = WebhookEvent.create(
            merchant_id,
            WEBHOOK_TEST,
            {"message": "This is a test webhook event", "endpoint_id": endpoint.id},
            now=self._now(),
        )
        async with self._uow_factory() as uow:
            await uow.webhook_events.create(event)
        attempts = await self._dispatch(event, [endpoint], retryable=False)
        return attempts[0]

    # ------------------------------------------------------------------
    # delivery path
    # ------------------------------------------------------------------

    async def _select_targets(self, event: WebhookEvent, *, first_attempt: bool) -> list[WebhookEndpoint]:
        async with self._uow_factory() as uow:
            endpoints = await uow.webhook_endpoints.list_by_merchant(event.merchant_id, active_only=True)
            targets = [e for e in endpoints if e.subscribes_to(event.type)]
            if not first_attempt and targets:
                delivered = await uow.webhook_deliveries.successful_endpoint_ids(event.id)
                targets = [e for e in targets if e.id not in delivered]
        return targets

    async def _dispatch(
        self,
        event: WebhookEvent,
        targets: Sequence[WebhookEndpoint],
        *,
        retryable: bool,
    ) -> list[DeliveryAttempt]:
        body = canonical_payload(event.to_wire()).encode("utf-8")
        timestamp = int(time.time())
        attempts = list(
            await asyncio.gather(*(self._deliver_one(endpoint, event, body, timestamp) for endpoint in targets))
        )

        now = self._now()
        attempt_no = event.attempt_count + 1
        if targets:
            succeeded = all(a.success for a in attempts)
        else:
            # 首次投递没有订阅者视为完成；重试时已无可投递端点视为失败
            succeeded = attempt_no == 1
        delay = None
        if not succeeded and retryable and targets:
            delay = next_retry_delay(attempt_no, self._settings.retry_delays_minutes)

        async with self._uow_factory() as uow:
            for attempt in attempts:
                await uow.webhook_deliveries.create(
                    WebhookDelivery(
                        id=generate_id("whd_"),
                        event_id=event.id,
                        endpoint_id=attempt.endpoint_id,
                        attempt=attempt_no,
                        success=attempt.success,
                        status_code=attempt.status_code,
                        duration_ms=attempt.duration_ms,
                        error=attempt.error,
                        created_at=now,
                    )
                )
                await self._update_endpoint_health(uow, attempt, now)
            event.register_attempt(succeeded, now, delay)
            await uow.webhook_events.update(event)

        self._log_outcome(event, attempts)
        return attempts

    async def _deliver_one(
        self,
        endpoint: WebhookEndpoint,
        event: WebhookEvent,
        body: bytes,
        timestamp: int,
    ) -> DeliveryAttempt:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._settings.user_agent,
            self._settings.signature_header: sign_payload(endpoint.secret, body, timestamp),
        }
        started = time.perf_counter()
        status_code: Optional[int] = None
        error: Optional[str] = None
        try:
            status_code = await asyncio.wait_for(
                self._transport.post(endpoint.url, body, headers),
                timeout=self._settings.timeouts.total,
            )
        except asyncio.TimeoutError:
            error = "timeout"
        except WebhookTransportError as exc:
            error = str(exc) or exc.__class__.__name__
        duration_ms = int((time.perf_counter() - started) * 1000)

        success = status_code is not None and 200 <= status_code < 300
        if not success and error is None:
            error = f"HTTP {status_code}"
        if not success:
            logger.warning(
                "webhook_delivery_failed",
                event_id=event.id,
                event_type=event.type,
                endpoint_id=endpoint.id,
                status_code=status_code,
                error=error,
                duration_ms=duration_ms,
            )
        return DeliveryAttempt(
            endpoint_id=endpoint.id,
            success=success,
            status_code=status_code,
            duration_ms=duration_ms,
            error=error,
        )

    async def _update_endpoint_health(self, uow: AbstractUnitOfWork, attempt: DeliveryAttempt, now) -> None:
        # 重新读取，避免并发事件覆盖计数
        endpoint = await uow.webhook_endpoints.get_by_id(attempt.endpoint_id)
        if endpoint is None:
            return
        if attempt.success:
            if endpoint.failure_count == 0:
                return
            endpoint.record_success()
        elif endpoint.record_failure(now, self._settings.endpoint_failure_threshold):
            logger.warning(
                "webhook_endpoint_disabled",
                endpoint_id=endpoint.id,
                merchant_id=endpoint.merchant_id,
                failure_count=endpoint.failure_count,
            )
        await uow.webhook_endpoints.update(endpoint)

    def _log_outcome(self, event: WebhookEvent, attempts: list[DeliveryAttempt]) -> None:
        context = {
            "event_id": event.id,
            "event_type": event.type,
            "attempt": event.attempt_count,
            "endpoints": len(attempts),
        }
        if event.status == WebhookEventStatus.SENT:
            logger.info("webhook_event_sent", **context)
        elif event.status == WebhookEventStatus.RETRYING:
            logger.info("webhook_event_retry_scheduled", next_retry_at=event.next_retry_at, **context)
        else:
            logger.warning("webhook_event_failed", **context)
