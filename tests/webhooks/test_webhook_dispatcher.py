import asyncio
import json
from datetime import timedelta

import pytest

from application.dtos.webhooks import RegisterWebhookEndpoint
from application.ports.webhook_transport import WebhookTransportError
from application.services.webhook_dispatcher import WebhookDispatcher
from application.services.webhook_endpoint_service import WebhookEndpointService
from domain.common.exceptions import ForbiddenException, WebhookEndpointNotFoundException
from domain.webhook.entity import WebhookEventStatus
from domain.webhook.retry import next_retry_delay


MERCHANT = "m_acme"
URL_A = "https://a.example/hooks"
URL_B = "https://b.example/hooks"


async def _register(uow_factory, url=URL_A, events=("*",), merchant=MERCHANT):
    service = WebhookEndpointService(uow_factory)
    return await service.register_endpoint(merchant, RegisterWebhookEndpoint(url=url, events=list(events)))


def _event(db, event_id):
    return db.tables["webhook_events"][event_id]


def _endpoint(db, endpoint_id):
    return db.tables["webhook_endpoints"][endpoint_id]


def test_retry_delay_table():
    delays = [1, 2, 5, 10]
    assert [next_retry_delay(n, delays) for n in range(1, 6)] == [
        timedelta(minutes=1),
        timedelta(minutes=2),
        timedelta(minutes=5),
        timedelta(minutes=10),
        None,
    ]
    assert next_retry_delay(1, []) is None


@pytest.mark.asyncio
async def test_no_subscribers_marks_event_sent(dispatcher, uow_factory, db, transport):
    await _register(uow_factory, events=["charge.refunded"])
    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})

    event = _event(db, event_id)
    assert event.status == WebhookEventStatus.SENT
    assert event.attempt_count == 1
    assert transport.requests == []


@pytest.mark.asyncio
async def test_failed_delivery_follows_backoff_then_gives_up(dispatcher, uow_factory, db, transport, clock):
    endpoint = await _register(uow_factory)
    transport.default = 500
    start = clock()

    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    event = _event(db, event_id)
    assert event.status == WebhookEventStatus.RETRYING
    assert event.next_retry_at == start + timedelta(minutes=1)

    # 未到期不处理
    assert (await dispatcher.retry_due()).processed == 0

    for step, expected_next in ((1, 2), (2, 5), (5, 10)):
        clock.advance(minutes=step)
        summary = await dispatcher.retry_due()
        assert summary.processed == 1 and summary.retrying == 1
        assert _event(db, event_id).next_retry_at == clock() + timedelta(minutes=expected_next)

    clock.advance(minutes=10)
    summary = await dispatcher.retry_due()
    assert summary.failed == 1

    event = _event(db, event_id)
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempt_count == 5
    assert event.next_retry_at is None
    assert len(transport.requests_to(URL_A)) == 5

    deliveries = await WebhookEndpointService(uow_factory).list_deliveries(endpoint.id, MERCHANT)
    assert [d.attempt for d in deliveries] == [5, 4, 3, 2, 1]
    assert all(d.status_code == 500 and not d.success for d in deliveries)

    clock.advance(hours=1)
    assert (await dispatcher.retry_due()).processed == 0


@pytest.mark.asyncio
async def test_retries_resend_identical_bytes(dispatcher, uow_factory, transport, clock):
    await _register(uow_factory)
    transport.script(URL_A, 503, 200)

    await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1", "amount": 100})
    clock.advance(minutes=1)
    summary = await dispatcher.retry_due()

    assert summary.sent == 1
    first, second = transport.requests_to(URL_A)
    assert first["body"] == second["body"]


@pytest.mark.asyncio
async def test_endpoint_disabled_after_five_consecutive_failures(dispatcher, uow_factory, db, transport):
    endpoint = await _register(uow_factory)
    transport.default = WebhookTransportError("connection refused")

    for _ in range(4):
        await dispatcher.notify(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    assert _endpoint(db, endpoint.id).is_active
    assert _endpoint(db, endpoint.id).failure_count == 4

    await dispatcher.notify(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    stored = _endpoint(db, endpoint.id)
    assert not stored.is_active
    assert stored.failure_count == 5
    assert stored.last_failure_at is not None

    await dispatcher.notify(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    assert len(transport.requests) == 5

    # 每次尝试都有投递记录，事件直接进入终态
    deliveries = list(db.tables["webhook_deliveries"].values())
    assert len(deliveries) == 5
    assert not any(d.success for d in deliveries)
    statuses = [e.status for e in db.tables["webhook_events"].values()]
    assert statuses.count(WebhookEventStatus.FAILED) == 5
    assert all(e.next_retry_at is None for e in db.tables["webhook_events"].values())


@pytest.mark.asyncio
async def test_success_resets_failure_count(dispatcher, uow_factory, db, transport):
    endpoint = await _register(uow_factory)
    transport.script(URL_A, 500, 500, 200)

    for _ in range(3):
        await dispatcher.notify(MERCHANT, "payment.succeeded", {"id": "pi_1"})

    stored = _endpoint(db, endpoint.id)
    assert stored.failure_count == 0
    assert stored.is_active


@pytest.mark.asyncio
async def test_retry_skips_endpoints_that_already_succeeded(dispatcher, uow_factory, db, transport, clock):
    await _register(uow_factory, URL_A)
    await _register(uow_factory, URL_B)
    transport.script(URL_B, 500)

    event_id = await dispatcher.enqueue(MERCHANT, "charge.refunded", {"id": "ch_1"})
    assert _event(db, event_id).status == WebhookEventStatus.RETRYING

    clock.advance(minutes=1)
    await dispatcher.retry_due()

    assert _event(db, event_id).status == WebhookEventStatus.SENT
    assert len(transport.requests_to(URL_A)) == 1
    assert len(transport.requests_to(URL_B)) == 2


@pytest.mark.asyncio
async def test_other_merchants_endpoints_are_not_targeted(dispatcher, uow_factory, transport):
    await _register(uow_factory, URL_A, merchant="m_other")
    await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    assert transport.requests == []


@pytest.mark.asyncio
async def test_timeouts_are_recorded_without_status_code(dispatcher, uow_factory, transport):
    endpoint = await _register(uow_factory)
    transport.script(URL_A, WebhookTransportError("timeout"))

    await dispatcher.enqueue(MERCHANT, "payment.failed", {"id": "pi_1"})

    [delivery] = await WebhookEndpointService(uow_factory).list_deliveries(endpoint.id, MERCHANT)
    assert delivery.status_code is None
    assert delivery.error == "timeout"
    assert not delivery.success


@pytest.mark.asyncio
async def test_event_survives_a_crashed_first_attempt(dispatcher, uow_factory, db, transport, clock):
    await _register(uow_factory)
    transport.script(URL_A, RuntimeError("worker died"))

    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    event = _event(db, event_id)
    assert event.status == WebhookEventStatus.PENDING
    assert event.attempt_count == 0

    clock.advance(minutes=1)
    summary = await dispatcher.retry_due()
    assert summary.sent == 1
    assert _event(db, event_id).attempt_count == 1


@pytest.mark.asyncio
async def test_wire_format(dispatcher, uow_factory, transport):
    await _register(uow_factory)
    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})

    [request] = transport.requests
    body = json.loads(request["body"])
    assert body["id"] == event_id
    assert body["type"] == "payment.succeeded"
    assert isinstance(body["created"], int)
    assert body["data"] == {"object": {"id": "pi_1"}}
    assert request["headers"]["X-Signature"].startswith("t=")


@pytest.mark.asyncio
async def test_send_test_event_reaches_disabled_endpoint(dispatcher, uow_factory, db, transport):
    service = WebhookEndpointService(uow_factory)
    endpoint = await _register(uow_factory, events=["payment.succeeded"])
    await service.disable_endpoint(endpoint.id, MERCHANT)

    attempt = await dispatcher.send_test_event(endpoint.id, MERCHANT)

    assert attempt.success and attempt.status_code == 200
    [event] = db.tables["webhook_events"].values()
    assert event.type == "webhook.test"
    assert event.status == WebhookEventStatus.SENT

    with pytest.raises(ForbiddenException):
        await dispatcher.send_test_event(endpoint.id, "m_other")
    with pytest.raises(WebhookEndpointNotFoundException):
        await dispatcher.send_test_event("we_missing", MERCHANT)


@pytest.mark.asyncio
async def test_failed_test_event_is_not_retried(dispatcher, uow_factory, db, transport, clock):
    endpoint = await _register(uow_factory)
    transport.default = 500

    attempt = await dispatcher.send_test_event(endpoint.id, MERCHANT)

    assert not attempt.success
    [event] = db.tables["webhook_events"].values()
    assert event.status == WebhookEventStatus.FAILED
    clock.advance(hours=1)
    assert (await dispatcher.retry_due()).processed == 0


@pytest.mark.asyncio
async def test_notify_records_one_delivery_per_attempt(dispatcher, uow_factory, db, transport):
    endpoint = await _register(uow_factory)
    transport.script(URL_A, 500)

    await dispatcher.notify(MERCHANT, "payment.succeeded", {"id": "pi_1"})

    [event] = db.tables["webhook_events"].values()
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempt_count == 1
    assert event.next_retry_at is None
    [delivery] = await WebhookEndpointService(uow_factory).list_deliveries(endpoint.id, MERCHANT)
    assert delivery.event_id == event.id
    assert delivery.status_code == 500
    assert not delivery.success


@pytest.mark.asyncio
async def test_retry_without_active_endpoints_fails_the_event(dispatcher, uow_factory, db, transport, clock):
    endpoint = await _register(uow_factory)
    transport.script(URL_A, 500)
    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    assert _event(db, event_id).status == WebhookEventStatus.RETRYING

    await WebhookEndpointService(uow_factory).disable_endpoint(endpoint.id, MERCHANT)
    clock.advance(minutes=1)
    summary = await dispatcher.retry_due()

    assert summary.failed == 1
    event = _event(db, event_id)
    assert event.status == WebhookEventStatus.FAILED
    assert event.attempt_count == 2
    assert event.next_retry_at is None
    assert len(transport.requests) == 1

    clock.advance(hours=1)
    assert (await dispatcher.retry_due()).processed == 0


class SlowTransport:
    def __init__(self, inner, delay: float = 0.05):
        self._inner = inner
        self._delay = delay

    async def post(self, url, body, headers):
        await asyncio.sleep(self._delay)
        return await self._inner.post(url, body, headers)

    async def aclose(self) -> None:
        await self._inner.aclose()


@pytest.mark.asyncio
async def test_overlapping_retry_runs_deliver_each_attempt_once(uow_factory, db, transport, payment_config, clock):
    dispatcher = WebhookDispatcher(uow_factory, SlowTransport(transport), payment_config.webhook, now=clock)
    endpoint = await _register(uow_factory)
    transport.script(URL_A, 500)
    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})

    clock.advance(minutes=1)
    summaries = await asyncio.gather(dispatcher.retry_due(), dispatcher.retry_due())

    assert sorted((s.sent, s.skipped) for s in summaries) == [(0, 1), (1, 0)]
    assert len(transport.requests_to(URL_A)) == 2
    deliveries = await WebhookEndpointService(uow_factory).list_deliveries(endpoint.id, MERCHANT)
    assert sorted(d.attempt for d in deliveries) == [1, 2]
    event = _event(db, event_id)
    assert event.attempt_count == 2
    assert event.status == WebhookEventStatus.SENT
    assert _endpoint(db, endpoint.id).failure_count == 0


@pytest.mark.asyncio
async def test_claimed_event_is_not_due_until_lease_expires(uow_factory, db, dispatcher, transport, clock):
    await _register(uow_factory)
    transport.script(URL_A, 500)
    event_id = await dispatcher.enqueue(MERCHANT, "payment.succeeded", {"id": "pi_1"})
    clock.advance(minutes=1)
    now = clock()

    async with uow_factory() as uow:
        claimed = await uow.webhook_events.claim(event_id, now, now + timedelta(minutes=5))
    async with uow_factory() as uow:
        again = await uow.webhook_events.claim(event_id, now, now + timedelta(minutes=5))
        due = await uow.webhook_events.list_due(now)

    assert claimed.id == event_id
    assert claimed.next_retry_at == now + timedelta(minutes=5)
    assert again is None
    assert due == []
