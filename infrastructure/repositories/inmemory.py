"""In-memory implementation of the Store (AbstractUnitOfWork + repositories).

Single-process only. Useful for local dev and tests.

Writes are staged per unit of work and merged into the shared database on
commit, so a rolled back unit of work leaves no trace. Entities are copied on
the way in and out, mirroring the detach semantics of the SQLAlchemy store.
"""
from __future__ import annotations

from collections import defaultdict
from copy import deepcopy
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from domain.card.tokenization import Token
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Charge, PaymentIntent, Refund
from domain.payment.repository import (
    CardTokenRepository,
    ChargeRepository,
    PaymentIntentRepository,
    RefundRepository,
)
from domain.subscription.entity import LIVE_STATUSES, Subscription, SubscriptionStatus
from domain.subscription.repository import SubscriptionRepository
from domain.webhook.entity import (
    WebhookDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventStatus,
)
from domain.webhook.repository import (
    WebhookDeliveryRepository,
    WebhookEndpointRepository,
    WebhookEventRepository,
)


class InMemoryDatabase:
    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self.consumed_tokens: set[str] = set()

    def clear(self) -> None:
        self.tables.clear()
        self.consumed_tokens.clear()


class _Session:
    def __init__(self, db: InMemoryDatabase) -> None:
        self.db = db
        self.staged: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self.consumed: set[str] = set()

    def get(self, table: str, key: str) -> Any:
        if key in self.staged[table]:
            return deepcopy(self.staged[table][key])
        value = self.db.tables[table].get(key)
        return deepcopy(value) if value is not None else None

    def put(self, table: str, key: str, value: Any) -> Any:
        self.staged[table][key] = deepcopy(value)
        return value

    def rows(self, table: str, predicate: Callable[[Any], bool] = lambda _: True) -> List[Any]:
        merged = {**self.db.tables[table], **self.staged[table]}
        return [deepcopy(row) for row in merged.values() if predicate(row)]

    def commit(self) -> None:
        for table, rows in self.staged.items():
            self.db.tables[table].update(rows)
        self.db.consumed_tokens |= self.consumed
        self.rollback()

    def rollback(self) -> None:
        self.staged.clear()
        self.consumed.clear()


# ---------------------------------------------------------------------------
# payments
# ---------------------------------------------------------------------------

class InMemoryPaymentIntentRepository(PaymentIntentRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def create(self, intent: PaymentIntent) -> PaymentIntent:
        return self._s.put("payment_intents", intent.id, intent)

    async def get_by_id(self, intent_id: str) -> Optional[PaymentIntent]:
        return self._s.get("payment_intents", intent_id)

    async def update(self, intent: PaymentIntent) -> PaymentIntent:
        return self._s.put("payment_intents", intent.id, intent)


class InMemoryChargeRepository(ChargeRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def create(self, charge: Charge) -> Charge:
        return self._s.put("charges", charge.id, charge)

    async def get_by_id(self, charge_id: str) -> Optional[Charge]:
        return self._s.get("charges", charge_id)

    async def update(self, charge: Charge) -> Charge:
        return self._s.put("charges", charge.id, charge)

    async def list_by_subscription(self, subscription_id: str, limit: int = 100) -> List[Charge]:
        rows = self._s.rows("charges", lambda c: c.subscription_id == subscription_id)
        rows.sort(key=lambda c: c.created_at, reverse=True)
        return rows[:limit]

    async def count_charges(
        self,
        *,
        merchant_id: str,
        card_last4: str,
        since: Optional[datetime] = None,
        amount_below: Optional[int] = None,
        status: Optional[str] = None,
    ) -> int:
        def _match(c: Charge) -> bool:
            return (
                c.merchant_id == merchant_id
                and c.card_last4 == card_last4
                and (since is None or c.created_at >= since)
                and (amount_below is None or c.amount < amount_below)
                and (status is None or c.status.value == status)
            )

        return len(self._s.rows("charges", _match))


class InMemoryRefundRepository(RefundRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def create(self, refund: Refund) -> Refund:
        return self._s.put("refunds", refund.id, refund)

    async def list_by_charge(self, charge_id: str) -> List[Refund]:
        rows = self._s.rows("refunds", lambda r: r.charge_id == charge_id)
        rows.sort(key=lambda r: r.created_at)
        return rows


class InMemoryCardTokenRepository(CardTokenRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def save(self, token: Token) -> Token:
        return self._s.put("tokens", token.id, token)

    async def get(self, token_id: str) -> Optional[Token]:
        return self._s.get("tokens", token_id)

    async def consume(self, token_id: str) -> Optional[Token]:
        if token_id in self._s.db.consumed_tokens or token_id in self._s.consumed:
            return None
        token = self._s.get("tokens", token_id)
        if token is None:
            return None
        self._s.consumed.add(token_id)
        return token


# ---------------------------------------------------------------------------
# subscriptions
# ---------------------------------------------------------------------------

class InMemorySubscriptionRepository(SubscriptionRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def create(self, subscription: Subscription) -> Subscription:
        return self._s.put("subscriptions", subscription.id, subscription)

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        return self._s.get("subscriptions", subscription_id)

    async def update(self, subscription: Subscription) -> Subscription:
        return self._s.put("subscriptions", subscription.id, subscription)

    async def list_due(self, now: datetime, limit: int = 500) -> List[Subscription]:
        rows = self._s.rows(
            "subscriptions",
            lambda s: s.status == SubscriptionStatus.ACTIVE and s.next_billing_date <= now,
        )
        rows.sort(key=lambda s: s.next_billing_date)
        return rows[:limit]

    async def find_live(self, merchant_id: str, customer_id: str, price_id: str) -> Optional[Subscription]:
        rows = self._s.rows(
            "subscriptions",
            lambda s: (
                s.merchant_id == merchant_id
                and s.customer_id == customer_id
                and s.price_id == price_id
                and s.status in LIVE_STATUSES
            ),
        )
        return rows[0] if rows else None


# ---------------------------------------------------------------------------
# webhooks
# ---------------------------------------------------------------------------

class InMemoryWebhookEndpointRepository(WebhookEndpointRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def create(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        return self._s.put("webhook_endpoints", endpoint.id, endpoint)

    async def get_by_id(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        return self._s.get("webhook_endpoints", endpoint_id)

    async def update(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        return self._s.put("webhook_endpoints", endpoint.id, endpoint)

    async def list_by_merchant(self, merchant_id: str, *, active_only: bool = False) -> List[WebhookEndpoint]:
        rows = self._s.rows(
            "webhook_endpoints",
            lambda e: e.merchant_id == merchant_id and (e.is_active or not active_only),
        )
        rows.sort(key=lambda e: e.created_at)
        return rows


class InMemoryWebhookEventRepository(WebhookEventRepository):
    _DUE_STATUSES = (WebhookEventStatus.PENDING, WebhookEventStatus.RETRYING)

    def __init__(self, session: _Session):
        self._s = session

    async def create(self, event: WebhookEvent) -> WebhookEvent:
        return self._s.put("webhook_events", event.id, event)

    async def get_by_id(self, event_id: str) -> Optional[WebhookEvent]:
        return self._s.get("webhook_events", event_id)

    async def update(self, event: WebhookEvent) -> WebhookEvent:
        return self._s.put("webhook_events", event.id, event)

    async def list_due(self, now: datetime, limit: int = 100) -> List[WebhookEvent]:
        rows = self._s.rows(
            "webhook_events",
            lambda e: e.status in self._DUE_STATUSES and e.next_retry_at is not None and e.next_retry_at <= now,
        )
        rows.sort(key=lambda e: e.next_retry_at)
        return rows[:limit]

    async def claim(self, event_id: str, now: datetime, lease_until: datetime) -> Optional[WebhookEvent]:
        event = self._s.get("webhook_events", event_id)
        if (
            event is None
            or event.status not in self._DUE_STATUSES
            or event.next_retry_at is None
            or event.next_retry_at > now
        ):
            return None
        event.next_retry_at = lease_until
        return self._s.put("webhook_events", event.id, event)


class InMemoryWebhookDeliveryRepository(WebhookDeliveryRepository):
    def __init__(self, session: _Session):
        self._s = session

    async def create(self, delivery: WebhookDelivery) -> WebhookDelivery:
        return self._s.put("webhook_deliveries", delivery.id, delivery)

    async def list_by_event(self, event_id: str) -> List[WebhookDelivery]:
        rows = self._s.rows("webhook_deliveries", lambda d: d.event_id == event_id)
        rows.sort(key=lambda d: (d.attempt, d.created_at))
        return rows

    async def list_by_endpoint(self, endpoint_id: str, limit: int = 50) -> List[WebhookDelivery]:
        rows = self._s.rows("webhook_deliveries", lambda d: d.endpoint_id == endpoint_id)
        rows.sort(key=lambda d: d.created_at, reverse=True)
        return rows[:limit]

    async def successful_endpoint_ids(self, event_id: str) -> set[str]:
        rows = self._s.rows("webhook_deliveries", lambda d: d.event_id == event_id and d.success)
        return {d.endpoint_id for d in rows}


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """基于内存字典的 Unit of Work"""

    def __init__(self, db: InMemoryDatabase, *, readonly: bool = False) -> None:
        super().__init__(readonly=readonly)
        self._db = db
        self._session: Optional[_Session] = None

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        await super().__aenter__()
        self._session = _Session(self._db)
        self.payment_intents = InMemoryPaymentIntentRepository(self._session)
        self.charges = InMemoryChargeRepository(self._session)
        self.refunds = InMemoryRefundRepository(self._session)
        self.tokens = InMemoryCardTokenRepository(self._session)
        self.subscriptions = InMemorySubscriptionRepository(self._session)
        self.webhook_endpoints = InMemoryWebhookEndpointRepository(self._session)
        self.webhook_events = InMemoryWebhookEventRepository(self._session)
        self.webhook_deliveries = InMemoryWebhookDeliveryRepository(self._session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            self._session = None

    async def commit(self) -> None:
        if self._session is not None and not self._readonly:
            self._session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self._session is not None:
            self._session.rollback()
        self._committed = False
