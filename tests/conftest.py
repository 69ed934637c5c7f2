"""Pytest bootstrap configuration.

Environment variables are set before any module that reads application
settings is imported. Shared fixtures wire the services to the in-memory
store, a fake webhook transport and a controllable clock.
"""
import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Mapping, Optional, Union  # noqa: E402

import pytest  # noqa: E402

from application.services.payment_service import PaymentService  # noqa: E402
from application.services.webhook_dispatcher import WebhookDispatcher  # noqa: E402
from core.settings import (  # noqa: E402
    AuthorizationSettings,
    PaymentSettings,
    WebhookSettings,
)
from domain.authorization.simulator import AuthorizationSimulator  # noqa: E402
from domain.card.tokenization import CardTokenizer  # noqa: E402
from domain.fraud.engine import FraudEngine  # noqa: E402
from infrastructure.repositories.inmemory import InMemoryDatabase, InMemoryUnitOfWork  # noqa: E402


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


Response = Union[int, Exception]


class FakeTransport:
    """WebhookTransport double: records requests, replies from a per-URL script."""

    def __init__(self, default: Response = 200):
        self.default = default
        self.responses: dict[str, list[Response]] = {}
        self.requests: list[dict] = []
        self.closed = False

    def script(self, url: str, *responses: Response) -> None:
        self.responses[url] = list(responses)

    async def post(self, url: str, body: bytes, headers: Mapping[str, str]) -> int:
        self.requests.append({"url": url, "body": body, "headers": dict(headers)})
        queue = self.responses.get(url)
        reply: Optional[Response] = queue.pop(0) if queue else None
        if reply is None:
            reply = self.default
        if isinstance(reply, Exception):
            raise reply
        return reply

    def requests_to(self, url: str) -> list[dict]:
        return [r for r in self.requests if r["url"] == url]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 12, 13, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def uow_factory(db):
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def payment_config() -> PaymentSettings:
    # 无延迟、无随机错误，保证结果可复现
    return PaymentSettings(
        authorization=AuthorizationSettings(simulated_latency_seconds=0, random_error_rate=0),
        webhook=WebhookSettings(),
    )


@pytest.fixture
def authorizer(payment_config) -> AuthorizationSimulator:
    return AuthorizationSimulator(payment_config.authorization)


@pytest.fixture
def dispatcher(uow_factory, transport, payment_config, clock) -> WebhookDispatcher:
    return WebhookDispatcher(uow_factory, transport, payment_config.webhook, now=clock)


@pytest.fixture
def payment_service(uow_factory, dispatcher, payment_config, authorizer) -> PaymentService:
    return PaymentService(
        uow_factory,
        dispatcher,
        tokenizer=CardTokenizer(payment_config.card),
        fraud_engine=FraudEngine(payment_config.fraud),
        authorizer=authorizer,
    )


