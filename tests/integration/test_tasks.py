from celery.schedules import crontab

import pytest

from core.config import settings
from core.settings import payment_settings
from infrastructure import container as container_module
from infrastructure.container import build_container
from infrastructure.external.cache.locks import LocalLockManager
from infrastructure.repositories.inmemory import InMemoryUnitOfWork
from infrastructure.tasks import celery_app
from infrastructure.tasks.config.beat import CELERY_BEAT_SCHEDULE
from infrastructure.tasks.tasks import billing as billing_tasks
from infrastructure.tasks.tasks import webhooks as webhook_tasks


def test_tasks_are_registered_by_name():
    assert "billing.run_cycle" in celery_app.tasks
    assert "webhooks.retry_due" in celery_app.tasks


def test_beat_schedule_entries():
    billing = CELERY_BEAT_SCHEDULE["billing-daily-cycle"]
    assert billing["task"] == "billing.run_cycle"
    assert billing["schedule"] == crontab(hour=payment_settings.billing.run_hour_utc, minute=0)

    retries = CELERY_BEAT_SCHEDULE["webhooks-retry-due"]
    assert retries["task"] == "webhooks.retry_due"
    assert retries["schedule"] == float(payment_settings.webhook.retry_poll_seconds)
    assert retries["options"]["queue"] == "high"


def test_webhook_tasks_route_to_high_queue():
    assert celery_app.conf.task_routes["webhooks.*"] == {"queue": "high"}
    assert celery_app.conf.task_always_eager


@pytest.fixture
def local_container(monkeypatch, db, transport):
    def _build():
        return build_container(
            uow_factory=lambda: InMemoryUnitOfWork(db),
            transport=transport,
            locks=LocalLockManager(),
            dispose_engine=False,
        )

    monkeypatch.setattr(billing_tasks, "build_container", _build)
    monkeypatch.setattr(webhook_tasks, "build_container", _build)
    return _build


def test_billing_task_runs_eagerly(local_container, transport):
    result = billing_tasks.run_billing_cycle.apply().get()
    assert result["due"] == 0 and result["billed"] == 0
    assert transport.closed


def test_webhook_retry_task_runs_eagerly(local_container):
    result = webhook_tasks.retry_due_webhooks.apply(kwargs={"limit": 10}).get()
    assert result == {"processed": 0, "sent": 0, "retrying": 0, "failed": 0, "errors": 0, "skipped": 0}


def test_lock_manager_falls_back_to_local_without_redis(monkeypatch):
    monkeypatch.setattr(settings.redis, "url", None)
    assert isinstance(container_module.build_lock_manager(), LocalLockManager)


@pytest.mark.asyncio
async def test_container_wires_one_dispatcher(db, transport, monkeypatch):
    monkeypatch.setattr(settings.redis, "url", None)
    container = build_container(uow_factory=lambda: InMemoryUnitOfWork(db), transport=transport, dispose_engine=False)

    assert container.payments._dispatcher is container.dispatcher
    assert container.subscriptions._dispatcher is container.dispatcher
    assert isinstance(container.locks, LocalLockManager)

    await container.aclose()
    assert transport.closed
