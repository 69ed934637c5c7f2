"""Recurring billing Celery tasks"""
from __future__ import annotations

import asyncio

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger
from infrastructure.container import build_container

logger = get_logger(__name__)


async def _run_cycle() -> dict:
    container = build_container()
    try:
        summary = await container.billing.run_once()
        return summary.model_dump()
    finally:
        await container.aclose()


@shared_task(name="billing.run_cycle", bind=True, base=BaseTask, max_retries=2, default_retry_delay=300)
def run_billing_cycle(self) -> dict:
    """Bill every subscription whose next billing date has passed.

    Each subscription is processed under its own lock, so a retried or
    overlapping run skips subscriptions another worker is billing.
    """
    try:
        result = asyncio.run(_run_cycle())
    except Exception as exc:
        logger.error("billing_cycle_failed", error=str(exc))
        raise self.retry(exc=exc)
    logger.info("billing_cycle_finished", **result)
    return result
