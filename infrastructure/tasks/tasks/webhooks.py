"""Webhook delivery Celery tasks"""
from __future__ import annotations

import asyncio

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger
from infrastructure.container import build_container

logger = get_logger(__name__)


async def _retry_due(limit: int | None) -> dict:
    container = build_container()
    try:
        summary = await container.dispatcher.retry_due(limit=limit)
        return summary.model_dump()
    finally:
        await container.aclose()


@shared_task(name="webhooks.retry_due", bind=True, base=BaseTask)
def retry_due_webhooks(self, limit: int | None = None) -> dict:
    """Re-deliver webhook events whose next retry time has passed.

    Not retried by Celery: the next beat tick picks up whatever is still due.
    """
    result = asyncio.run(_retry_due(limit))
    if result.get("processed"):
        logger.info("webhook_retry_run_finished", **result)
    return result
