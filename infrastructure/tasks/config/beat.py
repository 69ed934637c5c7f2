"""Celery beat schedule for the payment engine.

* ``billing.run_cycle`` runs once per day at ``PAYMENT__BILLING__RUN_HOUR_UTC``.
* ``webhooks.retry_due`` polls for due webhook retries.
"""
from __future__ import annotations

from celery.schedules import crontab

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    "billing-daily-cycle": {
        "task": "billing.run_cycle",
        "schedule": crontab(hour=payment_settings.billing.run_hour_utc, minute=0),
        "options": {"queue": "default"},
    },
    "webhooks-retry-due": {
        "task": "webhooks.retry_due",
        "schedule": float(payment_settings.webhook.retry_poll_seconds),
        # 下一轮轮询会重新扫描，过期的任务没有执行价值
        "options": {"queue": "high", "expires": payment_settings.webhook.retry_poll_seconds},
    },
}
