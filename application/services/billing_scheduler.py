"""
Recurring billing scheduler.

``run_once`` is triggered externally (Celery beat, daily by default). Every due
subscription is processed under its own lock so two workers never bill the
same subscription twice; a locked subscription is skipped for this run.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from application.dtos.subscriptions import BillingRunSummary
from application.ports.locks import LockAcquisitionError, LockManager
from application.services.event_payloads import charge_payload, subscription_payload
from application.services.webhook_dispatcher import WebhookDispatcher
from core.logging_config import get_logger
from core.settings import BillingSettings, payment_settings
from domain.authorization.simulator import AuthorizationSimulator
from domain.common.clock import Clock, utc_now
from domain.common.exceptions import BillingException
from domain.common.identifiers import generate_id
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Charge, ChargeStatus
from domain.subscription.entity import Subscription
from domain.webhook.entity import (
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_RENEWED,
)


logger = get_logger(__name__)

BILLED = "billed"
FAILED = "failed"
PAST_DUE = "past_due"
CANCELLED = "cancelled"
SKIPPED = "skipped"


class BillingScheduler:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        dispatcher: WebhookDispatcher,
        locks: LockManager,
        *,
        authorizer: Optional[AuthorizationSimulator] = None,
        settings: Optional[BillingSettings] = None,
        now: Clock = utc_now,
    ) -> None:
        self._uow_factory = uow_factory
        self._dispatcher = dispatcher
        self._locks = locks
        self._authorizer = authorizer or AuthorizationSimulator()
        self._settings = settings or payment_settings.billing
        self._now = now

    async def run_once(self) -> BillingRunSummary:
        now = self._now()
        async with self._uow_factory() as uow:
            due = await uow.subscriptions.list_due(now, limit=self._settings.batch_size)

        summary = BillingRunSummary(due=len(due))
        logger.info("billing_run_started", due=len(due), run_at=now)

        for candidate in due:
            try:
                async with self._locks.hold(f"billing:subscription:{candidate.id}"):
                    outcome = await self._process(candidate.id, now)
            except LockAcquisitionError:
                logger.info("billing_subscription_locked", subscription_id=candidate.id)
                outcome = SKIPPED
            except Exception:
                logger.exception("billing_subscription_error", subscription_id=candidate.id)
                outcome = FAILED

            if outcome == BILLED:
                summary.billed += 1
            elif outcome == PAST_DUE:
                summary.failed += 1
                summary.past_due += 1
            elif outcome == FAILED:
                summary.failed += 1
            elif outcome == CANCELLED:
                summary.cancelled += 1
            else:
                summary.skipped += 1

        logger.info("billing_run_completed", **summary.model_dump())
        return summary

    async def _process(self, subscription_id: str, now: datetime) -> str:
        # 持锁后重新读取，状态可能已被其他 worker 或商户操作改变
        async with self._uow_factory() as uow:
            subscription = await uow.subscriptions.get_by_id(subscription_id)
        if subscription is None or not subscription.is_due(now):
            return SKIPPED

        if subscription.cancel_at_period_end:
            async with self._uow_factory() as uow:
                subscription.cancel("cancel_at_period_end", now=now)
                await uow.subscriptions.update(subscription)
            logger.info("billing_subscription_cancelled_at_period_end", subscription_id=subscription.id)
            await self._emit(SUBSCRIPTION_CANCELLED, subscription, subscription_payload(subscription))
            return CANCELLED

        try:
            charge = await self._charge(subscription, now)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, BillingException) else exc.__class__.__name__
            logger.warning(
                "billing_subscription_failed",
                subscription_id=subscription.id,
                reason=reason,
                error=str(exc),
                exc_info=not isinstance(exc, BillingException),
            )
            return await self._record_failure(subscription.id, now, reason)

        logger.info(
            "billing_subscription_renewed",
            subscription_id=subscription.id,
            charge_id=charge.id,
            amount=charge.amount,
            next_billing_date=subscription.next_billing_date,
        )
        await self._emit(
            SUBSCRIPTION_RENEWED,
            subscription,
            subscription_payload(subscription, charge=charge_payload(charge)),
        )
        return BILLED

    async def _charge(self, subscription: Subscription, now: datetime) -> Charge:
        if not subscription.has_payment_method:
            raise BillingException(
                "Subscription has no payment method on file",
                subscription_id=subscription.id,
                reason="missing_payment_method",
            )
        auth = await self._authorizer.authorize_recurring(
            subscription.card_last4, subscription.amount, subscription.merchant_id
        )
        if not auth.approved:
            raise BillingException(
                "Recurring authorization was not approved",
                subscription_id=subscription.id,
                reason=auth.reason or auth.status.value,
            )

        charge = Charge(
            id=generate_id("ch_"),
            merchant_id=subscription.merchant_id,
            amount=subscription.amount,
            currency=subscription.currency,
            status=ChargeStatus.SUCCEEDED,
            card_last4=subscription.card_last4,
            card_brand=subscription.card_brand,
            card_token=subscription.card_token,
            subscription_id=subscription.id,
            authorization_status=auth.status.value,
            authorization_code=auth.authorization_code,
            created_at=now,
        )
        async with self._uow_factory() as uow:
            await uow.charges.create(charge)
            subscription.record_billing_success(now)
            await uow.subscriptions.update(subscription)
        return charge

    async def _record_failure(self, subscription_id: str, now: datetime, reason: str) -> str:
        async with self._uow_factory() as uow:
            subscription = await uow.subscriptions.get_by_id(subscription_id)
            if subscription is None:
                return FAILED
            became_past_due = subscription.record_billing_failure(now, self._settings.max_failures)
            await uow.subscriptions.update(subscription)

        if not became_past_due:
            return FAILED
        logger.warning(
            "billing_subscription_past_due",
            subscription_id=subscription.id,
            failure_count=subscription.failure_count,
        )
        await self._emit(
            SUBSCRIPTION_PAST_DUE,
            subscription,
            subscription_payload(subscription, failure_reason=reason),
        )
        return PAST_DUE

    async def _emit(self, event_type: str, subscription: Subscription, data: dict) -> None:
        # 账单状态已提交，事件入队失败只记录日志
        try:
            await self._dispatcher.enqueue(subscription.merchant_id, event_type, data)
        except Exception:
            logger.exception("billing_event_enqueue_failed", subscription_id=subscription.id, event_type=event_type)
