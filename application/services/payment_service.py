"""
Application service orchestrating card payment use-cases.

Confirmation runs the pipeline tokenize -> fraud check -> authorize -> (step-up)
inside one unit of work; webhook events are enqueued only after the state they
describe has been committed.
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import (
    CardDetails,
    ConfirmPaymentIntent,
    CreatePaymentIntent,
    PaymentOutcome,
    RefundRequest,
    VerifyStepUp,
)
from application.services.event_payloads import charge_payload, payment_intent_payload
from application.services.webhook_dispatcher import WebhookDispatcher
from core.logging_config import get_logger
from domain.authorization.simulator import AuthorizationResult, AuthorizationSimulator
from domain.card.tokenization import CardFields, CardTokenizer, Token
from domain.common.exceptions import (
    ChargeNotFoundException,
    ForbiddenException,
    InvalidStateException,
    InvalidTokenException,
    PaymentIntentNotFoundException,
)
from domain.common.identifiers import generate_id
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.fraud.engine import FraudCheckResult, FraudEngine, fraud_status
from domain.payment.entity import (
    Charge,
    ChargeStatus,
    PaymentIntent,
    PaymentIntentStatus,
    Refund,
)
from domain.webhook.entity import CHARGE_REFUNDED, PAYMENT_FAILED, PAYMENT_SUCCEEDED
from shared.codes.payment_codes import PaymentCode, get_failure_message


logger = get_logger(__name__)


class PaymentService:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        dispatcher: WebhookDispatcher,
        *,
        tokenizer: Optional[CardTokenizer] = None,
        fraud_engine: Optional[FraudEngine] = None,
        authorizer: Optional[AuthorizationSimulator] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._dispatcher = dispatcher
        self._tokenizer = tokenizer or CardTokenizer()
        self._fraud = fraud_engine or FraudEngine()
        self._authorizer = authorizer or AuthorizationSimulator()

    # ------------------------------------------------------------------
    # tokens & intents
    # ------------------------------------------------------------------

    async def tokenize_card(self, details: CardDetails) -> Token:
        token = self._tokenizer.tokenize(
            CardFields(
                number=details.number,
                exp_month=details.exp_month,
                exp_year=details.exp_year,
                cvc=details.cvc,
            )
        )
        async with self._uow_factory() as uow:
            await uow.tokens.save(token)
        logger.info("card_tokenized", token_id=token.id, brand=token.brand, last4=token.last4)
        return token

    async def create_payment_intent(self, merchant_id: str, req: CreatePaymentIntent) -> PaymentIntent:
        intent = PaymentIntent.create(
            merchant_id,
            req.amount,
            req.currency,
            receipt_email=req.receipt_email,
            description=req.description,
            metadata=req.metadata,
        )
        async with self._uow_factory() as uow:
            intent = await uow.payment_intents.create(intent)
        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            merchant_id=merchant_id,
            amount=intent.amount,
            currency=intent.currency,
        )
        return intent

    async def get_payment_intent(self, intent_id: str, merchant_id: str) -> PaymentIntent:
        async with self._uow_factory() as uow:
            return await self._get_owned_intent(uow, intent_id, merchant_id)

    async def get_charge(self, charge_id: str, merchant_id: str) -> Charge:
        async with self._uow_factory() as uow:
            return await self._get_owned_charge(uow, charge_id, merchant_id)

    # ------------------------------------------------------------------
    # confirmation
    # ------------------------------------------------------------------

    async def confirm_payment_intent(
        self,
        intent_id: str,
        merchant_id: str,
        req: ConfirmPaymentIntent,
    ) -> PaymentOutcome:
        """确认支付意图

        顺序：风控 -> 授权 -> 3DS。风控拦截时不创建扣款也不请求授权；
        授权被拒或出错时创建失败扣款并取消意图。
        """
        event: Optional[tuple[str, dict]] = None
        async with self._uow_factory() as uow:
            intent = await self._get_owned_intent(uow, intent_id, merchant_id)
            self._check_client_secret(intent, req.client_secret)
            intent.ensure_confirmable()

            token = await uow.tokens.consume(req.card_token)
            if token is None:
                raise InvalidTokenException(req.card_token)
            intent.attach_card(token.id, token.last4, token.brand)

            fraud = await self._fraud.check(
                merchant_id,
                token.fingerprint,
                intent.amount,
                uow.charges,
                card_bin=token.bin or None,
                email=req.email or intent.receipt_email,
            )
            intent.record_fraud_check(fraud.score, list(fraud.flags))
            logger.info(
                "fraud_check_completed",
                payment_intent_id=intent.id,
                score=fraud.score,
                flags=list(fraud.flags),
                status=fraud.status,
            )

            if not fraud.passed:
                intent.cancel("fraud_blocked")
                await uow.payment_intents.update(intent)
                logger.warning("payment_blocked_by_fraud", payment_intent_id=intent.id, score=fraud.score)
                return self._outcome("blocked", intent, fraud=fraud)

            auth = await self._authorizer.authorize(token.fingerprint, intent.amount, merchant_id)
            if not auth.approved:
                charge = self._build_charge(intent, ChargeStatus.FAILED, fraud=fraud, auth=auth, failure_code=auth.reason)
                await uow.charges.create(charge)
                intent.cancel(auth.reason)
                await uow.payment_intents.update(intent)
                logger.warning(
                    "payment_authorization_failed",
                    payment_intent_id=intent.id,
                    charge_id=charge.id,
                    authorization_status=auth.status.value,
                    reason=auth.reason,
                )
                outcome = self._outcome("failed", intent, fraud=fraud, charge=charge)
                event = (PAYMENT_FAILED, payment_intent_payload(intent, charge=charge))

            elif auth.requires_step_up or fraud.requires_step_up:
                intent.authorization_code = auth.authorization_code
                intent.require_action()
                await uow.payment_intents.update(intent)
                logger.info(
                    "payment_requires_step_up",
                    payment_intent_id=intent.id,
                    requested_by="authorization" if auth.requires_step_up else "fraud",
                )
                outcome = self._outcome("requires_action", intent, fraud=fraud)

            else:
                charge = self._build_charge(intent, ChargeStatus.SUCCEEDED, fraud=fraud, auth=auth)
                await uow.charges.create(charge)
                intent.mark_succeeded()
                await uow.payment_intents.update(intent)
                logger.info("payment_succeeded", payment_intent_id=intent.id, charge_id=charge.id, amount=charge.amount)
                outcome = self._outcome("succeeded", intent, fraud=fraud, charge=charge)
                event = (PAYMENT_SUCCEEDED, payment_intent_payload(intent, charge=charge))

        if event is not None:
            await self._dispatcher.enqueue(merchant_id, *event)
        return outcome

    async def verify_step_up(self, intent_id: str, merchant_id: str, req: VerifyStepUp) -> PaymentOutcome:
        """完成 3DS 验证：通过则扣款成功，拒绝则记录失败扣款并取消意图"""
        async with self._uow_factory() as uow:
            intent = await self._get_owned_intent(uow, intent_id, merchant_id)
            self._check_client_secret(intent, req.client_secret)
            if intent.status != PaymentIntentStatus.REQUIRES_ACTION:
                raise InvalidStateException(
                    f"PaymentIntent is {intent.status.value}, step-up verification is not pending",
                    code=PaymentCode.PAYMENT_INTENT_STATE,
                    details={"status": intent.status.value},
                )

            result = self._authorizer.verify_step_up(req.code)
            if result.authenticated:
                charge = self._build_charge(intent, ChargeStatus.SUCCEEDED, authorization_code=intent.authorization_code)
                await uow.charges.create(charge)
                intent.mark_succeeded()
                outcome_status = "succeeded"
                event_type = PAYMENT_SUCCEEDED
            else:
                charge = self._build_charge(intent, ChargeStatus.FAILED, failure_code=result.reason)
                await uow.charges.create(charge)
                intent.cancel(result.reason)
                outcome_status = "failed"
                event_type = PAYMENT_FAILED
            await uow.payment_intents.update(intent)

        logger.info(
            "payment_step_up_completed",
            payment_intent_id=intent.id,
            charge_id=charge.id,
            authenticated=result.authenticated,
            transaction_id=result.transaction_id,
        )
        await self._dispatcher.enqueue(merchant_id, event_type, payment_intent_payload(intent, charge=charge))
        return self._outcome(outcome_status, intent, charge=charge)

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------

    async def refund_charge(self, charge_id: str, merchant_id: str, req: RefundRequest) -> Refund:
        """退款；未指定金额时退还剩余全部金额"""
        async with self._uow_factory() as uow:
            charge = await self._get_owned_charge(uow, charge_id, merchant_id)
            amount = charge.apply_refund(req.amount)
            refund = Refund(
                id=generate_id("re_"),
                charge_id=charge.id,
                merchant_id=merchant_id,
                amount=amount,
                currency=charge.currency,
                reason=req.reason,
            )
            await uow.refunds.create(refund)
            await uow.charges.update(charge)

        logger.info(
            "charge_refunded",
            charge_id=charge.id,
            refund_id=refund.id,
            amount=amount,
            amount_refunded=charge.amount_refunded,
            status=charge.status.value,
        )
        await self._dispatcher.enqueue(merchant_id, CHARGE_REFUNDED, charge_payload(charge, refund=refund))
        return refund

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_owned_intent(uow: AbstractUnitOfWork, intent_id: str, merchant_id: str) -> PaymentIntent:
        intent = await uow.payment_intents.get_by_id(intent_id)
        if intent is None:
            raise PaymentIntentNotFoundException(intent_id)
        if intent.merchant_id != merchant_id:
            raise ForbiddenException()
        return intent

    @staticmethod
    async def _get_owned_charge(uow: AbstractUnitOfWork, charge_id: str, merchant_id: str) -> Charge:
        charge = await uow.charges.get_by_id(charge_id)
        if charge is None:
            raise ChargeNotFoundException(charge_id)
        if charge.merchant_id != merchant_id:
            raise ForbiddenException()
        return charge

    @staticmethod
    def _check_client_secret(intent: PaymentIntent, client_secret: Optional[str]) -> None:
        # 服务端调用可不带 client_secret；带了就必须匹配
        if client_secret is not None and client_secret != intent.client_secret:
            raise ForbiddenException("Client secret does not match this payment intent")

    def _build_charge(
        self,
        intent: PaymentIntent,
        status: ChargeStatus,
        *,
        fraud: Optional[FraudCheckResult] = None,
        auth: Optional[AuthorizationResult] = None,
        authorization_code: Optional[str] = None,
        failure_code: Optional[str] = None,
    ) -> Charge:
        score = fraud.score if fraud is not None else intent.fraud_score
        flags = list(fraud.flags) if fraud is not None else list(intent.fraud_flags)
        return Charge(
            id=generate_id("ch_"),
            merchant_id=intent.merchant_id,
            amount=intent.amount,
            currency=intent.currency,
            status=status,
            card_last4=intent.card_last4,
            card_brand=intent.card_brand,
            card_token=intent.card_token,
            payment_intent_id=intent.id,
            fraud_score=score,
            fraud_status=fraud_status(score, self._fraud.settings) if score is not None else None,
            fraud_flags=flags,
            authorization_status=auth.status.value if auth is not None else None,
            authorization_code=(auth.authorization_code if auth is not None else None) or authorization_code,
            failure_code=failure_code,
            failure_message=get_failure_message(failure_code) if failure_code else None,
        )

    @staticmethod
    def _outcome(
        status: str,
        intent: PaymentIntent,
        *,
        fraud: Optional[FraudCheckResult] = None,
        charge: Optional[Charge] = None,
    ) -> PaymentOutcome:
        return PaymentOutcome(
            status=status,
            payment_intent_id=intent.id,
            intent_status=intent.status.value,
            charge_id=charge.id if charge is not None else None,
            fraud_score=fraud.score if fraud is not None else intent.fraud_score,
            fraud_flags=list(fraud.flags) if fraud is not None else list(intent.fraud_flags),
            failure_code=charge.failure_code if charge is not None else None,
            failure_message=charge.failure_message if charge is not None else None,
        )
