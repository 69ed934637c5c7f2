import pytest

from application.dtos.payments import (
    CardDetails,
    ConfirmPaymentIntent,
    CreatePaymentIntent,
    RefundRequest,
    VerifyStepUp,
)
from application.dtos.webhooks import RegisterWebhookEndpoint
from application.services.payment_service import PaymentService
from application.services.webhook_endpoint_service import WebhookEndpointService
from core.settings import FraudSettings
from domain.card.tokenization import CardTokenizer
from domain.common.exceptions import (
    ChargeNotRefundableException,
    ForbiddenException,
    InvalidStateException,
    InvalidTokenException,
    RefundExceedsChargeException,
)
from domain.fraud.engine import FraudEngine
from domain.payment.entity import ChargeStatus, PaymentIntentStatus, StepUpStatus
from domain.webhook.entity import WebhookEventStatus
from domain.webhook.signing import verify_signature


MERCHANT = "m_acme"


async def _tokenize(service, number="4242424242424242", cvc="123"):
    return await service.tokenize_card(CardDetails(number=number, exp_month=12, exp_year=2099, cvc=cvc))


async def _confirm(service, number="4242424242424242", amount=2000, **kwargs):
    intent = await service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=amount, currency="USD"))
    token = await _tokenize(service, number, cvc="1234" if number.startswith("3") else "123")
    outcome = await service.confirm_payment_intent(
        intent.id, MERCHANT, ConfirmPaymentIntent(card_token=token.id, **kwargs)
    )
    return intent, outcome


@pytest.mark.asyncio
async def test_create_intent_normalizes_currency_and_issues_secret(payment_service):
    intent = await payment_service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=1500, currency="eur"))
    assert intent.id.startswith("pi_")
    assert intent.currency == "eur"
    assert intent.status == PaymentIntentStatus.REQUIRES_PAYMENT_METHOD
    assert intent.client_secret.startswith(f"{intent.id}_secret_")


@pytest.mark.asyncio
async def test_successful_payment_creates_charge_and_event(payment_service, db):
    intent, outcome = await _confirm(payment_service)

    assert outcome.status == "succeeded"
    assert outcome.intent_status == "succeeded"
    charge = await payment_service.get_charge(outcome.charge_id, MERCHANT)
    assert charge.status == ChargeStatus.SUCCEEDED
    assert charge.amount == 2000
    assert charge.card_last4 == "4242"
    assert charge.authorization_code.startswith("auth_")
    # 424242 is a high-risk BIN by default: 15 + new card 5
    assert charge.fraud_score == 20
    assert charge.fraud_status == "passed"

    events = list(db.tables["webhook_events"].values())
    assert [e.type for e in events] == ["payment.succeeded"]
    # 没有订阅者：首次投递即视为完成
    assert events[0].status == WebhookEventStatus.SENT
    assert "client_secret" not in events[0].data


@pytest.mark.asyncio
async def test_declined_card_records_failed_charge(payment_service, db):
    intent, outcome = await _confirm(payment_service, number="4000000000000002")

    assert outcome.status == "failed"
    assert outcome.failure_code == "card_declined"
    assert outcome.failure_message
    stored = await payment_service.get_payment_intent(intent.id, MERCHANT)
    assert stored.status == PaymentIntentStatus.CANCELED
    assert stored.cancellation_reason == "card_declined"
    charge = db.tables["charges"][outcome.charge_id]
    assert charge.status == ChargeStatus.FAILED
    assert [e.type for e in db.tables["webhook_events"].values()] == ["payment.failed"]


@pytest.mark.asyncio
async def test_processing_error_is_a_failed_payment(payment_service):
    _, outcome = await _confirm(payment_service, number="4000000000000119")
    assert outcome.status == "failed"
    assert outcome.failure_code == "processing_error"


@pytest.mark.asyncio
async def test_token_is_single_use(payment_service):
    token = await _tokenize(payment_service)
    first = await payment_service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=100))
    second = await payment_service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=100))

    await payment_service.confirm_payment_intent(first.id, MERCHANT, ConfirmPaymentIntent(card_token=token.id))
    with pytest.raises(InvalidTokenException):
        await payment_service.confirm_payment_intent(second.id, MERCHANT, ConfirmPaymentIntent(card_token=token.id))


@pytest.mark.asyncio
async def test_unknown_token_is_rejected(payment_service):
    intent = await payment_service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=100))
    with pytest.raises(InvalidTokenException):
        await payment_service.confirm_payment_intent(intent.id, MERCHANT, ConfirmPaymentIntent(card_token="tok_missing"))


@pytest.mark.asyncio
async def test_confirming_twice_is_an_invalid_state(payment_service):
    intent, _ = await _confirm(payment_service)
    token = await _tokenize(payment_service)
    with pytest.raises(InvalidStateException):
        await payment_service.confirm_payment_intent(intent.id, MERCHANT, ConfirmPaymentIntent(card_token=token.id))


@pytest.mark.asyncio
async def test_other_merchant_and_wrong_secret_are_forbidden(payment_service):
    intent = await payment_service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=100))
    token = await _tokenize(payment_service)
    with pytest.raises(ForbiddenException):
        await payment_service.get_payment_intent(intent.id, "m_other")
    with pytest.raises(ForbiddenException):
        await payment_service.confirm_payment_intent(
            intent.id, MERCHANT, ConfirmPaymentIntent(card_token=token.id, client_secret="wrong")
        )


@pytest.mark.asyncio
async def test_matching_client_secret_is_accepted(payment_service):
    intent = await payment_service.create_payment_intent(MERCHANT, CreatePaymentIntent(amount=100))
    token = await _tokenize(payment_service)
    outcome = await payment_service.confirm_payment_intent(
        intent.id, MERCHANT, ConfirmPaymentIntent(card_token=token.id, client_secret=intent.client_secret)
    )
    assert outcome.status == "succeeded"


@pytest.mark.asyncio
async def test_fraud_block_cancels_intent_without_charge(payment_service, db):
    # 三笔成功扣款后第四笔触发 velocity(30) + large_amount(20) + 高风险 BIN(15)
    for _ in range(3):
        await _confirm(payment_service, amount=1000)
    intent, outcome = await _confirm(payment_service, amount=600_000)

    assert outcome.status == "blocked"
    assert outcome.charge_id is None
    assert "velocity_limit_exceeded" in outcome.fraud_flags
    assert outcome.fraud_score >= 50
    stored = await payment_service.get_payment_intent(intent.id, MERCHANT)
    assert stored.status == PaymentIntentStatus.CANCELED
    assert stored.cancellation_reason == "fraud_blocked"
    assert len(db.tables["charges"]) == 3


@pytest.mark.asyncio
async def test_step_up_success(payment_service, db):
    intent, outcome = await _confirm(payment_service, number="4000002500003155")
    assert outcome.status == "requires_action"
    assert outcome.charge_id is None
    assert not db.tables["webhook_events"]

    result = await payment_service.verify_step_up(intent.id, MERCHANT, VerifyStepUp(code="123456"))
    assert result.status == "succeeded"
    stored = await payment_service.get_payment_intent(intent.id, MERCHANT)
    assert stored.status == PaymentIntentStatus.SUCCEEDED
    assert stored.step_up_status == StepUpStatus.AUTHENTICATED
    charge = await payment_service.get_charge(result.charge_id, MERCHANT)
    assert charge.status == ChargeStatus.SUCCEEDED
    assert charge.authorization_code == stored.authorization_code
    assert [e.type for e in db.tables["webhook_events"].values()] == ["payment.succeeded"]


@pytest.mark.asyncio
async def test_step_up_rejection_fails_payment(payment_service, db):
    intent, _ = await _confirm(payment_service, number="4000002500003155")
    result = await payment_service.verify_step_up(intent.id, MERCHANT, VerifyStepUp(code="000000"))

    assert result.status == "failed"
    assert result.failure_code == "authentication_failed"
    stored = await payment_service.get_payment_intent(intent.id, MERCHANT)
    assert stored.status == PaymentIntentStatus.CANCELED
    assert stored.step_up_status == StepUpStatus.FAILED
    assert [e.type for e in db.tables["webhook_events"].values()] == ["payment.failed"]


@pytest.mark.asyncio
async def test_step_up_requires_pending_action(payment_service):
    intent, _ = await _confirm(payment_service)
    with pytest.raises(InvalidStateException):
        await payment_service.verify_step_up(intent.id, MERCHANT, VerifyStepUp(code="123456"))


@pytest.mark.asyncio
async def test_partial_then_full_refund(payment_service, db):
    _, outcome = await _confirm(payment_service, amount=5000)

    first = await payment_service.refund_charge(outcome.charge_id, MERCHANT, RefundRequest(amount=2000))
    assert first.id.startswith("re_")
    assert first.amount == 2000
    charge = await payment_service.get_charge(outcome.charge_id, MERCHANT)
    assert charge.amount_refunded == 2000
    assert charge.status == ChargeStatus.SUCCEEDED

    with pytest.raises(RefundExceedsChargeException):
        await payment_service.refund_charge(outcome.charge_id, MERCHANT, RefundRequest(amount=3001))

    rest = await payment_service.refund_charge(outcome.charge_id, MERCHANT, RefundRequest(reason="duplicate"))
    assert rest.amount == 3000
    charge = await payment_service.get_charge(outcome.charge_id, MERCHANT)
    assert charge.status == ChargeStatus.REFUNDED
    assert charge.amount_refunded == 5000

    with pytest.raises(ChargeNotRefundableException):
        await payment_service.refund_charge(outcome.charge_id, MERCHANT, RefundRequest(amount=1))

    types = [e.type for e in db.tables["webhook_events"].values()]
    assert types.count("charge.refunded") == 2


@pytest.mark.asyncio
async def test_failed_charge_cannot_be_refunded(payment_service):
    _, outcome = await _confirm(payment_service, number="4000000000000341")
    with pytest.raises(ChargeNotRefundableException):
        await payment_service.refund_charge(outcome.charge_id, MERCHANT, RefundRequest())


@pytest.mark.asyncio
async def test_payment_webhook_is_signed_for_subscribed_endpoint(payment_service, uow_factory, transport):
    endpoints = WebhookEndpointService(uow_factory)
    endpoint = await endpoints.register_endpoint(
        MERCHANT,
        RegisterWebhookEndpoint(url="https://merchant.example/hooks", events=["payment.succeeded"]),
    )

    await _confirm(payment_service)

    [request] = transport.requests_to("https://merchant.example/hooks")
    header = request["headers"]["X-Signature"]
    assert verify_signature(request["body"], header, endpoint.secret)
    assert request["headers"]["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_charge_fraud_status_uses_configured_bands(uow_factory, dispatcher, payment_config, authorizer):
    service = PaymentService(
        uow_factory,
        dispatcher,
        tokenizer=CardTokenizer(payment_config.card),
        fraud_engine=FraudEngine(FraudSettings(flagged_threshold=20)),
        authorizer=authorizer,
    )
    _, outcome = await _confirm(service)

    charge = await service.get_charge(outcome.charge_id, MERCHANT)
    # high-risk BIN 15 + new card 5 = 20 reaches the lowered flagged threshold
    assert charge.fraud_score == 20
    assert charge.fraud_status == "flagged"
