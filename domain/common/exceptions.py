"""领域层业务异常定义，供领域、应用与基础设施使用。

领域层不依赖任何框架；调用方（任务、HTTP 适配器）负责把异常映射为响应。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class NotFoundException(BusinessException):
    def __init__(self, resource: str, identifier: str, *, code: int = BusinessCode.NOT_FOUND):
        super().__init__(
            code=code,
            message=f"{resource} not found: {identifier}",
            error_type=f"{resource}NotFound",
            details={"id": identifier},
        )


class ForbiddenException(BusinessException):
    def __init__(self, message: str = "Resource does not belong to this merchant"):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message=message,
            error_type="Forbidden",
        )


class InvalidStateException(BusinessException):
    def __init__(self, message: str, *, code: int = BusinessCode.INVALID_STATE, details: Optional[dict] = None):
        super().__init__(
            code=code,
            message=message,
            error_type="InvalidState",
            details=details,
            field="status",
        )


# ---------------------------------------------------------------------------
# 卡校验
# ---------------------------------------------------------------------------

class InvalidCardNumberException(BusinessException):
    """卡号格式错误或未通过 Luhn 校验"""

    INVALID_FORMAT = "invalid_format"
    FAILED_CHECKSUM = "failed_checksum"

    def __init__(self, reason: str):
        message = (
            "Card number must be 13-19 digits"
            if reason == self.INVALID_FORMAT
            else "Invalid card number (failed Luhn check)"
        )
        super().__init__(
            code=PaymentCode.CARD_INVALID_NUMBER,
            message=message,
            error_type="InvalidCardNumber",
            details={"reason": reason},
            field="number",
        )
        self.reason = reason


class InvalidExpiryException(BusinessException):
    """有效期月份非法或卡已过期"""

    INVALID_MONTH = "invalid_month"
    EXPIRED = "expired"

    def __init__(self, reason: str):
        message = (
            "Invalid expiry month (must be 1-12)"
            if reason == self.INVALID_MONTH
            else "Card has expired"
        )
        super().__init__(
            code=PaymentCode.CARD_INVALID_EXPIRY,
            message=message,
            error_type="InvalidExpiry",
            details={"reason": reason},
            field="exp_month" if reason == self.INVALID_MONTH else "exp_year",
        )
        self.reason = reason


class InvalidCvcException(BusinessException):
    def __init__(self, expected_lengths: tuple[int, ...], brand: Optional[str] = None):
        lengths = " or ".join(str(n) for n in expected_lengths)
        label = f"CVC for {brand}" if brand else "CVC"
        super().__init__(
            code=PaymentCode.CARD_INVALID_CVC,
            message=f"{label} must be {lengths} digits",
            error_type="InvalidCvc",
            details={"reason": "invalid_length", "expected": list(expected_lengths)},
            field="cvc",
        )
        self.reason = "invalid_length"


class InvalidTokenException(BusinessException):
    def __init__(self, token: str):
        super().__init__(
            code=PaymentCode.CARD_TOKEN_INVALID,
            message="Card token is unknown or has already been used",
            error_type="InvalidToken",
            details={"token": token},
            field="card_token",
        )


# ---------------------------------------------------------------------------
# 支付流程
# ---------------------------------------------------------------------------

class PaymentIntentNotFoundException(NotFoundException):
    def __init__(self, intent_id: str):
        super().__init__("PaymentIntent", intent_id, code=PaymentCode.PAYMENT_INTENT_NOT_FOUND)


class ChargeNotFoundException(NotFoundException):
    def __init__(self, charge_id: str):
        super().__init__("Charge", charge_id, code=PaymentCode.CHARGE_NOT_FOUND)


class ChargeNotRefundableException(BusinessException):
    def __init__(self, status: str):
        super().__init__(
            code=PaymentCode.CHARGE_NOT_REFUNDABLE,
            message=f"Only succeeded charges can be refunded (status={status})",
            error_type="ChargeNotRefundable",
            details={"status": status},
        )


class RefundExceedsChargeException(BusinessException):
    def __init__(self, requested: int, available: int):
        super().__init__(
            code=PaymentCode.REFUND_EXCEEDS_CHARGE,
            message=f"Refund amount {requested} exceeds available balance {available}",
            error_type="RefundExceedsCharge",
            details={"requested": requested, "available": available},
            field="amount",
        )


class StepUpVerificationException(BusinessException):
    def __init__(self, message: str = "One-time code must be 6 digits"):
        super().__init__(
            code=PaymentCode.STEP_UP_INVALID_CODE,
            message=message,
            error_type="StepUpVerificationError",
            field="code",
        )


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

class WebhookEndpointNotFoundException(NotFoundException):
    def __init__(self, endpoint_id: str):
        super().__init__("WebhookEndpoint", endpoint_id, code=PaymentCode.WEBHOOK_ENDPOINT_NOT_FOUND)


class WebhookSignatureException(BusinessException):
    def __init__(self, message: str):
        super().__init__(
            code=PaymentCode.WEBHOOK_SIGNATURE_ERROR,
            message=message,
            error_type="WebhookSignatureError",
        )


# ---------------------------------------------------------------------------
# 订阅
# ---------------------------------------------------------------------------

class SubscriptionNotFoundException(NotFoundException):
    def __init__(self, subscription_id: str):
        super().__init__("Subscription", subscription_id, code=PaymentCode.SUBSCRIPTION_NOT_FOUND)


class SubscriptionAlreadyExistsException(BusinessException):
    def __init__(self, customer_id: str, price_id: str):
        super().__init__(
            code=PaymentCode.SUBSCRIPTION_ALREADY_EXISTS,
            message="Customer already has a live subscription to this price",
            error_type="SubscriptionAlreadyExists",
            details={"customer_id": customer_id, "price_id": price_id},
        )


class BillingException(BusinessException):
    def __init__(self, message: str, *, subscription_id: str, reason: str):
        super().__init__(
            code=PaymentCode.BILLING_FAILED,
            message=message,
            error_type="BillingFailed",
            details={"subscription_id": subscription_id, "reason": reason},
        )
        self.reason = reason
