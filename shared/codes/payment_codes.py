"""
Payment specific codes and decline-reason messages.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Card validation errors (61xxx)
    CARD_INVALID_NUMBER = 61000
    CARD_INVALID_EXPIRY = 61001
    CARD_INVALID_CVC = 61002
    CARD_TOKEN_INVALID = 61003

    # Payment flow errors (62xxx)
    PAYMENT_INTENT_NOT_FOUND = 62000
    PAYMENT_INTENT_STATE = 62001
    CHARGE_NOT_FOUND = 62002
    CHARGE_NOT_REFUNDABLE = 62003
    REFUND_EXCEEDS_CHARGE = 62004
    STEP_UP_INVALID_CODE = 62005

    # Webhook errors (63xxx)
    WEBHOOK_ENDPOINT_NOT_FOUND = 63000
    WEBHOOK_SIGNATURE_ERROR = 63001

    # Subscription errors (64xxx)
    SUBSCRIPTION_NOT_FOUND = 64000
    SUBSCRIPTION_STATE = 64001
    SUBSCRIPTION_ALREADY_EXISTS = 64002
    BILLING_FAILED = 64003


DEFAULT_FAILURE_MESSAGE = "Your payment could not be processed. Please try again."

# Decline/failure reason → customer facing message
FAILURE_MESSAGES = {
    "card_declined": "Your card was declined. Please try a different payment method.",
    "lost_card": "Your card has been reported as lost. Please contact your bank.",
    "stolen_card": "Your card has been reported as stolen. Please contact your bank.",
    "processing_error": "An error occurred while processing your card. Please try again.",
    "network_timeout": "The card network did not respond in time. Please try again.",
    "expired_card": "Your card has expired. Please use a different card.",
    "insufficient_funds": "Your card has insufficient funds. Please use a different card.",
    "authentication_failed": "We could not verify your card. Please try again.",
    "invalid_cvc": "The CVC code you entered is invalid.",
    "invalid_expiry": "The expiry date you entered is invalid.",
    "invalid_number": "The card number you entered is invalid.",
}


def get_failure_message(reason: str | None) -> str:
    return FAILURE_MESSAGES.get(reason or "", DEFAULT_FAILURE_MESSAGE)
