"""Webhook ``data.object`` builders for the aggregates that emit events."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from domain.payment.entity import Charge, PaymentIntent, Refund
from domain.subscription.entity import Subscription


def _object(kind: str, entity: Any, *, exclude: tuple[str, ...] = ()) -> dict:
    data = {k: v for k, v in asdict(entity).items() if k not in exclude}
    return {"object": kind, **data}


def charge_payload(charge: Charge, *, refund: Optional[Refund] = None) -> dict:
    data = _object("charge", charge)
    if refund is not None:
        data["refund"] = _object("refund", refund)
    return data


def payment_intent_payload(intent: PaymentIntent, *, charge: Optional[Charge] = None) -> dict:
    # client_secret 只能交给前端，不进入 webhook
    data = _object("payment_intent", intent, exclude=("client_secret", "authorization_code"))
    if charge is not None:
        data["charge"] = _object("charge", charge)
    return data


def subscription_payload(subscription: Subscription, **extra: Any) -> dict:
    data = _object("subscription", subscription)
    data.update(extra)
    return data
