"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import CardTokenModel, ChargeModel, PaymentIntentModel, RefundModel
from .subscription import SubscriptionModel
from .webhook import WebhookDeliveryModel, WebhookEndpointModel, WebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "CardTokenModel",
    "PaymentIntentModel",
    "ChargeModel",
    "RefundModel",
    "SubscriptionModel",
    "WebhookEndpointModel",
    "WebhookEventModel",
    "WebhookDeliveryModel",
]
