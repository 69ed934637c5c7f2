"""
Payment engine settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so rule thresholds, retry tables and
timeouts can be tuned (``PAYMENT__FRAUD__BLOCK_THRESHOLD=60``) without
touching the code that applies them.
"""
from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class CardSettings(BaseModel):
    token_prefix: str = "tok_"
    token_length: int = 24


class FraudSettings(BaseModel):
    # velocity
    velocity_window_seconds: int = 60
    velocity_max_charges: int = 3
    velocity_score: int = 30
    # large amount (minor units)
    large_amount_threshold: int = 500_000
    large_amount_score: int = 20
    # card testing
    card_testing_window_seconds: int = 600
    card_testing_amount_below: int = 100
    card_testing_max_charges: int = 10
    card_testing_score: int = 35
    # high risk BIN prefixes
    high_risk_bins: list[str] = Field(default_factory=lambda: ["400000", "410000", "424242"])
    high_risk_bin_score: int = 15
    # first use of a card
    new_card_score: int = 5
    # repeated failures
    failed_window_seconds: int = 60
    failed_max_attempts: int = 3
    failed_attempts_score: int = 25
    # decisions: passed < flagged_threshold <= flagged < block_threshold <= high_risk
    flagged_threshold: int = 30
    block_threshold: int = 50
    step_up_threshold: int = 40
    max_score: int = 100


class AuthorizationSettings(BaseModel):
    simulated_latency_seconds: float = 0.1
    timeout_seconds: float = 5.0
    random_error_rate: float = 0.01
    step_up_reject_code: str = "000000"


class WebhookTimeouts(BaseModel):
    connect: float = 2.0
    read: float = 10.0
    write: float = 5.0
    total: float = 10.0


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    retry_delays_minutes: list[int] = Field(default_factory=lambda: [1, 2, 5, 10])
    endpoint_failure_threshold: int = 5
    timeouts: WebhookTimeouts = Field(default_factory=WebhookTimeouts)
    # Extra attempts when the TCP connection could not be opened at all
    connect_retries: int = 1
    connect_retry_backoff: float = 0.2
    retry_batch_size: int = 100
    retry_poll_seconds: int = 60
    retry_concurrency: int = 10
    # retry_due 认领事件后的租约，进程崩溃时租约到期再被重新认领
    retry_lease_seconds: int = 300
    signature_header: str = "X-Signature"
    user_agent: str = "Card-Payment-Engine/1.0"


class BillingSettings(BaseModel):
    max_failures: int = 3
    batch_size: int = 500
    run_hour_utc: int = 2
    lock_timeout_seconds: int = 300
    lock_blocking_timeout_seconds: float = 0.5


class PaymentSettings(BaseSettings):
    card: CardSettings = Field(default_factory=CardSettings)
    fraud: FraudSettings = Field(default_factory=FraudSettings)
    authorization: AuthorizationSettings = Field(default_factory=AuthorizationSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
