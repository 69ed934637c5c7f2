"""
欺诈评分引擎

Scoring is split in two steps:

1. ``collect_history`` asks the charge history provider (the Store) for the
   handful of time-windowed counts the rules need.
2. ``evaluate`` is a pure function of that snapshot plus the attempt itself.

Every rule reads only the snapshot and the attempt, never another rule's
result, so contributions are simply summed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from core.settings import FraudSettings, payment_settings
from domain.common.clock import Clock, utc_now


class ChargeHistoryProvider(Protocol):
    async def count_charges(
        self,
        *,
        merchant_id: str,
        card_last4: str,
        since: Optional[datetime] = None,
        amount_below: Optional[int] = None,
        status: Optional[str] = None,
    ) -> int: ...


@dataclass(frozen=True)
class ChargeHistory:
    recent_charges: int = 0
    recent_small_charges: int = 0
    prior_successful_charges: int = 0
    recent_failed_charges: int = 0


@dataclass(frozen=True)
class FraudAttempt:
    merchant_id: str
    card_fingerprint: str
    amount: int
    card_bin: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class FraudCheckResult:
    score: int
    flags: tuple[str, ...]
    passed: bool
    requires_step_up: bool
    status: str = "passed"


@dataclass(frozen=True)
class FraudRule:
    flag: str
    score_setting: str
    matches: Callable[[ChargeHistory, FraudAttempt, FraudSettings], bool]


def _is_high_risk_bin(attempt: FraudAttempt, cfg: FraudSettings) -> bool:
    candidate = attempt.card_bin or attempt.card_fingerprint
    return any(candidate.startswith(prefix) for prefix in cfg.high_risk_bins if prefix)


FRAUD_RULES: tuple[FraudRule, ...] = (
    FraudRule(
        "velocity_limit_exceeded",
        "velocity_score",
        lambda h, a, cfg: h.recent_charges >= cfg.velocity_max_charges,
    ),
    FraudRule(
        "large_amount",
        "large_amount_score",
        lambda h, a, cfg: a.amount > cfg.large_amount_threshold,
    ),
    FraudRule(
        "card_testing_pattern",
        "card_testing_score",
        lambda h, a, cfg: h.recent_small_charges >= cfg.card_testing_max_charges,
    ),
    FraudRule(
        "high_risk_bin",
        "high_risk_bin_score",
        lambda h, a, cfg: _is_high_risk_bin(a, cfg),
    ),
    FraudRule(
        "new_card",
        "new_card_score",
        lambda h, a, cfg: h.prior_successful_charges == 0,
    ),
    FraudRule(
        "multiple_failed_attempts",
        "failed_attempts_score",
        lambda h, a, cfg: h.recent_failed_charges >= cfg.failed_max_attempts,
    ),
)


def fraud_status(score: int, settings: Optional[FraudSettings] = None) -> str:
    cfg = settings or payment_settings.fraud
    if score < cfg.flagged_threshold:
        return "passed"
    if score < cfg.block_threshold:
        return "flagged"
    return "high_risk"


class FraudEngine:
    def __init__(
        self,
        settings: Optional[FraudSettings] = None,
        *,
        rules: tuple[FraudRule, ...] = FRAUD_RULES,
        now: Clock = utc_now,
    ) -> None:
        self._settings = settings or payment_settings.fraud
        self._rules = rules
        self._now = now

    @property
    def settings(self) -> FraudSettings:
        return self._settings

    async def check(
        self,
        merchant_id: str,
        card_fingerprint: str,
        amount: int,
        history: ChargeHistoryProvider,
        *,
        card_bin: Optional[str] = None,
        email: Optional[str] = None,
    ) -> FraudCheckResult:
        attempt = FraudAttempt(
            merchant_id=merchant_id,
            card_fingerprint=card_fingerprint,
            amount=amount,
            card_bin=card_bin,
            email=email,
        )
        snapshot = await self.collect_history(attempt, history)
        return self.evaluate(snapshot, attempt)

    async def collect_history(self, attempt: FraudAttempt, history: ChargeHistoryProvider) -> ChargeHistory:
        cfg = self._settings
        now = self._now()
        scope = {"merchant_id": attempt.merchant_id, "card_last4": attempt.card_fingerprint}
        return ChargeHistory(
            recent_charges=await history.count_charges(
                **scope, since=now - timedelta(seconds=cfg.velocity_window_seconds)
            ),
            recent_small_charges=await history.count_charges(
                **scope,
                since=now - timedelta(seconds=cfg.card_testing_window_seconds),
                amount_below=cfg.card_testing_amount_below,
            ),
            prior_successful_charges=await history.count_charges(**scope, status="succeeded"),
            recent_failed_charges=await history.count_charges(
                **scope,
                since=now - timedelta(seconds=cfg.failed_window_seconds),
                status="failed",
            ),
        )

    def evaluate(self, history: ChargeHistory, attempt: FraudAttempt) -> FraudCheckResult:
        cfg = self._settings
        score = 0
        flags: list[str] = []
        for rule in self._rules:
            if rule.matches(history, attempt, cfg):
                flags.append(rule.flag)
                score += int(getattr(cfg, rule.score_setting))
        score = min(score, cfg.max_score)
        return FraudCheckResult(
            score=score,
            flags=tuple(flags),
            passed=score < cfg.block_threshold,
            requires_step_up=score >= cfg.step_up_threshold,
            status=fraud_status(score, cfg),
        )
