"""
授权模拟器 - 模拟发卡行授权与 3DS 验证

Outcomes for the well-known test cards are table data keyed by the last four
digits. Anything outside the table is approved, subject to a small injected
error rate.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Mapping, Optional

from core.settings import AuthorizationSettings, payment_settings
from domain.common.exceptions import StepUpVerificationException
from domain.common.identifiers import generate_id


class AuthorizationStatus(str, Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    ERROR = "error"


@dataclass(frozen=True)
class CardOutcome:
    status: AuthorizationStatus
    reason: Optional[str] = None
    requires_step_up: bool = False


def _declined(reason: str) -> CardOutcome:
    return CardOutcome(AuthorizationStatus.DECLINED, reason)


_APPROVED = CardOutcome(AuthorizationStatus.APPROVED)

TEST_CARD_OUTCOMES: Mapping[str, CardOutcome] = {
    "4242": _APPROVED,  # 4242 4242 4242 4242 visa
    "1881": _APPROVED,  # 4012 8888 8888 1881 visa
    "0005": _APPROVED,  # 3782 822463 10005 amex
    "0002": _declined("card_declined"),
    "0004": _declined("lost_card"),
    "0009": _declined("stolen_card"),
    "0119": CardOutcome(AuthorizationStatus.ERROR, "processing_error"),
    "8431": _declined("card_declined"),  # amex
    "0069": _declined("expired_card"),
    "0341": _declined("insufficient_funds"),
    "3155": CardOutcome(AuthorizationStatus.APPROVED, requires_step_up=True),
}


@dataclass(frozen=True)
class AuthorizationResult:
    status: AuthorizationStatus
    reason: Optional[str] = None
    authorization_code: Optional[str] = None
    requires_step_up: bool = False

    @property
    def approved(self) -> bool:
        return self.status == AuthorizationStatus.APPROVED


@dataclass(frozen=True)
class StepUpResult:
    authenticated: bool
    transaction_id: Optional[str] = None
    reason: Optional[str] = None


def fingerprint_of(number_or_last4: str) -> str:
    """卡指纹 = 卡号后四位；完整卡号会被截断为后四位。"""
    digits = "".join(ch for ch in number_or_last4 if ch.isdigit())
    return digits[-4:]


class AuthorizationSimulator:
    def __init__(
        self,
        settings: Optional[AuthorizationSettings] = None,
        *,
        outcomes: Mapping[str, CardOutcome] = TEST_CARD_OUTCOMES,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or payment_settings.authorization
        self._outcomes = outcomes
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def authorize(self, card_fingerprint: str, amount: int, merchant_id: str) -> AuthorizationResult:
        """向模拟发卡网络请求授权。

        网络往返在 ``timeout_seconds`` 内未返回时视为 ``network_timeout`` 错误，
        而不是抛出异常。
        """
        if not await self._network_roundtrip():
            return AuthorizationResult(AuthorizationStatus.ERROR, reason="network_timeout")

        outcome = self._outcomes.get(fingerprint_of(card_fingerprint))
        if outcome is not None and outcome.status != AuthorizationStatus.APPROVED:
            return AuthorizationResult(outcome.status, reason=outcome.reason)
        if outcome is not None and outcome.requires_step_up:
            return AuthorizationResult(
                AuthorizationStatus.APPROVED,
                authorization_code=self._auth_code(),
                requires_step_up=True,
            )
        if self._rng.random() < self._settings.random_error_rate:
            return AuthorizationResult(AuthorizationStatus.ERROR, reason="processing_error")
        return AuthorizationResult(AuthorizationStatus.APPROVED, authorization_code=self._auth_code())

    async def authorize_recurring(self, card_fingerprint: Optional[str], amount: int, merchant_id: str) -> AuthorizationResult:
        """订阅续费授权：跳过风控与 3DS，始终批准。"""
        return AuthorizationResult(AuthorizationStatus.APPROVED, authorization_code=self._auth_code())

    def verify_step_up(self, code: str) -> StepUpResult:
        code = (code or "").strip()
        if len(code) != 6 or not code.isdigit():
            raise StepUpVerificationException()
        if code == self._settings.step_up_reject_code:
            return StepUpResult(authenticated=False, reason="authentication_failed")
        return StepUpResult(authenticated=True, transaction_id=generate_id("3ds_"))

    async def _network_roundtrip(self) -> bool:
        latency = self._settings.simulated_latency_seconds
        if latency <= 0:
            return True
        try:
            await asyncio.wait_for(self._sleep(latency), timeout=self._settings.timeout_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    def _auth_code() -> str:
        return generate_id("auth_", 16)
