import asyncio
import random

import pytest

from core.settings import AuthorizationSettings
from domain.authorization.simulator import (
    AuthorizationSimulator,
    AuthorizationStatus,
    fingerprint_of,
)
from domain.common.exceptions import StepUpVerificationException


def _simulator(**overrides) -> AuthorizationSimulator:
    params = {"simulated_latency_seconds": 0, "random_error_rate": 0}
    params.update(overrides)
    return AuthorizationSimulator(AuthorizationSettings(**params))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "number, status, reason",
    [
        ("4000000000000002", AuthorizationStatus.DECLINED, "card_declined"),
        ("4000000000000004", AuthorizationStatus.DECLINED, "lost_card"),
        ("4000000000000009", AuthorizationStatus.DECLINED, "stolen_card"),
        ("4000000000000119", AuthorizationStatus.ERROR, "processing_error"),
        ("4000000000000069", AuthorizationStatus.DECLINED, "expired_card"),
        ("4000000000000341", AuthorizationStatus.DECLINED, "insufficient_funds"),
        ("378734493671000", AuthorizationStatus.APPROVED, None),
    ],
)
async def test_test_card_outcomes(number, status, reason):
    result = await _simulator().authorize(fingerprint_of(number), 1000, "m_1")
    assert result.status == status
    assert result.reason == reason


@pytest.mark.asyncio
async def test_approval_carries_authorization_code():
    result = await _simulator().authorize("4242", 1000, "m_1")
    assert result.approved
    assert result.authorization_code.startswith("auth_")
    assert not result.requires_step_up


@pytest.mark.asyncio
async def test_step_up_card_is_approved_pending_verification():
    result = await _simulator().authorize("3155", 1000, "m_1")
    assert result.approved
    assert result.requires_step_up
    assert result.authorization_code


@pytest.mark.asyncio
async def test_random_errors_use_injected_rng():
    simulator = AuthorizationSimulator(
        AuthorizationSettings(simulated_latency_seconds=0, random_error_rate=1.0),
        rng=random.Random(7),
    )
    result = await simulator.authorize("4242", 1000, "m_1")
    assert result.status == AuthorizationStatus.ERROR
    assert result.reason == "processing_error"

    # 拒付卡不受随机错误影响
    declined = await simulator.authorize("0002", 1000, "m_1")
    assert declined.status == AuthorizationStatus.DECLINED


@pytest.mark.asyncio
async def test_latency_beyond_timeout_is_a_network_error():
    async def slow_sleep(seconds):
        await asyncio.sleep(1)

    simulator = AuthorizationSimulator(
        AuthorizationSettings(simulated_latency_seconds=10, timeout_seconds=0.01, random_error_rate=0),
        sleep=slow_sleep,
    )
    result = await simulator.authorize("4242", 1000, "m_1")
    assert result.status == AuthorizationStatus.ERROR
    assert result.reason == "network_timeout"


@pytest.mark.asyncio
async def test_latency_is_awaited():
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    simulator = AuthorizationSimulator(
        AuthorizationSettings(simulated_latency_seconds=0.1, random_error_rate=0),
        sleep=fake_sleep,
    )
    assert (await simulator.authorize("4242", 1000, "m_1")).approved
    assert slept == [0.1]


@pytest.mark.asyncio
async def test_recurring_authorization_is_always_approved():
    result = await _simulator().authorize_recurring("0002", 1000, "m_1")
    assert result.approved


def test_verify_step_up():
    simulator = _simulator()
    ok = simulator.verify_step_up("123456")
    assert ok.authenticated and ok.transaction_id.startswith("3ds_")

    rejected = simulator.verify_step_up("000000")
    assert not rejected.authenticated
    assert rejected.reason == "authentication_failed"

    with pytest.raises(StepUpVerificationException):
        simulator.verify_step_up("12345")
    with pytest.raises(StepUpVerificationException):
        simulator.verify_step_up("abcdef")


def test_fingerprint_is_last_four_digits():
    assert fingerprint_of("4242 4242 4242 4242") == "4242"
    assert fingerprint_of("3155") == "3155"
