from datetime import date, datetime, timezone

import pytest

from domain.common.exceptions import DomainValidationException, InvalidStateException
from domain.subscription.entity import (
    BillingInterval,
    Subscription,
    SubscriptionStatus,
    add_interval,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "start, interval, count, expected",
    [
        (date(2025, 12, 13), "month", 1, date(2026, 1, 13)),
        (date(2025, 1, 31), "month", 1, date(2025, 2, 28)),
        (date(2024, 1, 31), "month", 1, date(2024, 2, 29)),
        (date(2025, 3, 31), "month", 1, date(2025, 4, 30)),
        (date(2025, 11, 30), "month", 3, date(2026, 2, 28)),
        (date(2024, 2, 29), "year", 1, date(2025, 2, 28)),
        (date(2025, 12, 13), "week", 2, date(2025, 12, 27)),
        (date(2025, 12, 31), "day", 1, date(2026, 1, 1)),
    ],
)
def test_add_interval(start, interval, count, expected):
    assert add_interval(start, interval, count) == expected


def test_add_interval_keeps_time_of_day():
    assert add_interval(_utc(2025, 1, 31, 2, 30), BillingInterval.MONTH) == _utc(2025, 2, 28, 2, 30)


def test_add_interval_rejects_zero_count():
    with pytest.raises(DomainValidationException):
        add_interval(date(2025, 1, 1), "month", 0)


def _subscription(now, **kwargs):
    params = dict(
        merchant_id="m_1",
        customer_id="cus_1",
        price_id="price_1",
        unit_amount=999,
        currency="USD",
        interval="month",
        card_last4="4242",
        now=now,
    )
    params.update(kwargs)
    return Subscription.create(**params)


def test_create_without_trial_bills_after_one_period():
    now = _utc(2025, 12, 13, 2)
    sub = _subscription(now)
    assert sub.id.startswith("sub_")
    assert sub.currency == "usd"
    assert sub.current_period_start == now
    assert sub.next_billing_date == _utc(2026, 1, 13, 2)
    assert sub.status == SubscriptionStatus.ACTIVE


def test_create_with_trial_bills_at_trial_end():
    now = _utc(2025, 12, 13, 2)
    sub = _subscription(now, trial_days=14)
    assert sub.trial_end == _utc(2025, 12, 27, 2)
    assert sub.next_billing_date == sub.trial_end


def test_billing_success_advances_from_previous_billing_date():
    sub = _subscription(_utc(2025, 12, 13, 2))
    sub.failure_count = 2
    sub.record_billing_success(_utc(2026, 1, 14, 2))

    assert sub.current_period_start == _utc(2026, 1, 13, 2)
    assert sub.next_billing_date == _utc(2026, 2, 13, 2)
    assert sub.failure_count == 0
    assert sub.last_failure_at is None


def test_billing_after_long_gap_restarts_period_from_now():
    sub = _subscription(_utc(2025, 12, 13, 2))
    sub.record_billing_success(_utc(2026, 3, 20, 2))
    assert sub.current_period_start == _utc(2026, 3, 20, 2)
    assert sub.next_billing_date == _utc(2026, 4, 20, 2)


def test_third_failure_moves_to_past_due():
    sub = _subscription(_utc(2025, 12, 13, 2))
    now = _utc(2026, 1, 13, 2)
    assert [sub.record_billing_failure(now, 3) for _ in range(3)] == [False, False, True]
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert not sub.is_due(now)


def test_lifecycle_transitions():
    sub = _subscription(_utc(2025, 12, 13, 2))
    sub.pause()
    assert sub.status == SubscriptionStatus.PAUSED
    with pytest.raises(InvalidStateException):
        sub.pause()
    sub.resume()
    assert sub.status == SubscriptionStatus.ACTIVE
    with pytest.raises(InvalidStateException):
        sub.resume()

    sub.schedule_cancellation()
    assert sub.cancel_at_period_end
    sub.cancel("customer_request", now=_utc(2025, 12, 20))
    assert sub.status == SubscriptionStatus.CANCELLED
    assert sub.cancelled_at == _utc(2025, 12, 20)
    assert not sub.cancel_at_period_end
    with pytest.raises(InvalidStateException):
        sub.cancel()
    with pytest.raises(InvalidStateException):
        sub.resume()


def test_invalid_amount_and_quantity():
    with pytest.raises(DomainValidationException):
        _subscription(_utc(2025, 12, 13), unit_amount=0)
    with pytest.raises(DomainValidationException):
        _subscription(_utc(2025, 12, 13), quantity=0)
