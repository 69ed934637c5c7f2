"""Webhook 重试退避表"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional, Sequence


def next_retry_delay(attempt: int, delays_minutes: Sequence[int]) -> Optional[timedelta]:
    """第 ``attempt`` 次投递失败后的等待时间；重试次数用尽时返回 None。

    With the default table ``[1, 2, 5, 10]`` an event gets five attempts in
    total: failures on attempts 1-4 reschedule, a failure on attempt 5 is final.
    """
    if not delays_minutes or attempt > len(delays_minutes):
        return None
    index = min(max(attempt, 1) - 1, len(delays_minutes) - 1)
    return timedelta(minutes=delays_minutes[index])
