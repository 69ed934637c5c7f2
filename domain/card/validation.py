"""
卡校验 - Luhn 校验、有效期、CVC 长度与基于 BIN 的品牌识别

All functions here are pure: no IO, no shared state, safe to call from any
number of tasks at once.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from domain.common.exceptions import (
    InvalidCardNumberException,
    InvalidExpiryException,
    InvalidCvcException,
)


UNKNOWN_BRAND = "unknown"


@dataclass(frozen=True)
class CardBrand:
    name: str
    pattern: re.Pattern
    cvc_lengths: tuple[int, ...]


# 按优先级排列，首个匹配生效
CARD_BRANDS: tuple[CardBrand, ...] = (
    CardBrand("visa", re.compile(r"^4"), (3,)),
    CardBrand(
        "mastercard",
        re.compile(r"^(5[1-5]|222[1-9]|22[3-9][0-9]|2[3-6][0-9]{2}|27[01][0-9]|2720)"),
        (3,),
    ),
    CardBrand("amex", re.compile(r"^3[47]"), (4,)),
    CardBrand(
        "discover",
        re.compile(r"^(6011|622(12[6-9]|1[3-9][0-9]|[2-8][0-9]{2}|9[01][0-9]|92[0-5])|64[4-9]|65)"),
        (3,),
    ),
)

GENERIC_CVC_LENGTHS: tuple[int, ...] = (3, 4)

_NON_DIGITS = re.compile(r"\D")
_PAN_FORMAT = re.compile(r"^\d{13,19}$")


def sanitize_number(raw: str) -> str:
    return _NON_DIGITS.sub("", raw or "")


def luhn_checksum_ok(digits: str) -> bool:
    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_number(raw: str) -> str:
    """校验卡号，返回去除分隔符后的数字串。

    Raises:
        InvalidCardNumberException: ``invalid_format`` when the number is not
            13-19 digits, ``failed_checksum`` when the Luhn sum is off.
    """
    digits = sanitize_number(raw)
    if not _PAN_FORMAT.match(digits):
        raise InvalidCardNumberException(InvalidCardNumberException.INVALID_FORMAT)
    if not luhn_checksum_ok(digits):
        raise InvalidCardNumberException(InvalidCardNumberException.FAILED_CHECKSUM)
    return digits


def normalize_year(year: int) -> int:
    return 2000 + year if year < 100 else year


def validate_expiry(month: int, year: int, today: Optional[date] = None) -> None:
    """A card is usable through the last day of its expiry month."""
    if month < 1 or month > 12:
        raise InvalidExpiryException(InvalidExpiryException.INVALID_MONTH)
    today = today or date.today()
    if (normalize_year(year), month) < (today.year, today.month):
        raise InvalidExpiryException(InvalidExpiryException.EXPIRED)


def expected_cvc_lengths(brand: Optional[str]) -> tuple[int, ...]:
    if brand:
        for card_brand in CARD_BRANDS:
            if card_brand.name == brand.lower():
                return card_brand.cvc_lengths
    return GENERIC_CVC_LENGTHS


def validate_cvc(code: str, brand: Optional[str] = None) -> None:
    code = code or ""
    lengths = expected_cvc_lengths(brand)
    if not code.isdigit() or len(code) not in lengths:
        known = brand if brand and lengths != GENERIC_CVC_LENGTHS else None
        raise InvalidCvcException(lengths, brand=known)


def detect_brand(number: str) -> str:
    digits = sanitize_number(number)
    for card_brand in CARD_BRANDS:
        if card_brand.pattern.match(digits):
            return card_brand.name
    return UNKNOWN_BRAND
