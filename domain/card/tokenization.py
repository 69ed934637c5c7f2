"""
卡令牌化 - 把原始卡数据换成不透明令牌与安全元数据

The raw number and CVC only live for the duration of ``tokenize``; neither is
kept on the Token nor passed to the logger.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from core.settings import CardSettings, payment_settings
from domain.card.validation import (
    detect_brand,
    validate_cvc,
    validate_expiry,
    validate_number,
    normalize_year,
)
from domain.common.clock import utc_now
from domain.common.identifiers import generate_id


@dataclass(frozen=True)
class CardFields:
    number: str
    exp_month: int
    exp_year: int
    cvc: str

    def __repr__(self) -> str:
        return f"CardFields(number='****', exp_month={self.exp_month}, exp_year={self.exp_year}, cvc='***')"


@dataclass(frozen=True)
class Token:
    """Opaque stand-in for a card. Carries only display-safe metadata."""

    id: str
    brand: str
    last4: str
    exp_month: int
    exp_year: int
    bin: str = ""
    created_at: datetime = field(default_factory=utc_now)

    @property
    def fingerprint(self) -> str:
        return self.last4


class CardTokenizer:
    def __init__(self, settings: Optional[CardSettings] = None) -> None:
        self._settings = settings or payment_settings.card

    def tokenize(self, fields: CardFields, *, today: Optional[date] = None) -> Token:
        """校验卡数据并生成令牌。

        Validation order: number (Luhn), expiry, CVC against the detected
        brand. The first failing check raises.
        """
        digits = validate_number(fields.number)
        validate_expiry(fields.exp_month, fields.exp_year, today=today)
        brand = detect_brand(digits)
        validate_cvc(fields.cvc, brand)
        return Token(
            id=generate_id(self._settings.token_prefix, self._settings.token_length),
            brand=brand,
            last4=digits[-4:],
            exp_month=fields.exp_month,
            exp_year=normalize_year(fields.exp_year),
            bin=digits[:6],
        )
