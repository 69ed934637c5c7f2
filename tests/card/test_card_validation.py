from datetime import date

import pytest

from domain.card.tokenization import CardFields, CardTokenizer
from domain.card.validation import (
    detect_brand,
    luhn_checksum_ok,
    validate_cvc,
    validate_expiry,
    validate_number,
)
from domain.common.exceptions import (
    InvalidCardNumberException,
    InvalidCvcException,
    InvalidExpiryException,
)


TODAY = date(2025, 12, 13)


@pytest.mark.parametrize(
    "number",
    ["4242424242424242", "4242 4242 4242 4242", "4242-4242-4242-4242", "378282246310005", "5555555555554444"],
)
def test_valid_numbers_pass_luhn(number):
    assert validate_number(number).isdigit()


def test_checksum_failure_is_reported_separately_from_format():
    with pytest.raises(InvalidCardNumberException) as exc:
        validate_number("4242424242424241")
    assert exc.value.reason == "failed_checksum"

    with pytest.raises(InvalidCardNumberException) as exc:
        validate_number("424242")
    assert exc.value.reason == "invalid_format"

    with pytest.raises(InvalidCardNumberException) as exc:
        validate_number("42424242424242424242")  # 20 digits
    assert exc.value.reason == "invalid_format"


def test_luhn_checksum():
    assert luhn_checksum_ok("79927398713")
    assert not luhn_checksum_ok("79927398710")


@pytest.mark.parametrize(
    "number, brand",
    [
        ("4242424242424242", "visa"),
        ("5555555555554444", "mastercard"),
        ("2223003122003222", "mastercard"),
        ("378282246310005", "amex"),
        ("6011111111111117", "discover"),
        ("6500000000000002", "discover"),
        ("3056930009020004", "unknown"),
    ],
)
def test_detect_brand(number, brand):
    assert detect_brand(number) == brand


def test_expiry_month_is_inclusive():
    validate_expiry(12, 2025, today=TODAY)
    validate_expiry(12, 25, today=TODAY)  # two-digit year


def test_expired_and_invalid_month():
    with pytest.raises(InvalidExpiryException) as exc:
        validate_expiry(11, 2025, today=TODAY)
    assert exc.value.reason == "expired"

    with pytest.raises(InvalidExpiryException) as exc:
        validate_expiry(13, 2030, today=TODAY)
    assert exc.value.reason == "invalid_month"

    with pytest.raises(InvalidExpiryException):
        validate_expiry(0, 2030, today=TODAY)


def test_cvc_length_follows_brand():
    validate_cvc("123", "visa")
    validate_cvc("1234", "amex")
    validate_cvc("1234", None)
    validate_cvc("123", "unknown")

    with pytest.raises(InvalidCvcException):
        validate_cvc("1234", "visa")
    with pytest.raises(InvalidCvcException):
        validate_cvc("123", "amex")
    with pytest.raises(InvalidCvcException):
        validate_cvc("12a", "visa")


def test_tokenize_keeps_only_safe_metadata():
    token = CardTokenizer().tokenize(
        CardFields(number="4242 4242 4242 4242", exp_month=12, exp_year=30, cvc="123"),
        today=TODAY,
    )
    assert token.id.startswith("tok_")
    assert token.brand == "visa"
    assert token.last4 == "4242"
    assert token.bin == "424242"
    assert token.exp_year == 2030
    assert token.fingerprint == "4242"
    assert "4242424242424242" not in repr(token)


def test_tokens_are_unique_per_call():
    fields = CardFields(number="4242424242424242", exp_month=12, exp_year=2030, cvc="123")
    tokenizer = CardTokenizer()
    assert tokenizer.tokenize(fields, today=TODAY).id != tokenizer.tokenize(fields, today=TODAY).id


def test_tokenize_validates_number_before_expiry():
    fields = CardFields(number="4242424242424241", exp_month=1, exp_year=2020, cvc="1")
    with pytest.raises(InvalidCardNumberException):
        CardTokenizer().tokenize(fields, today=TODAY)


def test_card_fields_repr_is_masked():
    fields = CardFields(number="4242424242424242", exp_month=12, exp_year=2030, cvc="123")
    text = repr(fields)
    assert "4242424242424242" not in text
    assert "123" not in text
