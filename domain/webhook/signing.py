"""
Webhook 签名

Header format: ``t=<unix seconds>,v1=<hex hmac-sha256>`` where the HMAC covers
``"{t}.{payload}"``. Receivers recompute the digest with the endpoint secret
and reject stale timestamps.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Optional, Union

from core.settings import payment_settings
from domain.common.exceptions import WebhookSignatureException


Payload = Union[str, bytes]

SIGNATURE_SCHEME = "v1"


def canonical_payload(wire: dict) -> str:
    """规范化 JSON：排序键 + 紧凑分隔符，同一事件总是序列化为相同字节"""
    return json.dumps(wire, sort_keys=True, separators=(",", ":"))


def _as_text(payload: Payload) -> str:
    return payload.decode("utf-8") if isinstance(payload, bytes) else payload


def compute_signature(secret: str, timestamp: int, payload: Payload) -> str:
    signed = f"{timestamp}.{_as_text(payload)}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(secret: str, payload: Payload, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(secret, ts, payload)}"


def _tolerance(tolerance: Optional[int]) -> int:
    return payment_settings.webhook.tolerance_seconds if tolerance is None else tolerance


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    timestamp: Optional[int] = None
    signatures: list[str] = []
    for part in (header or "").split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureException("Invalid timestamp in signature header")
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    if timestamp is None or not signatures:
        raise WebhookSignatureException("Malformed signature header")
    return timestamp, signatures


def verify_signature(
    payload: Payload,
    header: str,
    secret: str,
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    try:
        timestamp, signatures = parse_signature_header(header)
    except WebhookSignatureException:
        return False
    current = time.time() if now is None else now
    if abs(current - timestamp) > _tolerance(tolerance):
        return False
    expected = compute_signature(secret, timestamp, payload)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def construct_event(
    payload: Payload,
    header: str,
    secret: str,
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> dict:
    """校验签名并解析事件（供接收方使用）"""
    tolerance = _tolerance(tolerance)
    timestamp, _ = parse_signature_header(header)
    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance:
        raise WebhookSignatureException("Timestamp outside the tolerance zone")
    if not verify_signature(payload, header, secret, tolerance=tolerance, now=current):
        raise WebhookSignatureException("No signatures found matching the expected signature")
    try:
        return json.loads(_as_text(payload))
    except ValueError:
        raise WebhookSignatureException("Payload is not valid JSON")
