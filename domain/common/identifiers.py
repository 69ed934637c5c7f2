"""Prefixed random identifiers (``ch_…``, ``evt_…``) shared by all aggregates."""
from __future__ import annotations

import secrets
import string

_ALPHABET = string.ascii_letters + string.digits


def generate_id(prefix: str, length: int = 24) -> str:
    return prefix + "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_secret(prefix: str = "whsec_", nbytes: int = 32) -> str:
    return prefix + secrets.token_hex(nbytes)
