"""Keyed digest shared by checkout payloads and provider notifications."""

from __future__ import annotations

import hashlib
import hmac
from typing import TYPE_CHECKING

from task_market_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from collections.abc import Mapping

SIGNATURE_FIELD = "md5sig"


def canonicalize(fields: Mapping[str, object]) -> str:
    """Sorted key=value pairs joined by '&', excluding the signature itself."""
    return "&".join(
        f"{key}={fields[key]}" for key in sorted(fields) if key != SIGNATURE_FIELD
    )


def sign(fields: Mapping[str, object], secret: str) -> str:
    """Return the uppercase hex digest of the canonical form plus the shared secret."""
    material = canonicalize(fields) + secret
    return hashlib.md5(material.encode("utf-8")).hexdigest().upper()  # nosec B324


def verify(fields: Mapping[str, object], secret: str) -> None:
    """
    Check the signature carried in fields.

    Raises:
        ServiceError: INVALID_SIGNATURE when missing or wrong
    """
    received = fields.get(SIGNATURE_FIELD)
    if not isinstance(received, str) or not received:
        raise ServiceError("INVALID_SIGNATURE", "Missing payment signature", 400, {})
    expected = sign(fields, secret)
    if not hmac.compare_digest(received.upper(), expected):
        raise ServiceError("INVALID_SIGNATURE", "Invalid payment signature", 400, {})
