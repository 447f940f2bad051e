"""Validation and normalisation of payout destinations per method."""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from rewards_api.models.redemption import PayoutMethod

_VPA_PATTERN = re.compile(r"^[A-Za-z0-9._-]{2,256}@[A-Za-z][A-Za-z0-9]{1,63}$")
_PHONE_PATTERN = re.compile(r"^[6-9]\d{9}$")

# Keys accepted when destination details arrive as a JSON object.
_DETAIL_KEYS: dict[PayoutMethod, tuple[str, ...]] = {
    PayoutMethod.UPI: ("upiId", "upi_id", "vpa"),
    PayoutMethod.WALLET: ("phoneNumber", "phone_number", "phone"),
}


class InvalidDestinationError(ValueError):
    """Raised when destination details cannot address the chosen method."""

    def __init__(self, method: PayoutMethod | None, message: str) -> None:
        super().__init__(message)
        self.method = method


def _unwrap(method: PayoutMethod, details: Any) -> str:
    if isinstance(details, Mapping):
        for key in _DETAIL_KEYS[method]:
            value = details.get(key)
            if value:
                return str(value)
        raise InvalidDestinationError(method, f"Destination details missing {_DETAIL_KEYS[method][0]}")

    if not isinstance(details, str):
        raise InvalidDestinationError(method, "Destination details must be a string or object")

    text = details.strip()
    if text.startswith(("{", '"')):
        try:
            parsed = json.loads(text)
        except ValueError:
            return text
        if isinstance(parsed, (Mapping, str)):
            return _unwrap(method, parsed)
    return text


def _normalize_phone(raw: str) -> str | None:
    digits = re.sub(r"[\s()-]", "", raw)
    if digits.startswith("+91"):
        digits = digits[3:]
    elif digits.startswith("91") and len(digits) == 12:
        digits = digits[2:]
    elif digits.startswith("0") and len(digits) == 11:
        digits = digits[1:]
    return digits if _PHONE_PATTERN.match(digits) else None


def normalize_destination(method: PayoutMethod | str, details: Any) -> str:
    """Return the canonical destination string for ``method``.

    UPI destinations are virtual payment addresses (``handle@bank``); wallet
    destinations are ten digit Indian mobile numbers. Details may be passed
    raw, as a JSON encoded string, or as an object keyed like the portal's
    redemption form (``upiId`` / ``phoneNumber``).
    """

    try:
        resolved = PayoutMethod(method)
    except ValueError as exc:
        raise InvalidDestinationError(None, f"Unsupported payout method: {method}") from exc

    value = _unwrap(resolved, details)
    if not value:
        raise InvalidDestinationError(resolved, "Destination details are empty")

    if resolved is PayoutMethod.UPI:
        if not _VPA_PATTERN.match(value):
            raise InvalidDestinationError(resolved, "UPI destination must look like handle@bank")
        return value.lower()

    phone = _normalize_phone(value)
    if phone is None:
        raise InvalidDestinationError(resolved, "Wallet destination must be a 10 digit mobile number")
    return phone


__all__ = ["InvalidDestinationError", "normalize_destination"]
