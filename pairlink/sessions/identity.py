"""Phone number normalization — turns user input into a stable identity key.

Rules:
- Strip every non-digit character (spaces, dashes, parentheses, leading +)
- At least 10 digits are required
- A bare 10-digit number is assumed to be a US number and gets country code 1
- More than 15 digits is not a valid E.164 number
"""

from __future__ import annotations

import re

from pairlink.errors import ValidationError

_NON_DIGIT_RE = re.compile(r"\D")

MIN_DIGITS = 10
MAX_DIGITS = 15
DEFAULT_COUNTRY_CODE = "1"

# Suffix the messaging backend uses for one-to-one chats
_CHAT_SUFFIX = "@c.us"


def normalize_phone(raw: str | None) -> str:
    """Return the digits-only identity key for a user-supplied phone number.

    Raises:
        ValidationError: if the input is missing or has too few/many digits.
    """
    if raw is None or not str(raw).strip():
        raise ValidationError("Phone number is required")

    digits = _NON_DIGIT_RE.sub("", str(raw))
    if len(digits) < MIN_DIGITS:
        raise ValidationError(
            "Invalid phone number format",
            details={"reason": f"expected at least {MIN_DIGITS} digits"},
        )
    if len(digits) == MIN_DIGITS:
        digits = DEFAULT_COUNTRY_CODE + digits
    if len(digits) > MAX_DIGITS:
        raise ValidationError(
            "Invalid phone number format",
            details={"reason": f"expected at most {MAX_DIGITS} digits"},
        )
    return digits


def chat_id_for(target: str) -> str:
    """Backend chat id for a phone number; ids that already carry a domain pass through."""
    if "@" in target:
        return target
    return _NON_DIGIT_RE.sub("", target) + _CHAT_SUFFIX


def mask_identity(identity: str) -> str:
    """Log-safe form of an identity: only the last 4 digits survive."""
    if len(identity) <= 4:
        return "****"
    return "*" * (len(identity) - 4) + identity[-4:]
