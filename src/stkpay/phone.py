"""Kenyan mobile number normalization."""

import re

from .errors import InvalidPhoneError

MSISDN_PATTERN = re.compile(r"^254[17]\d{8}$")


def normalize_phone(raw: str) -> str:
    """Normalize a Kenyan mobile number to ``2547XXXXXXXX`` or ``2541XXXXXXXX``.

    ``0712345678``, ``+254 712 345 678`` and ``712345678`` all normalize to
    ``254712345678``.

    Raises:
        InvalidPhoneError: If the result is not a valid Safaricom-format MSISDN.
    """
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif not digits.startswith("254"):
        digits = "254" + digits

    if not MSISDN_PATTERN.match(digits):
        raise InvalidPhoneError(
            "Invalid phone number. Use format 07XXXXXXXX or 2547XXXXXXXX",
            details={"phone": mask_phone(raw)},
        )
    return digits


def mask_phone(phone: str) -> str:
    """Mask all but the last three digits for logging."""
    if not phone:
        return ""
    if len(phone) <= 3:
        return "*" * len(phone)
    return "*" * (len(phone) - 3) + phone[-3:]
