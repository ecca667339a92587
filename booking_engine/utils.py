"""Shared utilities used across the booking engine."""

import re
from datetime import datetime, timedelta

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_CHARS = re.compile(r"^[\d\s()+\-.]+$")


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("(555) 123-4567")
        '5551234567'
        >>> normalize_phone("+1 555 123 4567")
        '+15551234567'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def is_valid_phone(value: str) -> bool:
    """Accept common formatting characters around 10 to 15 digits."""
    trimmed = value.strip()
    if not _PHONE_CHARS.match(trimmed):
        return False
    digits = re.sub(r"\D", "", trimmed)
    return MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS


def is_valid_email(value: str) -> bool:
    trimmed = value.strip()
    if not _EMAIL_PATTERN.match(trimmed):
        return False
    domain = trimmed.split("@", 1)[1]
    return len(domain.rsplit(".", 1)[-1]) >= 2


def round_to_granularity(moment: datetime, minutes: int) -> datetime:
    """Round to the nearest ``minutes`` boundary within the hour; halves round up."""
    base = moment.replace(minute=0, second=0, microsecond=0)
    offset = (moment - base).total_seconds() / 60
    steps = int(offset / minutes + 0.5)
    return base + timedelta(minutes=steps * minutes)


def ceil_to_granularity(moment: datetime, minutes: int) -> datetime:
    """Move forward to the next ``minutes`` boundary unless already on one."""
    base = moment.replace(minute=0, second=0, microsecond=0)
    offset = moment - base
    step = timedelta(minutes=minutes)
    remainder = offset % step
    if not remainder:
        return moment
    return moment + (step - remainder)
