"""Quota value normalization."""

import math
import re

DEFAULT_QUOTA = "default"
UNLIMITED = "none"

_SIZE_RE = re.compile(
    r"^\s*(\d+(?:\.\d*)?(?:e[+-]?\d+)?|\.\d+(?:e[+-]?\d+)?)\s*(?:([kmgtp])i?)?b?\s*$",
    re.IGNORECASE,
)

_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}


def normalize_quota(value: str | int) -> int | str:
    """Normalize a quota to bytes or one of the "default"/"none" sentinels.

    Accepts a byte count, a numeric string, the literals "default" and "none"
    (case-insensitive) or a human-readable size such as "1GB", "1.5 gb" or
    "500 M". IEC suffixes ("1 GiB") and exponents ("1e9") are accepted too;
    all multiples are binary.

    Raises:
        ValueError: If the value cannot be interpreted
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid quota: {value!r}")
    if isinstance(value, int):
        if value < 0:
            raise ValueError(f"Quota cannot be negative: {value}")
        return value

    text = str(value).strip()
    if text.lower() in (DEFAULT_QUOTA, UNLIMITED):
        return text.lower()

    match = _SIZE_RE.match(text)
    if not match:
        raise ValueError(f"Invalid quota: {value!r}")

    number, unit = match.groups()
    size = float(number) * _MULTIPLIERS[(unit or "").lower()]
    if not math.isfinite(size):
        raise ValueError(f"Quota out of range: {value!r}")
    return round(size)
