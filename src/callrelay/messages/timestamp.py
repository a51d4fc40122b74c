from __future__ import annotations

import time
from collections.abc import Callable


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_timestamp(raw: object, *, now: Callable[[], int] = now_ms) -> int:
    """
    Normalize a peer-supplied epoch timestamp to milliseconds.

    The unit is inferred from the digit count of the raw integer:

    - 1-10 digits: seconds (multiplied by 1000)
    - 11-13 digits: milliseconds (unchanged)
    - 14-16 digits: microseconds (divided by 1000)

    Anything else (missing, negative, non-integral, or out of range) falls back
    to the local receipt time. Re-normalizing a millisecond value is a no-op.
    """

    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return now()
    if isinstance(raw, float):
        if not raw.is_integer():
            return now()
        value = int(raw)
    elif isinstance(raw, str):
        if not raw.isdigit():
            return now()
        value = int(raw)
    else:
        value = raw
    if value < 0:
        return now()

    digits = len(str(value))
    if 1 <= digits <= 10:
        return value * 1000
    if 11 <= digits <= 13:
        return value
    if 14 <= digits <= 16:
        return value // 1000
    return now()
