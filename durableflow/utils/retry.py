from __future__ import annotations

import random
import re
from typing import Literal, Optional, Union

from pydantic import BaseModel

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


class BackoffPolicy(BaseModel):
    """Delay between retry attempts of a step."""

    type: Literal["fixed", "linear", "exponential"] = "fixed"
    delay: float = 1.0
    max_delay: Optional[float] = None


RetryDelay = Union[float, int, str, BackoffPolicy]


def parse_duration(value: Union[float, int, str]) -> float:
    """Convert ``value`` to seconds.

    Numbers are taken as seconds. Strings accept an optional unit suffix:
    ``"250ms"``, ``"10s"``, ``"5m"``, ``"1h"``, ``"2d"``.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return float(value)
    match = _DURATION_RE.match(value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _UNIT_SECONDS[unit or "s"]


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def compute_retry_delay(retry_delay: Optional[RetryDelay], attempt: int) -> float:
    """Seconds to wait before retrying after failed attempt number ``attempt``."""
    if retry_delay is None:
        return 0.0
    if isinstance(retry_delay, str) and retry_delay in ("fixed", "linear", "exponential"):
        retry_delay = BackoffPolicy(type=retry_delay)
    if not isinstance(retry_delay, BackoffPolicy):
        return parse_duration(retry_delay)

    attempt = max(attempt, 1)
    if retry_delay.type == "fixed":
        delay = retry_delay.delay
    elif retry_delay.type == "linear":
        delay = retry_delay.delay * attempt
    else:
        delay = retry_delay.delay * (2 ** (attempt - 1))
    if retry_delay.max_delay is not None:
        delay = min(delay, retry_delay.max_delay)
    return delay
