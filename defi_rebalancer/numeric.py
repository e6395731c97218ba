"""
Tolerant numeric parsing for upstream payloads.

Trackers and lending APIs return numbers as JSON numbers, plain strings,
or decorated strings ("4.25%", "$1,204.10"). Anything that cannot be read
as a finite number becomes ``None``; callers pick their own default.
"""

import logging
import math
import re
from typing import Any, Optional

logger = logging.getLogger(__name__)

_DECORATIONS = re.compile(r"[%,$]")


def parse_number(value: Any) -> Optional[float]:
    """
    Parse ``value`` into a finite float, or ``None``.

    >>> parse_number("4.25%")
    4.25
    >>> parse_number("$1,204.10")
    1204.1
    >>> parse_number("n/a") is None
    True
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        sanitized = _DECORATIONS.sub("", value).strip()
        if not sanitized:
            return None
        try:
            parsed = float(sanitized)
        except ValueError:
            logger.warning("Unparsable numeric value: %r", value)
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def parse_int(value: Any) -> Optional[int]:
    """Parse ``value`` into an int (truncating toward zero), or ``None``."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    parsed = parse_number(value)
    return math.trunc(parsed) if parsed is not None else None
