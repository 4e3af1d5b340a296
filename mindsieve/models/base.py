"""Base helpers for stored records."""

import time
from typing import Any, Dict


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    """Remove keys whose value is None so merges never clobber fields."""
    return {k: v for k, v in data.items() if v is not None}
