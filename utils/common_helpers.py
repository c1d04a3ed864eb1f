import math
from typing import Any, Dict, Optional

import httpx


def safe_float(x: Any) -> Optional[float]:
    """Lenient number coercion: None for missing, blank, non-numeric or non-finite input."""
    if x is None:
        return None
    if isinstance(x, bool):
        return float(x)
    if isinstance(x, str):
        x = x.strip()
        if not x:
            return None
    try:
        value = float(x)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def is_blank(x: Any) -> bool:
    if x is None:
        return True
    if isinstance(x, float) and math.isnan(x):
        return True
    return isinstance(x, str) and not x.strip()


def safe_json(resp: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None
