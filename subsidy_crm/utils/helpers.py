"""
General helper utilities
"""
import math
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Optional

CENT = Decimal("0.01")


def round_money(value: float) -> float:
    """Round a currency amount to 2 decimals, halves away from zero"""
    value = to_number(value, 0.0)
    return float(Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def to_number(value: Any, default: float = 0.0) -> float:
    """Coerce user input to a finite float, falling back on blanks and garbage"""
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


def json_safe(value: Any) -> Any:
    """Make dates and enums storable in JSON columns"""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def append_timeline(
    entity,
    type: str,
    message: str,
    actor_id: Optional[int] = None,
    at: Optional[datetime] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Append an entry to an entity's JSON timeline.

    The list is reassigned rather than mutated in place so that the ORM sees
    the change without a mutable column type.
    """
    entry = {
        "type": type,
        "message": message,
        "actor_id": actor_id,
        "at": json_safe(at or datetime.utcnow()),
    }
    if meta:
        entry["meta"] = json_safe(meta)
    entity.timeline = [*(entity.timeline or []), entry]
    return entry


def append_history(entity, attr: str, from_value, to_value, changed_by: Optional[int], at: datetime) -> None:
    """Append a {from, to, at, changed_by} record to a JSON history column"""
    record = {
        "from": json_safe(from_value),
        "to": json_safe(to_value),
        "at": json_safe(at),
        "changed_by": changed_by,
    }
    setattr(entity, attr, [*(getattr(entity, attr) or []), record])
