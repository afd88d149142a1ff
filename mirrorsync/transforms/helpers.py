"""Small helpers shared by row transforms."""
import math
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Mapping, Optional, Union

Number = Union[int, float]


def object_id_str(value: Any) -> Optional[str]:
    """String form of an ObjectId (or any id), None for empty values"""
    if value is None or value == '':
        return None
    return str(value)


def safe_map_lookup(mapping: Optional[Mapping[Any, str]], key: Any) -> Optional[str]:
    """Look up a code in a label map; unknown or non-scalar keys give None"""
    if mapping is None or isinstance(key, bool) or not isinstance(key, (str, int, float)):
        return None
    if key in mapping:
        return mapping[key]
    if isinstance(key, str) and key.lstrip('-').isdigit():
        return mapping.get(int(key))
    return mapping.get(str(key))


def day_diff(days: Number, now: Optional[datetime] = None) -> datetime:
    """The UTC instant ``days`` days before now"""
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=days)


def day_diff_ms(days: Number, now: Optional[datetime] = None) -> int:
    """day_diff as epoch milliseconds, the unit source documents store times in"""
    return int(day_diff(days, now).timestamp() * 1000)


def round_half_up(value: Any, decimals: int = 0) -> Optional[float]:
    """Round halves away from zero; non-numbers give None"""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or (
            isinstance(value, float) and not math.isfinite(value)):
        return None
    quantum = Decimal(1).scaleb(-decimals)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def ms_to_datetime(value: Any) -> Optional[datetime]:
    """Epoch milliseconds (or a datetime) as an aware UTC datetime"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return None


def created_at(document: Dict[str, Any]) -> Optional[datetime]:
    """``created`` when set, otherwise the creation time embedded in the ObjectId"""
    created = ms_to_datetime(document.get('created'))
    if created is not None:
        return created
    generation_time = getattr(document.get('_id'), 'generation_time', None)
    return generation_time
