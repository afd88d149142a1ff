from typing import Any
from datetime import datetime, date, time, timezone, timedelta
import decimal
import json

from ..core.schema_models import FieldType


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
EPOCH_DATE = date(1970, 1, 1)


def to_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to already be UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    return to_utc(value).replace(tzinfo=None)


def utc_now() -> datetime:
    """Aware current UTC time; microsecond precision matches the warehouse"""
    return datetime.now(timezone.utc)


def timestamp_micros(value: datetime) -> int:
    return (to_utc(value) - EPOCH) // timedelta(microseconds=1)


def epoch_days(value: date) -> int:
    if isinstance(value, datetime):
        value = value.date()
    return (value - EPOCH_DATE).days


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def to_json_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=_json_default)


def to_wire_value(value: Any, field_type: FieldType) -> Any:
    """
    Convert a validated row value to the representation the write stream expects.

    Timestamps become microseconds since the epoch and dates become days since
    the epoch; civil datetimes, times, numerics and JSON travel as text.

    Raises:
        ValueError: If the value cannot be represented as the column type
    """
    if value is None:
        return None

    if field_type == FieldType.TIMESTAMP:
        if isinstance(value, datetime):
            return timestamp_micros(value)
        raise ValueError(f"Cannot convert {type(value)} to timestamp")

    elif field_type == FieldType.DATE:
        if isinstance(value, date):
            return epoch_days(value)
        raise ValueError(f"Cannot convert {type(value)} to date")

    elif field_type == FieldType.DATETIME:
        if isinstance(value, datetime):
            return value.replace(tzinfo=None).isoformat(sep=' ')
        return str(value)

    elif field_type == FieldType.TIME:
        return value.isoformat() if isinstance(value, time) else str(value)

    elif field_type in (FieldType.NUMERIC, FieldType.BIGNUMERIC):
        return str(decimal.Decimal(str(value)))

    elif field_type == FieldType.JSON:
        return to_json_text(value)

    elif field_type == FieldType.INTEGER:
        return int(value)

    elif field_type == FieldType.FLOAT:
        return float(value)

    elif field_type == FieldType.BOOLEAN:
        return bool(value)

    elif field_type == FieldType.BYTES:
        return value if isinstance(value, bytes) else str(value).encode('utf-8')

    elif field_type in (FieldType.STRING, FieldType.GEOGRAPHY):
        return str(value)

    raise TypeError(f"Unsupported field type: {field_type}")
