"""
Schema-validated rows.

A pydantic model is generated from the negotiated destination schema for every
run. Transforms return plain mappings; the model coerces them into typed values,
fills missing columns with null and drops keys the destination does not have.
"""
import logging
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from .exceptions import RowError
from .schema_models import FieldType, TableField, TableSchema


_PYTHON_TYPES: Dict[FieldType, Any] = {
    FieldType.STRING: str,
    FieldType.BYTES: bytes,
    FieldType.INTEGER: int,
    FieldType.FLOAT: float,
    FieldType.NUMERIC: Decimal,
    FieldType.BIGNUMERIC: Decimal,
    FieldType.BOOLEAN: bool,
    FieldType.TIMESTAMP: datetime,
    FieldType.DATE: date,
    FieldType.TIME: time,
    FieldType.DATETIME: datetime,
    FieldType.GEOGRAPHY: str,
    FieldType.JSON: Any,
}


def _model_name(name: str) -> str:
    cleaned = re.sub(r'\W', '_', name).strip('_') or 'row'
    return ''.join(part.capitalize() for part in cleaned.split('_')) + 'Row'


def _annotation(field: TableField) -> Any:
    if field.is_record:
        base = build_row_model(TableSchema(field.fields), name=field.name)
    else:
        base = _PYTHON_TYPES[field.field_type]
    if field.is_repeated:
        return Optional[List[base]]
    if field.is_required:
        return base
    return Optional[base]


def build_row_model(schema: TableSchema, name: str = "row") -> Type[BaseModel]:
    """Generate a pydantic model whose aliases are the destination column names.

    Python attribute names are positional (``c0``, ``c1`` ...) because column
    names such as ``_uuid`` are not valid pydantic field names.
    """
    definitions = {}
    for index, field in enumerate(schema.fields):
        default = ... if field.is_required and not field.is_repeated else None
        definitions[f"c{index}"] = (_annotation(field), Field(default=default, alias=field.name))
    return create_model(
        _model_name(name),
        __config__=ConfigDict(extra='ignore', populate_by_name=False),
        **definitions,
    )


class RowValidator:
    """Validate transform output against a destination schema"""

    def __init__(self, schema: TableSchema, name: str = "row",
                 identity_column: Optional[str] = None,
                 logger: Optional[logging.Logger] = None):
        self.schema = schema
        self.identity_column = identity_column
        self.model = build_row_model(schema, name=name)
        self.logger = logger or logging.getLogger(__name__)
        self._known_columns = set(schema.names)
        self._reported_unknown: Set[str] = set()

    def validate(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Return a row holding exactly the schema's columns, in schema order.

        Raises RowError when a value cannot be coerced to its column type or
        the identity column is empty.
        """
        unknown = set(row) - self._known_columns - self._reported_unknown
        for key in sorted(unknown):
            self.logger.warning(f"Dropping column '{key}' which is not in the destination schema")
            self._reported_unknown.add(key)

        try:
            record = self.model.model_validate(row)
        except ValidationError as e:
            raise RowError(f"Row does not match destination schema: {e}", row.get(self.identity_column or ''))

        validated = record.model_dump(by_alias=True)
        if self.identity_column and validated.get(self.identity_column) in (None, ''):
            raise RowError(f"Row has no value for identity column '{self.identity_column}'")
        return validated
