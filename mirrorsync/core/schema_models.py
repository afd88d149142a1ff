from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Iterable
from enum import Enum


class FieldType(str, Enum):
    """Destination column types, named after the warehouse's legacy SQL names"""
    STRING = "STRING"
    BYTES = "BYTES"
    INTEGER = "INTEGER"
    FLOAT = "FLOAT"
    NUMERIC = "NUMERIC"
    BIGNUMERIC = "BIGNUMERIC"
    BOOLEAN = "BOOLEAN"
    TIMESTAMP = "TIMESTAMP"
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    GEOGRAPHY = "GEOGRAPHY"
    JSON = "JSON"
    RECORD = "RECORD"

    @classmethod
    def parse(cls, value: str) -> 'FieldType':
        """Accept both legacy and standard SQL spellings (INT64, BOOL, STRUCT...)"""
        name = value.upper()
        return cls(_TYPE_ALIASES.get(name, name))


_TYPE_ALIASES = {
    "INT64": "INTEGER",
    "FLOAT64": "FLOAT",
    "BOOL": "BOOLEAN",
    "STRUCT": "RECORD",
    "DECIMAL": "NUMERIC",
    "BIGDECIMAL": "BIGNUMERIC",
}


class FieldMode(str, Enum):
    NULLABLE = "NULLABLE"
    REQUIRED = "REQUIRED"
    REPEATED = "REPEATED"


@dataclass
class TableField:
    """A destination column definition"""
    name: str
    field_type: FieldType
    mode: FieldMode = FieldMode.NULLABLE
    fields: List['TableField'] = field(default_factory=list)
    description: Optional[str] = None

    @property
    def is_record(self) -> bool:
        return self.field_type == FieldType.RECORD

    @property
    def is_repeated(self) -> bool:
        return self.mode == FieldMode.REPEATED

    @property
    def is_required(self) -> bool:
        return self.mode == FieldMode.REQUIRED

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableField':
        return cls(
            name=data['name'],
            field_type=FieldType.parse(data.get('type', 'STRING')),
            mode=FieldMode(data.get('mode', 'NULLABLE').upper()),
            fields=[cls.from_dict(f) for f in data.get('fields', [])],
            description=data.get('description'),
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {'name': self.name, 'type': self.field_type.value, 'mode': self.mode.value}
        if self.fields:
            result['fields'] = [f.to_dict() for f in self.fields]
        return result


@dataclass
class TableSchema:
    """Ordered destination schema"""
    fields: List[TableField] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def get_field(self, name: str) -> Optional[TableField]:
        # Warehouse column names are case-insensitive
        lowered = name.lower()
        for f in self.fields:
            if f.name.lower() == lowered:
                return f
        return None

    def has_column(self, name: str) -> bool:
        return self.get_field(name) is not None

    def without(self, names: Iterable[str]) -> 'TableSchema':
        excluded = {n.lower() for n in names}
        return TableSchema([f for f in self.fields if f.name.lower() not in excluded])

    @classmethod
    def from_list(cls, fields: List[Dict[str, Any]]) -> 'TableSchema':
        return cls([TableField.from_dict(f) for f in fields])

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self):
        return iter(self.fields)
