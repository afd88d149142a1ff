"""
Row encoding for the BigQuery Storage Write API.

The write API takes protobuf-serialized rows plus a self-contained descriptor
of the row message. Both are derived here from the negotiated table schema:
nested records become nested message types, repeated columns become repeated
fields, timestamps travel as int64 microseconds and dates as int32 days.
"""
import re
from typing import Any, Dict, List, Type

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import Message

from ..core.schema_models import FieldType, TableField, TableSchema
from ..utils.schema_utils import to_wire_value

ROOT_MESSAGE = "MirrorRow"

_FDP = descriptor_pb2.FieldDescriptorProto

_PROTO_TYPES = {
    FieldType.STRING: _FDP.TYPE_STRING,
    FieldType.BYTES: _FDP.TYPE_BYTES,
    FieldType.INTEGER: _FDP.TYPE_INT64,
    FieldType.FLOAT: _FDP.TYPE_DOUBLE,
    FieldType.NUMERIC: _FDP.TYPE_STRING,
    FieldType.BIGNUMERIC: _FDP.TYPE_STRING,
    FieldType.BOOLEAN: _FDP.TYPE_BOOL,
    FieldType.TIMESTAMP: _FDP.TYPE_INT64,
    FieldType.DATE: _FDP.TYPE_INT32,
    FieldType.TIME: _FDP.TYPE_STRING,
    FieldType.DATETIME: _FDP.TYPE_STRING,
    FieldType.GEOGRAPHY: _FDP.TYPE_STRING,
    FieldType.JSON: _FDP.TYPE_STRING,
}


def _nested_name(field_name: str) -> str:
    return re.sub(r'\W', '_', field_name).title().replace('_', '') + "Record"


def build_descriptor(schema: TableSchema, name: str = ROOT_MESSAGE, scope: str = "") -> descriptor_pb2.DescriptorProto:
    """Build a self-contained proto2 descriptor for rows of the given schema"""
    full_name = f"{scope}.{name}"
    proto = descriptor_pb2.DescriptorProto(name=name)
    for number, field in enumerate(schema.fields, start=1):
        field_proto = proto.field.add(name=field.name, number=number)
        if field.is_repeated:
            field_proto.label = _FDP.LABEL_REPEATED
        elif field.is_required:
            field_proto.label = _FDP.LABEL_REQUIRED
        else:
            field_proto.label = _FDP.LABEL_OPTIONAL

        if field.is_record:
            nested_name = _nested_name(field.name)
            proto.nested_type.append(build_descriptor(TableSchema(field.fields), nested_name, full_name))
            field_proto.type = _FDP.TYPE_MESSAGE
            field_proto.type_name = f"{full_name}.{nested_name}"
        else:
            field_proto.type = _PROTO_TYPES[field.field_type]
    return proto


def message_class(descriptor: descriptor_pb2.DescriptorProto) -> Type[Message]:
    """Materialize a message class from a standalone descriptor"""
    file_proto = descriptor_pb2.FileDescriptorProto(
        name=f"mirrorsync_{descriptor.name.lower()}.proto",
        syntax="proto2",
    )
    file_proto.message_type.add().CopyFrom(descriptor)
    pool = descriptor_pool.DescriptorPool()
    pool.AddSerializedFile(file_proto.SerializeToString())
    return message_factory.GetMessageClass(pool.FindMessageTypeByName(descriptor.name))


def _fill(message: Message, fields: List[TableField], row: Dict[str, Any]) -> None:
    for field in fields:
        value = row.get(field.name)
        if value is None:
            continue
        target = getattr(message, field.name) if field.is_repeated or field.is_record else None
        if field.is_record and field.is_repeated:
            for item in value:
                _fill(target.add(), field.fields, item)
        elif field.is_record:
            _fill(target, field.fields, value)
        elif field.is_repeated:
            target.extend(to_wire_value(item, field.field_type) for item in value if item is not None)
        else:
            setattr(message, field.name, to_wire_value(value, field.field_type))


class RowEncoder:
    """Serializes validated rows into protobuf bytes for one table schema"""

    def __init__(self, schema: TableSchema):
        self.schema = schema
        self.descriptor = build_descriptor(schema)
        self.message_class = message_class(self.descriptor)

    def encode(self, row: Dict[str, Any]) -> bytes:
        message = self.message_class()
        _fill(message, self.schema.fields, row)
        return message.SerializeToString()

    def encode_rows(self, rows: List[Dict[str, Any]]) -> List[bytes]:
        return [self.encode(row) for row in rows]
