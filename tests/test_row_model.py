"""Tests for schema-driven row validation."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from mirrorsync.core.exceptions import RowError
from mirrorsync.core.row_model import RowValidator, build_row_model
from mirrorsync.core.schema_models import FieldMode, FieldType, TableField, TableSchema

SCHEMA = TableSchema([
    TableField("ID", FieldType.STRING),
    TableField("Count", FieldType.INTEGER),
    TableField("Amount", FieldType.NUMERIC),
    TableField("Created", FieldType.TIMESTAMP),
    TableField("Day", FieldType.DATE),
    TableField("Tags", FieldType.STRING, FieldMode.REPEATED),
    TableField("Location", FieldType.RECORD, fields=[
        TableField("Country", FieldType.STRING),
        TableField("Lat", FieldType.FLOAT),
    ]),
])


class TestRowValidator:

    def test_row_follows_schema_order_and_fills_missing_columns(self):
        validator = RowValidator(SCHEMA, identity_column="ID")
        row = validator.validate({'Count': 3, 'ID': "x"})

        assert list(row) == SCHEMA.names
        assert row['ID'] == "x"
        assert row['Count'] == 3
        assert row['Tags'] is None
        assert row['Location'] is None

    def test_values_are_coerced(self):
        validator = RowValidator(SCHEMA)
        row = validator.validate({
            'ID': "x",
            'Count': "12",
            'Amount': "1.50",
            'Created': "2024-01-02T03:04:05Z",
            'Day': "2024-01-02",
            'Tags': ["a", "b"],
            'Location': {'Country': "AU", 'Lat': 1},
        })

        assert row['Count'] == 12
        assert row['Amount'] == Decimal("1.50")
        assert row['Created'] == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert row['Day'] == date(2024, 1, 2)
        assert row['Tags'] == ["a", "b"]
        assert row['Location'] == {'Country': "AU", 'Lat': 1.0}

    def test_type_error_raises_row_error(self):
        validator = RowValidator(SCHEMA, identity_column="ID")
        with pytest.raises(RowError) as exc_info:
            validator.validate({'ID': "x", 'Count': "many"})
        assert exc_info.value.document_id == "x"

    def test_missing_identity_raises_row_error(self):
        validator = RowValidator(SCHEMA, identity_column="ID")
        with pytest.raises(RowError, match="identity column 'ID'"):
            validator.validate({'Count': 1})
        with pytest.raises(RowError):
            validator.validate({'ID': "", 'Count': 1})

    def test_unknown_keys_warn_once_per_key(self, caplog):
        caplog.set_level(logging.WARNING)
        validator = RowValidator(SCHEMA, logger=logging.getLogger("test.rows"))

        first = validator.validate({'ID': "x", 'extra': 1, 'other': 2})
        validator.validate({'ID': "y", 'extra': 1})

        assert 'extra' not in first
        assert caplog.text.count("Dropping column 'extra'") == 1
        assert caplog.text.count("Dropping column 'other'") == 1

    def test_required_column_must_be_present(self):
        schema = TableSchema([TableField("ID", FieldType.STRING, FieldMode.REQUIRED)])
        with pytest.raises(RowError):
            RowValidator(schema).validate({})


class TestBuildRowModel:

    def test_column_names_that_are_not_identifiers(self):
        schema = TableSchema([TableField("_uuid", FieldType.STRING), TableField("First Name", FieldType.STRING)])
        model = build_row_model(schema, name="odd table")

        record = model.model_validate({'_uuid': "u", 'First Name': "Ann"})

        assert record.model_dump(by_alias=True) == {'_uuid': "u", 'First Name': "Ann"}
        assert model.__name__ == "OddTableRow"
