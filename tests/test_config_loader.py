"""Tests for settings, table job definitions and event decoding."""

import base64
import json
from datetime import datetime, timezone

import pytest

from mirrorsync.backend.bigquery import BigQueryWarehouse
from mirrorsync.backend.duckdb import DuckDBWarehouse
from mirrorsync.config.config_loader import ConfigLoader, TableSyncConfig
from mirrorsync.config.event import decode_event_data, resolve_job_request
from mirrorsync.config.global_config_loader import Settings, create_warehouse
from mirrorsync.core.enums import SyncMethod, WarehouseType
from mirrorsync.core.exceptions import ConfigurationError

TABLES_YAML = """
defaults:
  database: analytics
  batch_size: 500

tables:
  users:
    collection: user
    filter:
      status: 1
    sort:
      _id: -1
    transform: examples.transforms:transform_user
  credit_activity:
    collection: credit_activity
    window_days: 7
    batch_size: 200
"""


def encode(payload):
    return base64.b64encode(json.dumps(payload).encode()).decode()


class TestConfigLoader:

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "tables.yaml"
        path.write_text(TABLES_YAML)

        configs = ConfigLoader.load_from_yaml(str(path))

        users = configs['users']
        assert users.collection == "user"
        assert users.database == "analytics"
        assert users.batch_size == 500
        assert users.identity_column == "ID"
        assert users.updated_column == "Updated"
        assert configs['credit_activity'].batch_size == 200

    def test_to_query(self):
        configs = ConfigLoader.load_from_dict({'tables': {
            'users': {'collection': "user", 'filter': {'status': 1}, 'sort': {'_id': -1}},
        }})
        query = configs['users'].to_query()

        assert query.collection == "user"
        assert query.filter == {'status': 1}
        assert query.sort == {'_id': -1}
        assert not query.is_aggregation

    def test_window_adds_relative_filter(self):
        config = TableSyncConfig(table="t", collection="c", filter={'a': 1}, window_days=7)
        now = datetime(2024, 1, 8, tzinfo=timezone.utc)

        query = config.to_query(now=now)

        assert query.filter == {'a': 1, 'updated': {'$gt': int(datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp() * 1000)}}
        assert config.filter == {'a': 1}

    def test_missing_tables_mapping(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader.load_from_dict({'users': {}})

    def test_missing_collection(self):
        with pytest.raises(ConfigurationError, match="collection"):
            ConfigLoader.load_from_dict({'tables': {'users': {'filter': {}}}})

    def test_unknown_option(self):
        with pytest.raises(ConfigurationError, match="users"):
            ConfigLoader.load_from_dict({'tables': {'users': {'collection': "user", 'colour': "blue"}}})

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(ConfigurationError):
            ConfigLoader.load_from_yaml(str(path))

    def test_get_table_config(self):
        configs = ConfigLoader.load_from_dict({'tables': {'users': {'collection': "user"}}})
        assert ConfigLoader.get_table_config(configs, "users").table == "users"
        with pytest.raises(ConfigurationError, match="not handled"):
            ConfigLoader.get_table_config(configs, "teams")

    def test_validate_config(self):
        assert ConfigLoader.validate_config(TableSyncConfig(table="t", collection="c")) == []

        issues = ConfigLoader.validate_config(TableSyncConfig(
            table="t", collection="", batch_size=0, filter={'a': 1},
            pipeline=[{'$match': {}}], transform="no_such_transform",
        ))
        assert len(issues) == 4
        assert any("collection" in issue for issue in issues)
        assert any("batch_size" in issue for issue in issues)
        assert any("pipeline" in issue for issue in issues)
        assert any("no_such_transform" in issue for issue in issues)


class TestSettings:

    def test_bigquery_settings(self):
        settings = Settings.from_env({
            'ANALYTICS_DB_URI': "mongodb://localhost",
            'BIGQUERY_DATASET': "analytics",
            'BIGQUERY_PROJECT': "proj",
            'SYNC_PROGRESS_INTERVAL': "2.5",
        })
        settings.validate()

        assert settings.warehouse == WarehouseType.BIGQUERY
        assert settings.source_database == "askable"
        assert settings.progress_interval == 2.5

        warehouse = create_warehouse(settings)
        assert isinstance(warehouse, BigQueryWarehouse)
        assert warehouse.dataset == "analytics"
        assert warehouse.project == "proj"

    def test_missing_variables_are_named(self):
        settings = Settings.from_env({})
        with pytest.raises(ConfigurationError, match="ANALYTICS_DB_URI, BIGQUERY_DATASET"):
            settings.validate()

    def test_duckdb_needs_only_a_path_when_source_not_required(self):
        settings = Settings.from_env({'MIRRORSYNC_WAREHOUSE': "DuckDB", 'DUCKDB_PATH': "/tmp/x.duckdb"})
        settings.validate(require_source=False)

        warehouse = create_warehouse(settings)
        assert isinstance(warehouse, DuckDBWarehouse)
        assert warehouse.database == "/tmp/x.duckdb"

    def test_invalid_values(self):
        with pytest.raises(ConfigurationError, match="MIRRORSYNC_WAREHOUSE"):
            Settings.from_env({'MIRRORSYNC_WAREHOUSE': "oracle"})
        with pytest.raises(ConfigurationError, match="SYNC_PROGRESS_INTERVAL"):
            Settings.from_env({'SYNC_PROGRESS_INTERVAL': "often"})


class TestEventDecoding:

    def test_base64_payload(self):
        assert decode_event_data(encode({'table': "users"}), environ={}) == {'table': "users"}

    def test_mock_event_data_wins(self):
        env = {'MOCK_EVENT_DATA': json.dumps({'table': "teams"})}
        assert decode_event_data(encode({'table': "users"}), environ=env) == {'table': "teams"}

    def test_invalid_payload_gives_default(self):
        assert decode_event_data("%%%not-base64", environ={}) == {}
        assert decode_event_data(encode([1, 2]), default={'x': 1}, environ={}) == {'x': 1}
        assert decode_event_data(None, environ={'MOCK_EVENT_DATA': "{broken"}) == {}

    def test_job_request_from_environment(self):
        request = resolve_job_request(environ={
            'SYNC_TABLE': "users",
            'SYNC_OPTIONS': json.dumps({'batch_size': 50}),
        })

        assert request.table == "users"
        assert request.method == SyncMethod.SYNC
        assert request.batch_size == 50
        assert request.progress_interval is None

    def test_job_request_precedence(self):
        env = {'SYNC_TABLE': "users", 'METHOD': "count", 'SYNC_OPTIONS': json.dumps({'batch_size': 50})}
        event = encode({'table': "teams", 'method': "drain_staging", 'options': {'batch_size': 10}})

        from_event = resolve_job_request(event=event, environ=env)
        assert (from_event.table, from_event.method, from_event.batch_size) == ("teams", SyncMethod.DRAIN_STAGING, 10)

        explicit = resolve_job_request(event=event, table="projects", method="sync", environ=env)
        assert (explicit.table, explicit.method) == ("projects", SyncMethod.SYNC)

    def test_unknown_method(self):
        with pytest.raises(ConfigurationError, match="export"):
            resolve_job_request(environ={'METHOD': "export"})
