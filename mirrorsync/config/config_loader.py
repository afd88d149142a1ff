import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.exceptions import ConfigurationError
from ..core.models import DEFAULT_BATCH_SIZE, DEFAULT_IDENTITY_COLUMN, DEFAULT_UPDATED_COLUMN
from ..source.base_source import SourceQuery
from ..transforms.helpers import day_diff_ms
from ..transforms.registry import resolve_transform


@dataclass
class TableSyncConfig:
    """How one destination table is filled from one collection"""
    table: str
    collection: str
    database: Optional[str] = None
    filter: Dict[str, Any] = field(default_factory=dict)
    projection: Optional[Dict[str, Any]] = None
    sort: Optional[Dict[str, int]] = None
    pipeline: Optional[List[Dict[str, Any]]] = None
    transform: Optional[str] = None
    batch_size: int = DEFAULT_BATCH_SIZE
    identity_column: Optional[str] = DEFAULT_IDENTITY_COLUMN
    updated_column: str = DEFAULT_UPDATED_COLUMN
    # Only read documents whose window_field (epoch ms) is newer than this many days
    window_days: Optional[float] = None
    window_field: str = "updated"

    def source_filter(self, now=None) -> Dict[str, Any]:
        if self.window_days is None:
            return dict(self.filter)
        return {**self.filter, self.window_field: {"$gt": day_diff_ms(self.window_days, now)}}

    def to_query(self, now=None) -> SourceQuery:
        return SourceQuery(
            collection=self.collection,
            filter=self.source_filter(now),
            projection=self.projection,
            sort=self.sort,
            pipeline=self.pipeline,
            batch_size=self.batch_size,
        )

    def engine_options(self) -> Dict[str, Any]:
        return {
            'batch_size': self.batch_size,
            'identity_column': self.identity_column,
            'updated_column': self.updated_column,
        }


class ConfigLoader:
    """Load and validate table sync configurations.

    The YAML document holds a ``tables`` mapping keyed by destination table::

        tables:
          users:
            collection: user
            filter: {status: 1}
            transform: examples.transforms:transform_user
    """

    @staticmethod
    def load_from_yaml(file_path: str) -> Dict[str, TableSyncConfig]:
        """Load configuration from YAML file"""
        try:
            with open(file_path, 'r') as file:
                config_dict = yaml.safe_load(file)
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {file_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {file_path}: {e}") from e

        if config_dict is None:
            raise ConfigurationError(f"Empty or invalid YAML file: {file_path}")

        return ConfigLoader.load_from_dict(config_dict)

    @staticmethod
    def load_from_dict(config_dict: Dict[str, Any]) -> Dict[str, TableSyncConfig]:
        """Load configuration from dictionary"""
        tables = config_dict.get('tables')
        if not isinstance(tables, dict):
            raise ConfigurationError("Config must contain a 'tables' mapping")

        defaults = config_dict.get('defaults') or {}
        configs = {}
        for table, table_dict in tables.items():
            merged = {**defaults, **(table_dict or {})}
            merged['table'] = table
            if 'collection' not in merged:
                raise ConfigurationError(f"Table '{table}' must name a source collection")
            try:
                configs[table] = TableSyncConfig(**merged)
            except TypeError as e:
                raise ConfigurationError(f"Invalid configuration for table '{table}': {e}") from e
        return configs

    @staticmethod
    def get_table_config(configs: Dict[str, TableSyncConfig], table: str) -> TableSyncConfig:
        if table not in configs:
            raise ConfigurationError(f"Table {table} is not handled; configured: {', '.join(sorted(configs))}")
        return configs[table]

    @staticmethod
    def validate_config(config: TableSyncConfig) -> List[str]:
        """Validate configuration and return list of issues"""
        issues = []

        if not config.table:
            issues.append("Table name is required")

        if not config.collection:
            issues.append(f"Table '{config.table}' must name a source collection")

        if config.pipeline is not None:
            if not isinstance(config.pipeline, list):
                issues.append(f"Table '{config.table}': pipeline must be a list of stages")
            if config.filter or config.projection or config.sort:
                issues.append(f"Table '{config.table}': use either pipeline or filter/projection/sort, not both")

        if not isinstance(config.batch_size, int) or config.batch_size <= 0:
            issues.append(f"Table '{config.table}': batch_size must be a positive integer")

        if config.window_days is not None and config.pipeline is not None:
            issues.append(f"Table '{config.table}': window_days applies to find queries only")

        if config.window_days is not None and (
                isinstance(config.window_days, bool) or not isinstance(config.window_days, (int, float))
                or config.window_days <= 0):
            issues.append(f"Table '{config.table}': window_days must be a positive number")

        if not config.updated_column:
            issues.append(f"Table '{config.table}': updated_column is required")

        try:
            resolve_transform(config.transform)
        except ConfigurationError as e:
            issues.append(f"Table '{config.table}': {e}")

        return issues
