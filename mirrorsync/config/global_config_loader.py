"""
Process-wide settings read from the environment.

A ``.env`` file is loaded first (an explicit path, else one in the working
directory); variables already set in the environment take precedence.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from ..core.enums import WarehouseType
from ..core.exceptions import ConfigurationError
from ..utils.progress_manager import DEFAULT_PROGRESS_INTERVAL

DEFAULT_SOURCE_DATABASE = "askable"


@dataclass
class Settings:
    """Connection settings for the source and destination"""
    warehouse: WarehouseType = WarehouseType.BIGQUERY
    source_uri: Optional[str] = None
    source_database: str = DEFAULT_SOURCE_DATABASE
    bigquery_dataset: Optional[str] = None
    bigquery_project: Optional[str] = None
    bigquery_location: Optional[str] = None
    duckdb_path: Optional[str] = None
    duckdb_dataset: str = "main"
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        warehouse_name = (env.get("MIRRORSYNC_WAREHOUSE") or WarehouseType.BIGQUERY.value).lower()
        try:
            warehouse = WarehouseType(warehouse_name)
        except ValueError:
            raise ConfigurationError(
                f"MIRRORSYNC_WAREHOUSE must be one of {', '.join(w.value for w in WarehouseType)}, "
                f"got '{warehouse_name}'"
            )
        interval = env.get("SYNC_PROGRESS_INTERVAL")
        try:
            progress_interval = float(interval) if interval else DEFAULT_PROGRESS_INTERVAL
        except ValueError:
            raise ConfigurationError(f"SYNC_PROGRESS_INTERVAL must be a number, got '{interval}'")
        return cls(
            warehouse=warehouse,
            source_uri=env.get("ANALYTICS_DB_URI") or None,
            source_database=env.get("ANALYTICS_DB_NAME") or DEFAULT_SOURCE_DATABASE,
            bigquery_dataset=env.get("BIGQUERY_DATASET") or None,
            bigquery_project=env.get("BIGQUERY_PROJECT") or None,
            bigquery_location=env.get("BIGQUERY_LOCATION") or None,
            duckdb_path=env.get("DUCKDB_PATH") or None,
            duckdb_dataset=env.get("DUCKDB_DATASET") or "main",
            progress_interval=progress_interval,
        )

    def validate(self, require_source: bool = True) -> None:
        """Raise ConfigurationError naming every missing variable"""
        missing = []
        if require_source and not self.source_uri:
            missing.append("ANALYTICS_DB_URI")
        if self.warehouse == WarehouseType.BIGQUERY and not self.bigquery_dataset:
            missing.append("BIGQUERY_DATASET")
        if self.warehouse == WarehouseType.DUCKDB and not self.duckdb_path:
            missing.append("DUCKDB_PATH")
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")


def load_settings(env_file: Optional[str] = None, require_source: bool = True,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Load and validate settings"""
    if env_file:
        load_dotenv(env_file)
    elif Path(".env").exists():
        load_dotenv(".env")
    settings = Settings.from_env(environ)
    settings.validate(require_source=require_source)
    return settings


def create_warehouse(settings: Settings, logger: Optional[logging.Logger] = None):
    """Build the destination warehouse described by settings (not yet connected)"""
    if settings.warehouse == WarehouseType.DUCKDB:
        from ..backend.duckdb import DuckDBWarehouse
        return DuckDBWarehouse(database=settings.duckdb_path, dataset=settings.duckdb_dataset, logger=logger)
    elif settings.warehouse == WarehouseType.BIGQUERY:
        from ..backend.bigquery import BigQueryWarehouse
        return BigQueryWarehouse(
            dataset=settings.bigquery_dataset,
            project=settings.bigquery_project,
            location=settings.bigquery_location,
            logger=logger,
        )
    raise ConfigurationError(f"Unsupported warehouse type: {settings.warehouse}")
