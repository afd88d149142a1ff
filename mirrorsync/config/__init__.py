from .config_loader import ConfigLoader, TableSyncConfig
from .event import JobRequest, decode_event_data, resolve_job_request
from .global_config_loader import Settings, create_warehouse, load_settings

__all__ = [
    'ConfigLoader', 'TableSyncConfig',
    'JobRequest', 'decode_event_data', 'resolve_job_request',
    'Settings', 'create_warehouse', 'load_settings',
]
