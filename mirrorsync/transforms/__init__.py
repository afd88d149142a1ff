from .registry import register_transform, registered_transforms, resolve_transform
from .helpers import (
    created_at, day_diff, day_diff_ms, ms_to_datetime, object_id_str, round_half_up, safe_map_lookup,
)

__all__ = [
    'register_transform', 'registered_transforms', 'resolve_transform',
    'created_at', 'day_diff', 'day_diff_ms', 'ms_to_datetime', 'object_id_str',
    'round_half_up', 'safe_map_lookup',
]
