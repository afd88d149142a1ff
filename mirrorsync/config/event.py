"""
Job request decoding.

A job names the destination table, the operation and optional overrides. It
can arrive as a base64-encoded JSON event payload, as plain JSON in
``MOCK_EVENT_DATA`` (local runs), or as ``SYNC_TABLE``/``METHOD``/``SYNC_OPTIONS``
environment variables.
"""
import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..core.enums import SyncMethod
from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def safe_json(data: Optional[str]) -> Optional[Any]:
    if not data:
        return None
    try:
        return json.loads(data)
    except ValueError:
        return None


def decode_event_data(data: Optional[str] = None, default: Optional[Dict[str, Any]] = None,
                      environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Decode an event payload. ``MOCK_EVENT_DATA`` wins when it holds valid JSON."""
    env = os.environ if environ is None else environ
    default = default if default is not None else {}

    mocked = safe_json(env.get("MOCK_EVENT_DATA"))
    if isinstance(mocked, dict):
        return mocked

    if not data:
        return default
    try:
        decoded = json.loads(base64.b64decode(data).decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Ignoring undecodable event payload: {e}")
        return default
    if not isinstance(decoded, dict):
        logger.warning("Ignoring event payload that is not a JSON object")
        return default
    return decoded


@dataclass
class JobRequest:
    table: Optional[str]
    method: SyncMethod = SyncMethod.SYNC
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def batch_size(self) -> Optional[int]:
        value = self.options.get('batch_size')
        return int(value) if value is not None else None

    @property
    def progress_interval(self) -> Optional[float]:
        value = self.options.get('progress_interval')
        return float(value) if value is not None else None


def resolve_job_request(event: Optional[str] = None, table: Optional[str] = None,
                        method: Optional[str] = None,
                        environ: Optional[Mapping[str, str]] = None) -> JobRequest:
    """Combine explicit arguments, the event payload and the environment, in that order"""
    env = os.environ if environ is None else environ
    payload = decode_event_data(event, environ=env)

    options = {}
    env_options = safe_json(env.get("SYNC_OPTIONS"))
    if isinstance(env_options, dict):
        options.update(env_options)
    if isinstance(payload.get('options'), dict):
        options.update(payload['options'])

    method_name = method or payload.get('method') or env.get("METHOD") or SyncMethod.SYNC.value
    try:
        sync_method = SyncMethod(method_name)
    except ValueError:
        raise ConfigurationError(f"Unhandled method '{method_name}'")

    return JobRequest(
        table=table or payload.get('table') or env.get("SYNC_TABLE") or None,
        method=sync_method,
        options=options,
    )
