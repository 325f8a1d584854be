# Configuration for the on-prem agent (config.json) and the cloud API (environment)

import json
import logging
import os
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import ConfigError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / 'config.json'

MIN_SYNC_INTERVAL = 60
MAX_SYNC_INTERVAL = 86400

# env var -> AgentConfig field
_AGENT_ENV_OVERRIDES = {
    'POSSYNC_SERVER_URL': 'server_url',
    'POSSYNC_AGENT_ID': 'agent_id',
    'POSSYNC_TENANT_ID': 'tenant_id',
    'POSSYNC_INTEGRATION_ID': 'integration_id',
    'POSSYNC_CONNECTION_STRING': 'connection_string',
    'POSSYNC_STORE_CODE': 'store_code',
}


def _as_int(val: Optional[str], default: int) -> int:
    try:
        return int(val) if val is not None and str(val).strip() != "" else default
    except ValueError:
        return default


def _as_str(val: Optional[str], default: str) -> str:
    if val is None:
        return default
    s = str(val).strip()
    return s if s else default


@dataclass
class SyncConfig:
    """Per-agent sync options handed out by the cloud at registration."""
    interval_seconds: int = 300
    sync_sales: bool = True
    sync_menu: bool = True
    sync_inventory: bool = True
    sync_tables: bool = False

    def __post_init__(self):
        if not MIN_SYNC_INTERVAL <= self.interval_seconds <= MAX_SYNC_INTERVAL:
            raise ConfigError(
                f"interval_seconds must be between {MIN_SYNC_INTERVAL} and {MAX_SYNC_INTERVAL}"
            )
        if not (self.sync_sales or self.sync_menu or self.sync_inventory or self.sync_tables):
            raise ConfigError("At least one sync type must be enabled")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], fallback: 'SyncConfig' = None) -> 'SyncConfig':
        base = fallback or cls()
        data = data or {}
        interval = data.get('interval_seconds', data.get('sync_interval_seconds', base.interval_seconds))
        return cls(
            interval_seconds=int(interval),
            sync_sales=bool(data.get('sync_sales', base.sync_sales)),
            sync_menu=bool(data.get('sync_menu', base.sync_menu)),
            sync_inventory=bool(data.get('sync_inventory', base.sync_inventory)),
            sync_tables=bool(data.get('sync_tables', base.sync_tables)),
        )

    def enabled(self, sync_type: str) -> bool:
        return bool(getattr(self, f'sync_{sync_type}', False))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AgentConfig:
    server_url: str = ''
    tenant_id: str = ''
    integration_id: str = ''
    agent_id: str = ''
    agent_version: str = '1.0.0'
    credentials_path: str = 'credentials.dat'
    state_db_path: str = 'possync_agent.db'
    log_path: Optional[str] = None
    connection_string: Optional[str] = None
    store_code: Optional[str] = None
    currency: str = 'MXN'
    batch_size: int = 100
    max_records_per_query: int = 500
    initial_sales_limit: int = 500
    detection_retry_seconds: int = 300
    error_pause_seconds: int = 5
    auth_retry_seconds: int = 1800
    full_sync_interval_minutes: int = 0
    request_timeout: int = 30
    max_retries: int = 3
    retry_delay: float = 2
    query_timeout: int = 30
    status_port: int = 8765  # local status page; 0 disables
    sync: SyncConfig = field(default_factory=SyncConfig)

    def __post_init__(self):
        if isinstance(self.sync, dict):
            self.sync = SyncConfig.from_dict(self.sync)
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be positive")
        if self.max_records_per_query <= 0:
            raise ConfigError("max_records_per_query must be positive")
        if self.error_pause_seconds < 0 or self.detection_retry_seconds <= 0:
            raise ConfigError("retry/pause intervals must not be negative")
        if self.server_url and not self.server_url.startswith(('http://', 'https://')):
            raise ConfigError(f"server_url must be an http(s) URL: {self.server_url!r}")

    def require_identity(self):
        missing = [name for name in ('server_url', 'tenant_id', 'integration_id', 'agent_id')
                   if not getattr(self, name)]
        if missing:
            raise ConfigError(f"Missing agent configuration: {', '.join(missing)}")


def load_agent_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> AgentConfig:
    """Load config.json (if present) and apply POSSYNC_* environment overrides."""
    environ = os.environ if environ is None else environ
    config_path = Path(path or environ.get('POSSYNC_CONFIG') or DEFAULT_CONFIG_PATH)
    data: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, encoding='utf-8') as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
    else:
        logger.info(f"No config file at {config_path}, using defaults and environment")

    for env_name, field_name in _AGENT_ENV_OVERRIDES.items():
        if environ.get(env_name):
            data[field_name] = environ[env_name]

    known = {f.name for f in fields(AgentConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
    return AgentConfig(**{k: v for k, v in data.items() if k in known})


@dataclass
class CloudSettings:
    db_path: str = 'possync_cloud.db'
    offline_timeout_seconds: int = 300
    sweep_interval_seconds: int = 60
    rate_limit_per_minute: int = 1000
    token_ttl_days: int = 30
    default_currency: str = 'MXN'

    def __post_init__(self):
        if self.offline_timeout_seconds <= 0:
            raise ConfigError("offline_timeout_seconds must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ConfigError("sweep_interval_seconds must be positive")


def load_cloud_settings(environ: Optional[Dict[str, str]] = None) -> CloudSettings:
    environ = os.environ if environ is None else environ
    defaults = CloudSettings()
    return CloudSettings(
        db_path=_as_str(environ.get('POSSYNC_CLOUD_DB'), defaults.db_path),
        offline_timeout_seconds=_as_int(environ.get('POSSYNC_OFFLINE_TIMEOUT_SECONDS'),
                                        defaults.offline_timeout_seconds),
        sweep_interval_seconds=_as_int(environ.get('POSSYNC_SWEEP_INTERVAL_SECONDS'),
                                       defaults.sweep_interval_seconds),
        rate_limit_per_minute=_as_int(environ.get('POSSYNC_RATE_LIMIT_PER_MINUTE'),
                                      defaults.rate_limit_per_minute),
        token_ttl_days=_as_int(environ.get('POSSYNC_TOKEN_TTL_DAYS'), defaults.token_ttl_days),
        default_currency=_as_str(environ.get('POSSYNC_DEFAULT_CURRENCY'), defaults.default_currency),
    )
