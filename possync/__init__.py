# possync - POS Local Agent Synchronization
# Soft Restaurant detection, incremental sync and cloud ingestion

__version__ = '1.0.0'

from .api_client import ApiClient, AgentIdentityInfo, SyncBatch, BatchResult
from .config import AgentConfig, SyncConfig, CloudSettings, load_agent_config, load_cloud_settings
from .credential_store import CredentialStore, StoredCredentials
from .detector import Detector, DetectionResult
from .errors import (
    PosSyncError,
    ConfigError,
    CredentialError,
    DetectionFailure,
    AuthFailure,
    NetworkFailure,
    PayloadError,
    ProcessingFailure,
    InvalidTransition,
    DuplicateAgent,
)
from .pos_repository import SoftRestaurantRepository
from .state_store import AgentStateStore
from .status import AgentStatus, SyncType
from .sync_engine import SyncEngine

__all__ = [
    'ApiClient',
    'AgentIdentityInfo',
    'SyncBatch',
    'BatchResult',
    'AgentConfig',
    'SyncConfig',
    'CloudSettings',
    'load_agent_config',
    'load_cloud_settings',
    'CredentialStore',
    'StoredCredentials',
    'Detector',
    'DetectionResult',
    'PosSyncError',
    'ConfigError',
    'CredentialError',
    'DetectionFailure',
    'AuthFailure',
    'NetworkFailure',
    'PayloadError',
    'ProcessingFailure',
    'InvalidTransition',
    'DuplicateAgent',
    'SoftRestaurantRepository',
    'AgentStateStore',
    'AgentStatus',
    'SyncType',
    'SyncEngine',
]
