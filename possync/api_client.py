# API Client - register / heartbeat / sync wire protocol for the possync agent
# Handles auth headers, HTTP retry with linear backoff and typed failures

import hashlib
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import SyncConfig
from .errors import AuthFailure, NetworkFailure, PayloadError, ProcessingFailure
from .logging_config import mask_secret


logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest; the only form of the secret the cloud stores"""
    return hashlib.sha256(secret.encode('utf-8')).hexdigest()


@dataclass
class AgentIdentityInfo:
    """What the agent reports about itself and the detected POS at registration"""
    tenant_id: str
    integration_id: str
    agent_id: str
    agent_version: str = '1.0.0'
    machine_name: Optional[str] = None
    sr_version: Optional[str] = None
    sr_database_name: Optional[str] = None
    sr_sql_instance: Optional[str] = None
    sr_empresa_id: Optional[str] = None


@dataclass
class RegisterResponse:
    success: bool
    status: str
    sync_config: SyncConfig
    message: Optional[str] = None


@dataclass
class SyncBatch:
    sync_type: str
    batch_id: str
    batch_index: int
    batch_total: int
    data: List[Dict[str, Any]] = field(default_factory=list)
    max_position: Optional[int] = None  # highest source id in data (sales only), never sent


@dataclass
class BatchResult:
    success: bool
    sync_type: str
    batch_id: str
    batch_index: int
    status: str = 'completed'
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: int = 0


class ApiClient:
    """REST client for the possync cloud ingestion API"""

    def __init__(self, base_url: str, agent_id: str, auth_secret: str,
                 timeout: int = 30, max_retries: int = 3, retry_delay: float = 2,
                 agent_version: str = '1.0.0', session: requests.Session = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.base_url = base_url.rstrip('/')
        self.agent_id = agent_id
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.session = session or requests.Session()

        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': f'possync-agent/{agent_version}',
            'X-Agent-Id': agent_id,
        })
        self.set_secret(auth_secret)

    def set_secret(self, auth_secret: str):
        """Use a new secret for subsequent requests (token rotation)"""
        self._auth_secret = auth_secret
        self.session.headers['Authorization'] = f'Bearer {auth_secret}'
        logger.debug(f"Using agent secret {mask_secret(auth_secret)} "
                     f"(sha256 {hash_secret(auth_secret)[:12]}…)")

    @staticmethod
    def _error_body(response) -> Dict[str, Any]:
        try:
            body = response.json()
            return body if isinstance(body, dict) else {}
        except ValueError:
            return {}

    def _post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        """
        POST with retry. Returns the final non-retryable response or raises:
        AuthFailure (401/403/409), PayloadError (400), NetworkFailure (retries exhausted).
        A 5xx response that survives every retry is returned to the caller.
        """
        endpoint = f"{self.base_url}{path}"
        body = dict(payload, agent_id=self.agent_id, auth_secret=self._auth_secret)
        last_error = None
        response = None

        for attempt in range(self.max_retries):
            delay = self.retry_delay * (attempt + 1)
            try:
                response = self.session.post(endpoint, json=body, timeout=self.timeout)
            except requests.exceptions.Timeout:
                last_error = 'timeout'
                logger.warning(f"Timeout on {path}, retry {attempt + 1}/{self.max_retries}")
                response = None
            except requests.exceptions.ConnectionError as e:
                last_error = f'connection error: {e}'
                logger.warning(f"Connection error on {path}, retry {attempt + 1}/{self.max_retries}")
                response = None
            except requests.exceptions.RequestException as e:
                raise NetworkFailure(f"Request to {path} failed: {e}") from e
            else:
                status = response.status_code
                if 200 <= status < 300:
                    return response
                if status == 400:
                    info = self._error_body(response)
                    logger.error(f"Bad request on {path}: {info.get('error') or response.text}")
                    raise PayloadError(info.get('error') or f"Bad request on {path}")
                if status in (401, 403, 409):
                    # 409: another agent already owns this tenant/integration
                    info = self._error_body(response)
                    error_code = info.get('errorCode') or AuthFailure.INVALID_CREDENTIALS
                    raise AuthFailure(info.get('error') or 'Authentication failed', error_code)
                if status not in RETRYABLE_STATUS:
                    return response
                last_error = f'HTTP {status}'
                if status == 429:
                    retry_after = response.headers.get('Retry-After')
                    if retry_after and retry_after.isdigit():
                        delay = max(delay, int(retry_after))
                logger.warning(f"Server error {status} on {path}, retry {attempt + 1}/{self.max_retries}")

            if attempt < self.max_retries - 1:
                self.sleep(delay)

        if response is not None and response.status_code >= 500:
            return response
        raise NetworkFailure(f"Max retries exceeded for {path} ({last_error})")

    def register(self, identity: AgentIdentityInfo) -> RegisterResponse:
        payload = asdict(identity)
        payload.pop('agent_id', None)
        response = self._post('/register', payload)
        if response.status_code >= 300:
            raise NetworkFailure(f"Registration failed with HTTP {response.status_code}")
        data = response.json()
        logger.info(f"Registered agent {self.agent_id}: status={data.get('status')}")
        return RegisterResponse(
            success=bool(data.get('success')),
            status=data.get('status', 'registered'),
            sync_config=SyncConfig.from_dict(data.get('sync_config')),
            message=data.get('message'),
        )

    def heartbeat(self, status: str, last_sync_at: Optional[datetime] = None,
                  last_sync_records: Optional[int] = None,
                  error_message: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'status': status}
        if last_sync_at is not None:
            payload['last_sync_at'] = last_sync_at.isoformat()
        if last_sync_records is not None:
            payload['last_sync_records'] = last_sync_records
        if error_message:
            payload['error_message'] = error_message[:1000]
        response = self._post('/heartbeat', payload)
        if response.status_code >= 300:
            raise NetworkFailure(f"Heartbeat failed with HTTP {response.status_code}")
        return response.json()

    def send_batch(self, batch: SyncBatch) -> BatchResult:
        payload = {
            'sync_type': batch.sync_type,
            'batch_id': batch.batch_id,
            'batch_index': batch.batch_index,
            'batch_total': batch.batch_total,
            'data': batch.data,
        }
        response = self._post('/sync', payload)
        if response.status_code >= 300:
            info = self._error_body(response)
            index = info.get('batch_index', batch.batch_index)
            raise ProcessingFailure(
                info.get('error') or f"Batch {index} failed with HTTP {response.status_code}",
                batch_index=index,
                status_code=response.status_code,
            )

        data = response.json()
        result = data.get('result') or {}
        batch_result = BatchResult(
            success=bool(data.get('success')),
            sync_type=data.get('sync_type', batch.sync_type),
            batch_id=data.get('batch_id', batch.batch_id),
            batch_index=data.get('batch_index', batch.batch_index),
            status=data.get('status', 'completed'),
            processed=int(result.get('processed', 0)),
            created=int(result.get('created', 0)),
            updated=int(result.get('updated', 0)),
            skipped=int(result.get('skipped', 0)),
            failed=int(result.get('failed', 0)),
            duration_ms=int(data.get('duration_ms', 0)),
        )
        if not batch_result.success:
            raise ProcessingFailure(
                data.get('error') or f"Batch {batch.batch_index} rejected ({batch_result.status})",
                batch_index=batch.batch_index,
                status_code=response.status_code,
            )
        logger.info(
            f"Batch {batch.batch_index + 1}/{batch.batch_total} ({batch.sync_type}) acknowledged: "
            f"{batch_result.processed} processed, {batch_result.created} created"
        )
        return batch_result

    def check_health(self) -> bool:
        """Check if server is reachable"""
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False
