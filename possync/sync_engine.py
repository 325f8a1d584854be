# Sync Engine - detect, register, full sync, then the interval loop of incremental sync + heartbeat
# One logical task per installation; cancellation is cooperative through a threading.Event.

import logging
import socket
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .api_client import AgentIdentityInfo, ApiClient, SyncBatch
from .config import AgentConfig, SyncConfig
from .credential_store import CredentialStore
from .detector import DetectionResult
from .errors import AuthFailure, DetectionFailure, PosSyncError
from .state_store import AgentStateStore
from .status import AgentStatus, SyncType, can_transition, check_transition
from .transformers import transform_all, transform_sale


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_batches(sync_type: str, records: List[Tuple[Optional[int], Dict[str, Any]]],
                 batch_size: int) -> List[SyncBatch]:
    """
    Chunk (position, record) pairs into fixed-size batches sharing one batch_id.
    batch_index is 0-based; max_position is the highest source id in the chunk.
    """
    if not records:
        return []
    batch_id = str(uuid.uuid4())
    chunks = [records[i:i + batch_size] for i in range(0, len(records), batch_size)]
    batches = []
    for index, chunk in enumerate(chunks):
        positions = [p for p, _ in chunk if p is not None]
        batches.append(SyncBatch(
            sync_type=sync_type,
            batch_id=batch_id,
            batch_index=index,
            batch_total=len(chunks),
            data=[record for _, record in chunk],
            max_position=max(positions) if positions else None,
        ))
    return batches


class SyncEngine:
    """Agent lifecycle: pending -> registered -> connected <-> syncing, error on failure"""

    def __init__(self, config: AgentConfig, detector, repository_factory: Callable,
                 api_client: ApiClient, state_store: AgentStateStore,
                 clock: Callable[[], datetime] = _utcnow,
                 sleep: Optional[Callable[[float], None]] = None,
                 credential_store: Optional[CredentialStore] = None):
        self.config = config
        self.detector = detector
        self.repository_factory = repository_factory
        self.api = api_client
        self.state_store = state_store
        self.clock = clock
        self.sleep = sleep
        self.credential_store = credential_store

        self.status = AgentStatus.PENDING
        self.sync_config: SyncConfig = config.sync
        self.detection: Optional[DetectionResult] = None
        self.repository = None

        self.last_sync_at: Optional[datetime] = None
        self.last_sync_records = 0
        self.last_error: Optional[str] = None
        self.auth_failed = False

        self._needs_register = True
        self._full_sync_done = False
        self._full_sync_failed = False
        self._last_full_sync: Optional[datetime] = None
        self._stop = threading.Event()
        self._sync_lock = threading.Lock()

    # -- lifecycle -------------------------------------------------------

    def run(self, stop_event: Optional[threading.Event] = None):
        """Blocks until stop_event is set. Never exits because of a sync failure."""
        if stop_event is not None:
            self._stop = stop_event
        logger.info(f"Sync engine starting for agent {self.config.agent_id}")
        self._log_downtime()
        try:
            self.detection = self._detect_until_found()
            if self.detection is None:
                return
            self.repository = self.repository_factory(self.detection.connection_string)
            while not self._stop.is_set():
                self._tick()
        finally:
            self._shutdown()

    def stop(self):
        self._stop.set()

    def _wait(self, seconds: float) -> bool:
        """Stop-aware pause. True when a stop was requested."""
        if self.sleep is not None:
            self.sleep(seconds)
            return self._stop.is_set()
        return self._stop.wait(seconds)

    def _set_status(self, target: AgentStatus):
        if target != self.status:
            self.status = check_transition(self.status, target, agent_side=True)
            logger.info(f"Agent status -> {self.status.value}")

    def _log_downtime(self):
        last_sync = self.state_store.load_state('last_sync_at')
        last_shutdown = self.state_store.load_state('last_shutdown')
        if last_sync:
            logger.warning(
                f"Agent restarting; last acknowledged sync at {last_sync}"
                + (f", last clean shutdown at {last_shutdown}" if last_shutdown else " (no clean shutdown recorded)")
            )

    def _detect(self) -> DetectionResult:
        result = self.detector.detect()
        if not result.found:
            raise DetectionFailure(
                f"Soft Restaurant database not found (tried: {', '.join(result.methods_tried) or 'none'})"
            )
        return result

    def _detect_until_found(self) -> Optional[DetectionResult]:
        while not self._stop.is_set():
            try:
                result = self._detect()
            except DetectionFailure as e:
                logger.warning(f"{e}; retrying in {self.config.detection_retry_seconds}s")
            except Exception as e:
                logger.error(f"Detection error: {e}; retrying in {self.config.detection_retry_seconds}s")
            else:
                self.state_store.save_state('detection', {
                    'method': result.method,
                    'instance': result.instance,
                    'database_name': result.database_name,
                    'version': result.version,
                    'empresa_id': result.empresa_id,
                    'detected_at': self.clock().isoformat(),
                })
                logger.info(f"Detected {result.database_name} on {result.instance} via {result.method}")
                return result
            if self._wait(self.config.detection_retry_seconds):
                return None
        return None

    def _tick(self):
        full_sync_pending = False
        try:
            if self._needs_register:
                self._register()
            if not self._full_sync_done or self._full_sync_due():
                if self._full_sync_failed:
                    # a failed full sync waits for the next interval tick
                    if self._wait(self.sync_config.interval_seconds):
                        return
                full_sync_pending = True
                with self._sync_lock:
                    records = self._full_sync()
                full_sync_pending = False
                self._full_sync_failed = False
                self._after_success(records)
            else:
                if self._wait(self.sync_config.interval_seconds):
                    return
                with self._sync_lock:
                    self._set_status(AgentStatus.SYNCING)
                    records = self._incremental_sync()
                    self._set_status(AgentStatus.CONNECTED)
                self._after_success(records)
        except AuthFailure as e:
            self._on_auth_failure(e)
            if not self._wait(self.config.auth_retry_seconds):
                self._reload_credentials()
        except Exception as e:
            self._full_sync_failed = full_sync_pending
            self._on_error(e)
            self._wait(self.config.error_pause_seconds)

    def _shutdown(self):
        if self.status != AgentStatus.PENDING and not self.auth_failed:
            try:
                self.api.heartbeat(AgentStatus.OFFLINE.value,
                                   last_sync_at=self.last_sync_at,
                                   last_sync_records=self.last_sync_records)
            except Exception as e:
                logger.warning(f"Final offline heartbeat failed: {e}")
        self.state_store.save_state('last_shutdown', self.clock().isoformat())
        logger.info("Sync engine stopped")

    # -- registration / failures ----------------------------------------

    def _register(self):
        detection = self.detection or DetectionResult()
        identity = AgentIdentityInfo(
            tenant_id=self.config.tenant_id,
            integration_id=self.config.integration_id,
            agent_id=self.config.agent_id,
            agent_version=self.config.agent_version,
            machine_name=socket.gethostname(),
            sr_version=detection.version,
            sr_database_name=detection.database_name,
            sr_sql_instance=detection.instance,
            sr_empresa_id=detection.empresa_id,
        )
        response = self.api.register(identity)
        self.sync_config = response.sync_config
        self.state_store.save_state('sync_config', self.sync_config.to_dict())
        self._needs_register = False
        if self.auth_failed:
            logger.info("Credentials accepted again")
        self.auth_failed = False
        self.state_store.save_state('auth_failed', False)
        self._set_status(AgentStatus.REGISTERED)

    def _enter_error(self):
        if can_transition(self.status, AgentStatus.ERROR, agent_side=True):
            self._set_status(AgentStatus.ERROR)

    def _on_error(self, error: Exception):
        message = str(error) or error.__class__.__name__
        self.last_error = message
        count = self.state_store.record_error(message)
        logger.error(f"Sync cycle failed ({count} consecutive): {message}")
        self._enter_error()
        if self.status == AgentStatus.PENDING:
            return
        try:
            self.api.heartbeat(AgentStatus.ERROR.value, error_message=message)
        except Exception as e:
            logger.warning(f"Error heartbeat not delivered: {e}")

    def _on_auth_failure(self, error: AuthFailure):
        message = f"Authentication rejected ({error.error_code}): {error}"
        self.last_error = message
        self.auth_failed = True
        self._needs_register = True
        self.state_store.save_state('auth_failed', True)
        self.state_store.record_error(message)
        self._enter_error()
        logger.critical(
            f"{message}. Regenerate the agent credentials; next attempt in "
            f"{self.config.auth_retry_seconds}s"
        )

    def _reload_credentials(self):
        if self.credential_store is None:
            return
        try:
            creds = self.credential_store.retrieve()
        except PosSyncError as e:
            logger.error(f"Could not re-read credentials: {e}")
            return
        if creds is not None and creds.auth_secret:
            self.api.set_secret(creds.auth_secret)

    def _after_success(self, records: int):
        self.last_sync_at = self.clock()
        self.last_sync_records = records
        self.last_error = None
        self.state_store.reset_errors()
        self.state_store.save_state('last_sync_at', self.last_sync_at.isoformat())
        self.api.heartbeat(AgentStatus.CONNECTED.value,
                           last_sync_at=self.last_sync_at,
                           last_sync_records=records)

    # -- sync operations -------------------------------------------------

    def _full_sync_due(self) -> bool:
        minutes = self.config.full_sync_interval_minutes
        if minutes <= 0 or self._last_full_sync is None:
            return False
        return self.clock() - self._last_full_sync >= timedelta(minutes=minutes)

    def _full_sync(self) -> int:
        """Snapshots (menu, inventory, tables as enabled) then an initial bounded batch of sales"""
        logger.info("Starting full sync")
        self._set_status(AgentStatus.SYNCING)
        total = 0
        if self.sync_config.sync_menu:
            total += self._sync_snapshot(SyncType.MENU.value)
        if self.sync_config.sync_inventory:
            total += self._sync_snapshot(SyncType.INVENTORY.value)
        if self.sync_config.sync_tables:
            total += self._sync_snapshot(SyncType.TABLES.value)
        if self.sync_config.sync_sales and not self._full_sync_done:
            total += self._sync_sales(self.config.initial_sales_limit, initial=True)
        self._full_sync_done = True
        self._last_full_sync = self.clock()
        self._set_status(AgentStatus.CONNECTED)
        logger.info(f"Full sync complete: {total} records")
        return total

    def _incremental_sync(self) -> int:
        if not self.sync_config.sync_sales:
            return 0
        return self._sync_sales(self.config.max_records_per_query)

    def _read_snapshot(self, sync_type: str, changed_only: bool = False) -> Iterable:
        if sync_type == SyncType.MENU.value:
            since = self.state_store.load_state('last_menu_sync') if changed_only else None
            if since:
                return self.repository.get_modified_products(datetime.fromisoformat(since))
            return self.repository.get_all_products()
        if sync_type == SyncType.INVENTORY.value:
            return self.repository.get_all_inventory()
        if sync_type == SyncType.TABLES.value:
            return self.repository.get_all_tables()
        raise ValueError(f"Not a snapshot sync type: {sync_type}")

    def _sync_snapshot(self, sync_type: str, changed_only: bool = False) -> int:
        started = self.clock()
        native = self._read_snapshot(sync_type, changed_only)
        records = [(None, r) for r in transform_all(sync_type, native, self.config.currency)]
        sent = self._send_batches(sync_type, make_batches(sync_type, records, self.config.batch_size))
        if sync_type == SyncType.MENU.value:
            self.state_store.save_state('last_menu_sync', started.replace(tzinfo=None).isoformat())
        return sent

    def _sync_sales(self, limit: int, initial: bool = False) -> int:
        """Send sales past the acknowledged cursor until a short page is read"""
        total = 0
        after_id = self.state_store.get_cursor(SyncType.SALES.value)
        if initial and after_id == 0:
            # first run: only the most recent sales, not the whole history
            after_id = max(0, self.repository.get_max_sale_id() - limit)
        while not self._stop.is_set():
            sales = self.repository.get_new_sales(after_id, limit)
            if not sales:
                break
            records = [(s.id_venta, transform_sale(s, self.config.currency)) for s in sales]
            total += self._send_batches(SyncType.SALES.value,
                                        make_batches(SyncType.SALES.value, records, self.config.batch_size))
            after_id = self.state_store.get_cursor(SyncType.SALES.value)
            if initial or len(sales) < limit:
                break
        return total

    def _send_batches(self, sync_type: str, batches: List[SyncBatch]) -> int:
        """
        Send batches in order. The first failure aborts the rest of the cycle;
        the cursor only moves past acknowledged batches.
        """
        if not batches:
            return 0
        started = self.clock()
        batch_id = batches[0].batch_id
        total = batches[0].batch_total
        sent = 0
        records = 0
        try:
            for batch in batches:
                if self._stop.is_set():
                    break
                self.api.send_batch(batch)
                sent += 1
                records += len(batch.data)
                if batch.max_position is not None:
                    self.state_store.advance_cursor(sync_type, batch.max_position)
        except Exception as e:
            self.state_store.record_cycle(
                sync_type, 'failed', batch_id, sent, total, records,
                error=str(e), started_at=started, completed_at=self.clock(),
            )
            logger.error(f"{sync_type} sync stopped at batch {sent + 1}/{total}: {e}")
            raise
        status = 'completed' if sent == total else 'partial'
        self.state_store.record_cycle(
            sync_type, status, batch_id, sent, total, records,
            started_at=started, completed_at=self.clock(),
        )
        return records

    def sync_now(self, sync_type: str, changed_only: bool = False) -> int:
        """On-demand resync of one sync type; waits for any in-flight cycle"""
        sync_type = SyncType(sync_type).value
        if self.repository is None:
            raise DetectionFailure("POS database not detected yet")
        try:
            with self._sync_lock:
                if sync_type == SyncType.SALES.value:
                    return self._sync_sales(self.config.max_records_per_query)
                return self._sync_snapshot(sync_type, changed_only)
        except AuthFailure as e:
            self._on_auth_failure(e)
            raise
        except Exception as e:
            self._on_error(e)
            raise

    def get_statistics(self) -> Dict[str, Any]:
        detection = self.detection
        return {
            'agent_id': self.config.agent_id,
            'status': self.status.value,
            'auth_failed': self.auth_failed,
            'detection': {
                'method': detection.method,
                'instance': detection.instance,
                'database_name': detection.database_name,
                'version': detection.version,
            } if detection else None,
            'sync_config': self.sync_config.to_dict(),
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'last_sync_records': self.last_sync_records,
            'last_error': self.last_error,
            'state': self.state_store.get_stats(),
        }
