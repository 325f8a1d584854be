# Cloud Store - SQLite persistence for agent instances, sync logs and ingested POS records
# Thread-safe: every operation opens its own connection under the store lock.

import json
import sqlite3
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .cloud_auth import generate_agent_id, generate_secret
from .api_client import hash_secret
from .config import SyncConfig
from .errors import DuplicateAgent, PosSyncError
from .status import CACHED_LOG_STATUSES, AgentStatus, SyncLogStatus, check_transition


logger = logging.getLogger(__name__)

TS_FORMAT = '%Y-%m-%dT%H:%M:%S.%fZ'

# A processing entry older than this is treated as abandoned
STALE_PROCESSING_SECONDS = 300


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC text so timestamps compare correctly as strings"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


class _SQLiteStore:
    def __init__(self, db_path: str, clock: Callable[[], datetime] = _utcnow):
        self.db_path = db_path
        self.clock = clock
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Agent instances
# ---------------------------------------------------------------------------

@dataclass
class AgentInstance:
    id: int
    agent_id: str
    tenant_id: str
    integration_id: str
    status: str
    auth_token_hash: str
    branch_id: Optional[str] = None
    store_code: Optional[str] = None
    agent_version: Optional[str] = None
    machine_name: Optional[str] = None
    sr_version: Optional[str] = None
    sr_database_name: Optional[str] = None
    sr_sql_instance: Optional[str] = None
    sr_empresa_id: Optional[str] = None
    sync_sales: bool = True
    sync_menu: bool = True
    sync_inventory: bool = True
    sync_tables: bool = False
    sync_interval_seconds: int = 300
    total_records_synced: int = 0
    last_sync_at: Optional[datetime] = None
    last_sync_records: int = 0
    last_heartbeat_at: Optional[datetime] = None
    consecutive_errors: int = 0
    last_error_message: Optional[str] = None
    last_error_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    _TIMESTAMPS = ('last_sync_at', 'last_heartbeat_at', 'last_error_at',
                   'token_expires_at', 'created_at', 'updated_at', 'deleted_at')
    _FLAGS = ('sync_sales', 'sync_menu', 'sync_inventory', 'sync_tables')

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'AgentInstance':
        data = dict(row)
        for name in cls._TIMESTAMPS:
            data[name] = from_ts(data.get(name))
        for name in cls._FLAGS:
            data[name] = bool(data.get(name))
        return cls(**data)

    @property
    def sync_config(self) -> SyncConfig:
        return SyncConfig(
            interval_seconds=self.sync_interval_seconds,
            sync_sales=self.sync_sales,
            sync_menu=self.sync_menu,
            sync_inventory=self.sync_inventory,
            sync_tables=self.sync_tables,
        )


class AgentInstanceStore(_SQLiteStore):
    """One durable record per (tenant, integration); the secret is kept only as its hash"""

    def _init_db(self):
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS agent_instances (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT UNIQUE NOT NULL,
                    tenant_id TEXT NOT NULL,
                    integration_id TEXT NOT NULL,
                    branch_id TEXT,
                    store_code TEXT,
                    agent_version TEXT,
                    machine_name TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    sr_version TEXT,
                    sr_database_name TEXT,
                    sr_sql_instance TEXT,
                    sr_empresa_id TEXT,
                    sync_sales INTEGER NOT NULL DEFAULT 1,
                    sync_menu INTEGER NOT NULL DEFAULT 1,
                    sync_inventory INTEGER NOT NULL DEFAULT 1,
                    sync_tables INTEGER NOT NULL DEFAULT 0,
                    sync_interval_seconds INTEGER NOT NULL DEFAULT 300,
                    total_records_synced INTEGER NOT NULL DEFAULT 0,
                    last_sync_at TEXT,
                    last_sync_records INTEGER NOT NULL DEFAULT 0,
                    last_heartbeat_at TEXT,
                    consecutive_errors INTEGER NOT NULL DEFAULT 0,
                    last_error_message TEXT,
                    last_error_at TEXT,
                    auth_token_hash TEXT NOT NULL,
                    token_expires_at TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    deleted_at TEXT
                )
            ''')
            # At most one live agent per tenant/integration
            cursor.execute('''
                CREATE UNIQUE INDEX IF NOT EXISTS idx_agent_integration
                ON agent_instances(tenant_id, integration_id)
                WHERE deleted_at IS NULL
            ''')
            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_agent_heartbeat
                ON agent_instances(status, last_heartbeat_at)
            ''')
            conn.commit()
            conn.close()

    def _fetch_one(self, sql: str, params: tuple) -> Optional[AgentInstance]:
        with self.lock:
            conn = self._connect()
            row = conn.execute(sql, params).fetchone()
            conn.close()
        return AgentInstance.from_row(row) if row else None

    def _update(self, sql: str, params: tuple) -> bool:
        with self.lock:
            conn = self._connect()
            cursor = conn.execute(sql, params)
            conn.commit()
            changed = cursor.rowcount
            conn.close()
        return changed > 0

    def create_agent(self, tenant_id: str, integration_id: str, branch_id: str = None,
                     store_code: str = None, sync_config: SyncConfig = None,
                     token_ttl_days: int = 30, agent_id: str = None,
                     secret: str = None) -> Tuple[AgentInstance, str]:
        """
        Create a pending agent and its credential. Returns (instance, raw_secret);
        the raw secret is not recoverable afterwards.
        Raises DuplicateAgent if a live agent already exists for the integration.
        """
        sync_config = sync_config or SyncConfig()
        agent_id = agent_id or generate_agent_id()
        secret = secret or generate_secret()
        now = self.clock()
        expires = now + timedelta(days=token_ttl_days)

        with self.lock:
            conn = self._connect()
            try:
                conn.execute('''
                    INSERT INTO agent_instances
                    (agent_id, tenant_id, integration_id, branch_id, store_code, status,
                     sync_sales, sync_menu, sync_inventory, sync_tables, sync_interval_seconds,
                     auth_token_hash, token_expires_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (agent_id, tenant_id, integration_id, branch_id, store_code,
                      AgentStatus.PENDING.value,
                      int(sync_config.sync_sales), int(sync_config.sync_menu),
                      int(sync_config.sync_inventory), int(sync_config.sync_tables),
                      sync_config.interval_seconds, hash_secret(secret),
                      to_ts(expires), to_ts(now), to_ts(now)))
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise DuplicateAgent(
                    f"An agent already exists for tenant {tenant_id} / integration {integration_id}"
                ) from e
            finally:
                conn.close()

        logger.info(f"Created agent {agent_id} for tenant {tenant_id} integration {integration_id}")
        return self.get(agent_id), secret

    def get(self, agent_id: str, include_deleted: bool = False) -> Optional[AgentInstance]:
        if include_deleted:
            return self._fetch_one('SELECT * FROM agent_instances WHERE agent_id = ?', (agent_id,))
        return self._fetch_one(
            'SELECT * FROM agent_instances WHERE agent_id = ? AND deleted_at IS NULL', (agent_id,)
        )

    def get_for_integration(self, tenant_id: str, integration_id: str) -> Optional[AgentInstance]:
        return self._fetch_one('''
            SELECT * FROM agent_instances
            WHERE tenant_id = ? AND integration_id = ? AND deleted_at IS NULL
        ''', (tenant_id, integration_id))

    def list_for_tenant(self, tenant_id: str) -> List[AgentInstance]:
        with self.lock:
            conn = self._connect()
            rows = conn.execute('''
                SELECT * FROM agent_instances
                WHERE tenant_id = ? AND deleted_at IS NULL
                ORDER BY created_at DESC
            ''', (tenant_id,)).fetchall()
            conn.close()
        return [AgentInstance.from_row(row) for row in rows]

    def _transition(self, agent_id: str, target: AgentStatus) -> AgentInstance:
        instance = self.get(agent_id)
        if instance is None:
            raise PosSyncError(f"Agent {agent_id} not found")
        check_transition(instance.status, target)
        return instance

    def register(self, agent_id: str, agent_version: str = None, machine_name: str = None,
                 sr_version: str = None, sr_database_name: str = None,
                 sr_sql_instance: str = None, sr_empresa_id: str = None) -> AgentInstance:
        """Record what the agent detected and move it to registered"""
        self._transition(agent_id, AgentStatus.REGISTERED)
        now = to_ts(self.clock())
        self._update('''
            UPDATE agent_instances SET
                status = ?, agent_version = ?, machine_name = ?,
                sr_version = ?, sr_database_name = ?, sr_sql_instance = ?, sr_empresa_id = ?,
                last_heartbeat_at = ?, consecutive_errors = 0, updated_at = ?
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (AgentStatus.REGISTERED.value, agent_version, machine_name,
              sr_version, sr_database_name, sr_sql_instance, sr_empresa_id,
              now, now, agent_id))
        logger.info(f"Agent {agent_id} registered (SR {sr_version} on {sr_sql_instance})")
        return self.get(agent_id)

    def record_heartbeat(self, agent_id: str, status: str, last_sync_at: datetime = None,
                         last_sync_records: int = None, error_message: str = None) -> AgentInstance:
        """
        Apply a heartbeat in one UPDATE. An error heartbeat increments
        consecutive_errors in place; a connected one clears it.
        """
        target = AgentStatus(status)
        self._transition(agent_id, target)
        now = to_ts(self.clock())
        is_error = 1 if target == AgentStatus.ERROR else 0
        is_ok = 1 if target == AgentStatus.CONNECTED else 0
        self._update('''
            UPDATE agent_instances SET
                status = ?,
                last_heartbeat_at = ?,
                updated_at = ?,
                consecutive_errors = CASE
                    WHEN ? = 1 THEN consecutive_errors + 1
                    WHEN ? = 1 THEN 0
                    ELSE consecutive_errors END,
                last_error_message = CASE WHEN ? = 1 THEN ? ELSE last_error_message END,
                last_error_at = CASE WHEN ? = 1 THEN ? ELSE last_error_at END,
                last_sync_at = COALESCE(?, last_sync_at),
                last_sync_records = COALESCE(?, last_sync_records)
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (target.value, now, now, is_error, is_ok,
              is_error, (error_message or 'Agent reported an error')[:1000],
              is_error, now,
              to_ts(last_sync_at), last_sync_records, agent_id))
        return self.get(agent_id)

    def add_sync_totals(self, agent_id: str, records: int) -> bool:
        now = to_ts(self.clock())
        return self._update('''
            UPDATE agent_instances SET
                total_records_synced = total_records_synced + ?,
                last_sync_records = ?,
                last_sync_at = ?,
                consecutive_errors = 0,
                updated_at = ?
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (records, records, now, now, agent_id))

    def record_error(self, agent_id: str, message: str) -> bool:
        now = to_ts(self.clock())
        return self._update('''
            UPDATE agent_instances SET
                consecutive_errors = consecutive_errors + 1,
                last_error_message = ?,
                last_error_at = ?,
                updated_at = ?
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (message[:1000], now, now, agent_id))

    def update_config(self, agent_id: str, sync_config: SyncConfig) -> AgentInstance:
        self._update('''
            UPDATE agent_instances SET
                sync_sales = ?, sync_menu = ?, sync_inventory = ?, sync_tables = ?,
                sync_interval_seconds = ?, updated_at = ?
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (int(sync_config.sync_sales), int(sync_config.sync_menu),
              int(sync_config.sync_inventory), int(sync_config.sync_tables),
              sync_config.interval_seconds, to_ts(self.clock()), agent_id))
        return self.get(agent_id)

    def regenerate_token(self, agent_id: str, token_ttl_days: int = 30) -> str:
        """Issue a new secret; the old one stops working immediately"""
        secret = generate_secret()
        now = self.clock()
        changed = self._update('''
            UPDATE agent_instances SET
                auth_token_hash = ?, token_expires_at = ?, consecutive_errors = 0,
                last_error_message = NULL, updated_at = ?
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (hash_secret(secret), to_ts(now + timedelta(days=token_ttl_days)), to_ts(now), agent_id))
        if not changed:
            raise PosSyncError(f"Agent {agent_id} not found")
        logger.info(f"Regenerated credentials for agent {agent_id}")
        return secret

    def delete(self, agent_id: str) -> bool:
        """Soft delete; the agent_id is never reused"""
        now = to_ts(self.clock())
        return self._update('''
            UPDATE agent_instances SET deleted_at = ?, status = ?, updated_at = ?
            WHERE agent_id = ? AND deleted_at IS NULL
        ''', (now, AgentStatus.OFFLINE.value, now, agent_id))

    def mark_offline(self, cutoff: datetime) -> int:
        """connected/syncing agents whose last heartbeat is older than cutoff become offline"""
        with self.lock:
            conn = self._connect()
            cursor = conn.execute('''
                UPDATE agent_instances SET status = ?, updated_at = ?
                WHERE status IN (?, ?)
                AND deleted_at IS NULL
                AND last_heartbeat_at IS NOT NULL
                AND last_heartbeat_at < ?
            ''', (AgentStatus.OFFLINE.value, to_ts(self.clock()),
                  AgentStatus.CONNECTED.value, AgentStatus.SYNCING.value, to_ts(cutoff)))
            conn.commit()
            count = cursor.rowcount
            conn.close()
        return count

    def get_stats(self, tenant_id: str = None) -> Dict:
        where = 'WHERE deleted_at IS NULL' + (' AND tenant_id = ?' if tenant_id else '')
        params = (tenant_id,) if tenant_id else ()
        with self.lock:
            conn = self._connect()
            stats = {'by_status': {}}
            for row in conn.execute(
                f'SELECT status, COUNT(*) AS n FROM agent_instances {where} GROUP BY status', params
            ):
                stats['by_status'][row['status']] = row['n']
            row = conn.execute(
                f'SELECT COUNT(*) AS n, COALESCE(SUM(total_records_synced), 0) AS total '
                f'FROM agent_instances {where}', params
            ).fetchone()
            stats['total_agents'] = row['n']
            stats['total_records_synced'] = row['total']
            conn.close()
        return stats


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------

@dataclass
class SyncLogEntry:
    id: int
    agent_id: str
    tenant_id: str
    sync_type: str
    batch_id: str
    batch_index: int
    batch_total: int
    status: str
    records_received: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    payload_size_bytes: int = 0
    result: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> 'SyncLogEntry':
        data = dict(row)
        data['started_at'] = from_ts(data.get('started_at'))
        data['completed_at'] = from_ts(data.get('completed_at'))
        data['result'] = json.loads(data['result']) if data.get('result') else None
        return cls(**data)

    @property
    def is_cached(self) -> bool:
        """completed/partial outcomes are replayed, never re-applied"""
        return SyncLogStatus(self.status) in CACHED_LOG_STATUSES


class SyncLogStore(_SQLiteStore):
    """Audit record per (agent_id, batch_id, batch_index); a completed/partial entry is never changed"""

    def __init__(self, db_path: str, clock: Callable[[], datetime] = _utcnow,
                 stale_after_seconds: int = STALE_PROCESSING_SECONDS):
        self.stale_after_seconds = stale_after_seconds
        super().__init__(db_path, clock)

    def _init_db(self):
        with self.lock:
            conn = self._connect()
            conn.execute('''
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT NOT NULL,
                    tenant_id TEXT NOT NULL,
                    sync_type TEXT NOT NULL,
                    batch_id TEXT NOT NULL,
                    batch_index INTEGER NOT NULL,
                    batch_total INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    records_received INTEGER DEFAULT 0,
                    records_processed INTEGER DEFAULT 0,
                    records_created INTEGER DEFAULT 0,
                    records_updated INTEGER DEFAULT 0,
                    records_skipped INTEGER DEFAULT 0,
                    records_failed INTEGER DEFAULT 0,
                    started_at TEXT,
                    completed_at TEXT,
                    duration_ms INTEGER,
                    error_message TEXT,
                    payload_size_bytes INTEGER DEFAULT 0,
                    result TEXT,
                    UNIQUE(agent_id, batch_id, batch_index)
                )
            ''')
            conn.execute('CREATE INDEX IF NOT EXISTS idx_sync_logs_agent ON sync_logs(agent_id, id)')
            conn.commit()
            conn.close()

    def start(self, agent_id: str, tenant_id: str, sync_type: str, batch_id: str,
              batch_index: int, batch_total: int, records_received: int,
              payload_size_bytes: int = 0) -> Tuple[SyncLogEntry, bool]:
        """Insert-or-get on the idempotency key. Returns (entry, created)."""
        with self.lock:
            conn = self._connect()
            cursor = conn.execute('''
                INSERT OR IGNORE INTO sync_logs
                (agent_id, tenant_id, sync_type, batch_id, batch_index, batch_total, status,
                 records_received, started_at, payload_size_bytes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (agent_id, tenant_id, sync_type, batch_id, batch_index, batch_total,
                  SyncLogStatus.STARTED.value, records_received, to_ts(self.clock()),
                  payload_size_bytes))
            created = cursor.rowcount > 0
            row = conn.execute('''
                SELECT * FROM sync_logs WHERE agent_id = ? AND batch_id = ? AND batch_index = ?
            ''', (agent_id, batch_id, batch_index)).fetchone()
            conn.commit()
            conn.close()
        return SyncLogEntry.from_row(row), created

    def mark_processing(self, log_id: int) -> bool:
        """started, failed on re-delivery, or abandoned processing -> processing"""
        now = self.clock()
        stale_cutoff = now - timedelta(seconds=self.stale_after_seconds)
        with self.lock:
            conn = self._connect()
            cursor = conn.execute('''
                UPDATE sync_logs SET status = ?, started_at = ?, error_message = NULL
                WHERE id = ? AND (status IN (?, ?) OR (status = ? AND started_at < ?))
            ''', (SyncLogStatus.PROCESSING.value, to_ts(now), log_id,
                  SyncLogStatus.STARTED.value, SyncLogStatus.FAILED.value,
                  SyncLogStatus.PROCESSING.value, to_ts(stale_cutoff)))
            conn.commit()
            changed = cursor.rowcount
            conn.close()
        return changed > 0

    def finalize(self, log_id: int, status: str, processed: int = 0, created: int = 0,
                 updated: int = 0, skipped: int = 0, failed: int = 0,
                 error_message: str = None, result: Dict[str, Any] = None) -> bool:
        """Write the outcome once. False when the entry was already finalized."""
        status = SyncLogStatus(status)
        now = self.clock()
        with self.lock:
            conn = self._connect()
            row = conn.execute('SELECT started_at FROM sync_logs WHERE id = ?', (log_id,)).fetchone()
            started = from_ts(row['started_at']) if row else None
            duration_ms = int((now - started).total_seconds() * 1000) if started else None
            cursor = conn.execute('''
                UPDATE sync_logs SET
                    status = ?, records_processed = ?, records_created = ?, records_updated = ?,
                    records_skipped = ?, records_failed = ?, completed_at = ?, duration_ms = ?,
                    error_message = ?, result = ?
                WHERE id = ? AND status IN (?, ?)
            ''', (status.value, processed, created, updated, skipped, failed,
                  to_ts(now), duration_ms, error_message,
                  json.dumps(result) if result is not None else None,
                  log_id, SyncLogStatus.STARTED.value, SyncLogStatus.PROCESSING.value))
            conn.commit()
            changed = cursor.rowcount
            conn.close()
        return changed > 0

    def get(self, log_id: int) -> Optional[SyncLogEntry]:
        with self.lock:
            conn = self._connect()
            row = conn.execute('SELECT * FROM sync_logs WHERE id = ?', (log_id,)).fetchone()
            conn.close()
        return SyncLogEntry.from_row(row) if row else None

    def get_by_key(self, agent_id: str, batch_id: str, batch_index: int) -> Optional[SyncLogEntry]:
        with self.lock:
            conn = self._connect()
            row = conn.execute('''
                SELECT * FROM sync_logs WHERE agent_id = ? AND batch_id = ? AND batch_index = ?
            ''', (agent_id, batch_id, batch_index)).fetchone()
            conn.close()
        return SyncLogEntry.from_row(row) if row else None

    def list_for_agent(self, agent_id: str, limit: int = 50) -> List[SyncLogEntry]:
        with self.lock:
            conn = self._connect()
            rows = conn.execute('''
                SELECT * FROM sync_logs WHERE agent_id = ? ORDER BY id DESC LIMIT ?
            ''', (agent_id, limit)).fetchall()
            conn.close()
        return [SyncLogEntry.from_row(row) for row in rows]


# ---------------------------------------------------------------------------
# Ingested records
# ---------------------------------------------------------------------------

@dataclass
class ApplyResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, int]:
        return {
            'processed': self.processed,
            'created': self.created,
            'updated': self.updated,
            'skipped': self.skipped,
            'failed': self.failed,
        }


RECORD_TABLES = ('sales', 'sale_items', 'payments', 'menu_items', 'inventory_items',
                 'restaurant_tables')


class RecordStore(_SQLiteStore):
    """Canonical POS records keyed by their natural keys"""

    def _init_db(self):
        with self.lock:
            conn = self._connect()
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS sales (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    branch_id TEXT NOT NULL DEFAULT '',
                    integration_id TEXT,
                    agent_id TEXT,
                    receipt_number TEXT NOT NULL,
                    external_id TEXT,
                    order_number TEXT,
                    location_code TEXT,
                    opened_at TEXT,
                    closed_at TEXT,
                    table_number TEXT,
                    customer_id TEXT,
                    server_id TEXT,
                    subtotal REAL DEFAULT 0,
                    tax_total REAL DEFAULT 0,
                    discount_total REAL DEFAULT 0,
                    tip_total REAL DEFAULT 0,
                    grand_total REAL DEFAULT 0,
                    currency TEXT,
                    status TEXT,
                    order_type TEXT,
                    guest_count INTEGER DEFAULT 1,
                    raw_payload TEXT,
                    synced_at TEXT,
                    UNIQUE(tenant_id, branch_id, receipt_number)
                );

                CREATE TABLE IF NOT EXISTS sale_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sale_id INTEGER NOT NULL REFERENCES sales(id),
                    tenant_id TEXT NOT NULL,
                    product_code TEXT,
                    product_name TEXT,
                    quantity REAL DEFAULT 1,
                    unit_price REAL DEFAULT 0,
                    line_total REAL DEFAULT 0,
                    discount REAL DEFAULT 0,
                    tax REAL DEFAULT 0,
                    modifiers TEXT,
                    notes TEXT,
                    is_voided INTEGER DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS payments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sale_id INTEGER NOT NULL REFERENCES sales(id),
                    tenant_id TEXT NOT NULL,
                    method TEXT,
                    method_name TEXT,
                    amount REAL DEFAULT 0,
                    tip REAL DEFAULT 0,
                    currency TEXT,
                    reference TEXT,
                    last_four_digits TEXT
                );

                CREATE TABLE IF NOT EXISTS menu_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    integration_id TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    code TEXT,
                    name TEXT,
                    price REAL DEFAULT 0,
                    category TEXT,
                    is_available INTEGER DEFAULT 1,
                    raw_data TEXT,
                    last_synced_at TEXT,
                    UNIQUE(tenant_id, integration_id, external_id)
                );

                CREATE TABLE IF NOT EXISTS inventory_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    integration_id TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    code TEXT,
                    name TEXT,
                    unit TEXT,
                    current_stock REAL DEFAULT 0,
                    min_stock REAL DEFAULT 0,
                    is_low_stock INTEGER DEFAULT 0,
                    average_cost REAL,
                    stock_value REAL,
                    raw_data TEXT,
                    last_synced_at TEXT,
                    UNIQUE(tenant_id, integration_id, external_id)
                );

                CREATE TABLE IF NOT EXISTS restaurant_tables (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    branch_id TEXT NOT NULL DEFAULT '',
                    table_number TEXT NOT NULL,
                    name TEXT,
                    capacity INTEGER DEFAULT 4,
                    status TEXT,
                    section TEXT,
                    raw_data TEXT,
                    last_synced_at TEXT,
                    UNIQUE(tenant_id, branch_id, table_number)
                );
            ''')
            conn.commit()
            conn.close()

    @contextmanager
    def batch(self):
        """One transaction per batch; callers use SAVEPOINTs per record"""
        with self.lock:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute('BEGIN')
            try:
                yield conn
            except BaseException:
                conn.execute('ROLLBACK')
                raise
            else:
                conn.execute('COMMIT')
            finally:
                conn.close()

    def now(self) -> str:
        return to_ts(self.clock())

    def count(self, table: str, tenant_id: str = None) -> int:
        if table not in RECORD_TABLES:
            raise ValueError(f"Unknown record table: {table}")
        with self.lock:
            conn = self._connect()
            if tenant_id:
                row = conn.execute(f'SELECT COUNT(*) FROM {table} WHERE tenant_id = ?', (tenant_id,)).fetchone()
            else:
                row = conn.execute(f'SELECT COUNT(*) FROM {table}').fetchone()
            conn.close()
        return int(row[0])

    def get_sale(self, tenant_id: str, receipt_number: str, branch_id: str = '') -> Optional[Dict]:
        with self.lock:
            conn = self._connect()
            row = conn.execute('''
                SELECT * FROM sales WHERE tenant_id = ? AND branch_id = ? AND receipt_number = ?
            ''', (tenant_id, branch_id or '', receipt_number)).fetchone()
            conn.close()
        return dict(row) if row else None
