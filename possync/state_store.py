# Agent State Store - SQLite storage for the on-prem agent
# Holds the acknowledged read cursors, key/value state and local sync history

import sqlite3
import json
import logging
import threading
from datetime import datetime
from typing import List, Optional, Dict, Any


logger = logging.getLogger(__name__)


class AgentStateStore:
    """SQLite-backed cursor and state storage for one agent installation"""

    DB_PATH = "possync_agent.db"
    HISTORY_LIMIT = 1000

    def __init__(self, db_path: str = None):
        self.db_path = db_path or self.DB_PATH
        self.lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        """Initialize database schema"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            # One high-water mark per sync type, only moved forward
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS cursors (
                    sync_type TEXT PRIMARY KEY,
                    position INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS sync_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sync_type TEXT NOT NULL,
                    batch_id TEXT,
                    batches_sent INTEGER DEFAULT 0,
                    batch_total INTEGER DEFAULT 0,
                    records_sent INTEGER DEFAULT 0,
                    status TEXT NOT NULL,
                    error TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    duration_ms INTEGER
                )
            ''')

            conn.commit()
            conn.close()

    def get_cursor(self, sync_type: str) -> int:
        """Highest acknowledged source id for sync_type (0 when never synced)"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('SELECT position FROM cursors WHERE sync_type = ?', (sync_type,))
            row = cursor.fetchone()
            conn.close()
            return int(row[0]) if row else 0

    def advance_cursor(self, sync_type: str, position: int) -> int:
        """
        Move the cursor forward to position. Lower or equal values are ignored.
        Returns the cursor value after the call.
        """
        position = int(position)
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO cursors (sync_type, position, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(sync_type) DO UPDATE SET
                    position = excluded.position,
                    updated_at = excluded.updated_at
                WHERE excluded.position > cursors.position
            ''', (sync_type, position, datetime.now().isoformat()))
            cursor.execute('SELECT position FROM cursors WHERE sync_type = ?', (sync_type,))
            current = int(cursor.fetchone()[0])
            conn.commit()
            conn.close()

        if current != position:
            logger.debug(f"Ignored cursor move for {sync_type}: {position} <= {current}")
        return current

    def save_state(self, key: str, value: Any):
        """Save state key-value"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute('''
                INSERT OR REPLACE INTO state (key, value, updated_at)
                VALUES (?, ?, ?)
            ''', (key, json.dumps(value), datetime.now().isoformat()))

            conn.commit()
            conn.close()

    def load_state(self, key: str, default: Any = None) -> Any:
        """Load state value"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute('SELECT value FROM state WHERE key = ?', (key,))
            row = cursor.fetchone()
            conn.close()

            if row:
                try:
                    return json.loads(row[0])
                except (TypeError, ValueError):
                    return row[0]
            return default

    def record_cycle(self, sync_type: str, status: str, batch_id: str = None,
                     batches_sent: int = 0, batch_total: int = 0, records_sent: int = 0,
                     error: str = None, started_at: datetime = None,
                     completed_at: datetime = None) -> int:
        """Append one sync cycle to the local history and trim old rows"""
        completed_at = completed_at or datetime.now()
        started_at = started_at or completed_at
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            cursor.execute('''
                INSERT INTO sync_history
                (sync_type, batch_id, batches_sent, batch_total, records_sent, status,
                 error, started_at, completed_at, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (sync_type, batch_id, batches_sent, batch_total, records_sent, status,
                  error, started_at.isoformat(), completed_at.isoformat(), duration_ms))
            row_id = cursor.lastrowid
            cursor.execute('''
                DELETE FROM sync_history WHERE id <= ?
            ''', (row_id - self.HISTORY_LIMIT,))

            conn.commit()
            conn.close()
            return row_id

    def get_history(self, sync_type: str = None, limit: int = 50) -> List[Dict]:
        """Most recent sync cycles, newest first"""
        with self.lock:
            conn = self._connect()
            conn.row_factory = sqlite3.Row
            cursor = conn.cursor()

            if sync_type:
                cursor.execute('''
                    SELECT * FROM sync_history WHERE sync_type = ?
                    ORDER BY id DESC LIMIT ?
                ''', (sync_type, limit))
            else:
                cursor.execute('SELECT * FROM sync_history ORDER BY id DESC LIMIT ?', (limit,))

            rows = cursor.fetchall()
            conn.close()
            return [dict(row) for row in rows]

    def record_error(self, message: str) -> int:
        """Increment consecutive_errors and remember the message. Returns the new count."""
        count = int(self.load_state('consecutive_errors', 0) or 0) + 1
        self.save_state('consecutive_errors', count)
        self.save_state('last_error', message)
        self.save_state('last_error_at', datetime.now().isoformat())
        return count

    def reset_errors(self):
        if self.load_state('consecutive_errors', 0):
            self.save_state('consecutive_errors', 0)

    def get_stats(self) -> Dict:
        """Get cursor and history statistics"""
        with self.lock:
            conn = self._connect()
            cursor = conn.cursor()

            stats = {}

            cursor.execute('SELECT sync_type, position FROM cursors')
            stats['cursors'] = {row[0]: row[1] for row in cursor.fetchall()}

            cursor.execute('SELECT COUNT(*) FROM sync_history')
            stats['total_cycles'] = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM sync_history WHERE status = 'failed'")
            stats['failed_cycles'] = cursor.fetchone()[0]

            cursor.execute('SELECT COALESCE(SUM(records_sent), 0) FROM sync_history')
            stats['records_sent'] = cursor.fetchone()[0]

            cursor.execute("SELECT MAX(completed_at) FROM sync_history WHERE status = 'completed'")
            stats['last_sync'] = cursor.fetchone()[0]

            conn.close()

        stats['consecutive_errors'] = self.load_state('consecutive_errors', 0)
        stats['last_error'] = self.load_state('last_error')
        return stats
