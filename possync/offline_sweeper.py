# Offline sweep - connected/syncing agents that stopped heartbeating become offline

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from .cloud_store import AgentInstanceStore


logger = logging.getLogger(__name__)

OFFLINE_TIMEOUT_SECONDS = 300


def mark_offline_agents(store: AgentInstanceStore, timeout_seconds: int = OFFLINE_TIMEOUT_SECONDS,
                        now: Optional[datetime] = None) -> int:
    """
    One UPDATE over all agents; safe to run repeatedly or concurrently.
    A heartbeat exactly timeout_seconds old is still considered live.
    """
    now = now or datetime.now(timezone.utc)
    count = store.mark_offline(now - timedelta(seconds=timeout_seconds))
    if count:
        logger.warning(f"Marked {count} agent(s) offline (no heartbeat for {timeout_seconds}s)")
    return count


class OfflineSweeper:
    """Background thread running mark_offline_agents every interval_seconds"""

    def __init__(self, store: AgentInstanceStore, timeout_seconds: int = OFFLINE_TIMEOUT_SECONDS,
                 interval_seconds: int = 60):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='offline-sweeper', daemon=True)
        self._thread.start()
        logger.info(f"Offline sweeper started (timeout {self.timeout_seconds}s, "
                    f"every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def sweep(self) -> int:
        return mark_offline_agents(self.store, self.timeout_seconds, self.store.clock())

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Offline sweep failed: {e}")
