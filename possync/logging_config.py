# Logging configuration - bounded queue, RotatingFileHandler, error alerting
# Records are queued by the caller thread and written by a listener thread,
# so a slow disk never stalls the sync loop.

import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable

# Default log directory (project root / logs)
LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_FILE = LOG_DIR / "possync.log"
LOG_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 5
LOG_QUEUE_SIZE = 10000

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Optional: call this when an ERROR is logged (e.g. send to monitoring)
_error_alert_callback: Optional[Callable[[str, str], None]] = None


def set_error_alert_callback(callback: Optional[Callable[[str, str], None]]):
    """Set a callback(message, level) for error alerting."""
    global _error_alert_callback
    _error_alert_callback = callback


def mask_secret(secret: Optional[str]) -> str:
    """Render a secret for diagnostics without revealing it."""
    if not secret:
        return "<empty>"
    return f"{secret[:4]}…({len(secret)})"


class ErrorAlertHandler(logging.Handler):
    """Handler that invokes the alert callback on ERROR and CRITICAL."""

    def emit(self, record: logging.LogRecord):
        if record.levelno >= logging.ERROR and _error_alert_callback:
            try:
                msg = self.format(record)
                _error_alert_callback(msg, record.levelname)
            except Exception:
                self.handleError(record)


class BoundedQueueHandler(QueueHandler):
    """QueueHandler that drops (and counts) records when the queue is full."""

    def __init__(self, log_queue: queue.Queue):
        super().__init__(log_queue)
        self.dropped_records = 0

    def enqueue(self, record: logging.LogRecord):
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped_records += 1


class LoggingSession:
    """
    Owns the queue listener started by setup_logging().

    close() stops the listener, which drains every queued record to the
    file/console handlers before returning. Use as a context manager so the
    drain happens on every exit path.
    """

    def __init__(self, listener: QueueListener, queue_handler: BoundedQueueHandler,
                 handlers: list):
        self.listener = listener
        self.queue_handler = queue_handler
        self.handlers = handlers
        self.closed = False

    @property
    def dropped_records(self) -> int:
        return self.queue_handler.dropped_records

    def close(self):
        if self.closed:
            return
        self.closed = True
        logging.getLogger().removeHandler(self.queue_handler)
        self.listener.stop()
        for handler in self.handlers:
            handler.flush()
            handler.close()
        if self.queue_handler.dropped_records:
            sys.stderr.write(
                f"possync: {self.queue_handler.dropped_records} log records dropped (queue full)\n"
            )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def setup_logging(
    log_path: Optional[Path] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
    console: bool = True,
    level: int = logging.INFO,
    queue_size: int = LOG_QUEUE_SIZE,
) -> LoggingSession:
    """
    Configure structured logging with file rotation and optional console.

    Returns the LoggingSession that must be closed on shutdown.
    """
    log_path = log_path or LOG_FILE
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    root = logging.getLogger()
    root.setLevel(level)
    # Avoid duplicate handlers when called multiple times
    for h in list(root.handlers):
        root.removeHandler(h)

    handlers = []

    # Rotating file
    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)

    # Console
    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    log_queue: queue.Queue = queue.Queue(maxsize=queue_size)
    queue_handler = BoundedQueueHandler(log_queue)
    root.addHandler(queue_handler)

    listener = QueueListener(log_queue, *handlers, respect_handler_level=True)
    listener.start()

    # Error alerting runs inline so alerts are not lost to a full queue
    alert_handler = ErrorAlertHandler()
    alert_handler.setLevel(logging.ERROR)
    alert_handler.setFormatter(formatter)
    root.addHandler(alert_handler)

    return LoggingSession(listener, queue_handler, handlers)
