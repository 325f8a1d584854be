# Error taxonomy shared by the agent and the cloud ingestion API

from typing import Optional


class PosSyncError(Exception):
    """Base class for all possync errors"""


class ConfigError(PosSyncError):
    """Invalid or missing configuration value"""


class CredentialError(PosSyncError):
    """Stored credentials cannot be read, written or decrypted on this host"""


class DetectionFailure(PosSyncError):
    """No strategy located a usable POS database. Retried on a timer."""


class AuthFailure(PosSyncError):
    """Credential rejected. Fatal until an operator regenerates the token."""

    INVALID_CREDENTIALS = 'INVALID_CREDENTIALS'
    TOKEN_EXPIRED = 'TOKEN_EXPIRED'
    AGENT_NOT_FOUND = 'AGENT_NOT_FOUND'

    def __init__(self, message: str, error_code: str = INVALID_CREDENTIALS):
        super().__init__(message)
        self.error_code = error_code


class NetworkFailure(PosSyncError):
    """Cloud unreachable or kept failing after retries"""


class PayloadError(PosSyncError):
    """Request rejected as malformed (HTTP 400)"""


class ProcessingFailure(PosSyncError):
    """A /sync batch failed on the server side"""

    def __init__(self, message: str, batch_index: Optional[int] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.batch_index = batch_index
        self.status_code = status_code


class InvalidTransition(PosSyncError):
    """Status change not allowed by the agent lifecycle"""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class DuplicateAgent(PosSyncError):
    """An active agent already exists for this tenant/integration"""
