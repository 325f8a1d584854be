# Credential Store - host-bound encryption of the agent secret at rest
# Windows: DPAPI (machine scope). Elsewhere: Fernet keyed by PBKDF2 over the host identity.

import base64
import json
import logging
import os
import socket
import sys
import threading
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CredentialError

# DPAPI - optional (pywin32)
WIN32_AVAILABLE = False
if sys.platform == 'win32':
    try:
        import win32crypt
        import win32cryptcon
        WIN32_AVAILABLE = True
    except ImportError:
        pass

logger = logging.getLogger(__name__)

MAX_CREDENTIAL_SIZE_BYTES = 64 * 1024
CREDENTIALS_VERSION = 1

_KDF_SALT = b'possync-credential-store-v1'
_KDF_ITERATIONS = 390000
_MACHINE_ID_PATHS = ('/etc/machine-id', '/var/lib/dbus/machine-id')


@dataclass
class StoredCredentials:
    agent_id: str = ''
    auth_secret: str = ''
    tenant_id: str = ''
    integration_id: str = ''
    branch_id: Optional[str] = None
    connection_string: Optional[str] = None
    created_at: Optional[str] = None
    token_updated_at: Optional[str] = None
    version: int = CREDENTIALS_VERSION

    @classmethod
    def from_dict(cls, data: dict) -> 'StoredCredentials':
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


def validate_secret(secret: Optional[str]):
    """Secrets must be non-empty printable text with no control characters."""
    if not secret or not isinstance(secret, str):
        raise CredentialError("Invalid token format: secret is empty")
    if not secret.isprintable():
        raise CredentialError("Invalid token format: control characters are not allowed")


def host_identity() -> str:
    """Stable identifier of this machine (machine-id, else hostname + MAC)."""
    for path in _MACHINE_ID_PATHS:
        try:
            value = Path(path).read_text(encoding='utf-8').strip()
        except OSError:
            continue
        if value:
            return value
    return f"{socket.gethostname()}-{uuid.getnode():012x}"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class CredentialStore:
    """Encrypted, host-bound storage for the agent identity and secret"""

    def __init__(self, path: str, use_dpapi: Optional[bool] = None,
                 machine_id: Optional[str] = None):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.use_dpapi = WIN32_AVAILABLE if use_dpapi is None else use_dpapi
        if self.use_dpapi and not WIN32_AVAILABLE:
            raise CredentialError("DPAPI requested but pywin32 is not available")
        self.lock = threading.Lock()
        self._fernet = None
        if not self.use_dpapi:
            self._fernet = Fernet(self._derive_key(machine_id or host_identity()))

    @staticmethod
    def _derive_key(machine_id: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_KDF_SALT,
            iterations=_KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(machine_id.encode('utf-8')))

    def _protect(self, data: bytes) -> bytes:
        if self.use_dpapi:
            return win32crypt.CryptProtectData(
                data, 'possync', None, None, None,
                win32cryptcon.CRYPTPROTECT_LOCAL_MACHINE,
            )
        return self._fernet.encrypt(data)

    def _unprotect(self, blob: bytes) -> bytes:
        if self.use_dpapi:
            try:
                _, data = win32crypt.CryptUnprotectData(blob, None, None, None, 0)
            except Exception as e:  # pywintypes.error
                raise CredentialError(f"Cannot decrypt credentials on this host: {e}") from e
            return data
        try:
            return self._fernet.decrypt(blob)
        except InvalidToken as e:
            raise CredentialError("Cannot decrypt credentials on this host") from e

    def _write(self, creds: StoredCredentials):
        payload = json.dumps(asdict(creds)).encode('utf-8')
        if len(payload) > MAX_CREDENTIAL_SIZE_BYTES:
            raise CredentialError(
                f"Credential data ({len(payload)} bytes) exceeds maximum allowed size "
                f"({MAX_CREDENTIAL_SIZE_BYTES} bytes)"
            )
        blob = self._protect(payload)
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        with open(tmp_path, 'wb') as f:
            f.write(blob)
        os.replace(tmp_path, self.path)

    def _read(self) -> Optional[StoredCredentials]:
        if not self.path.exists():
            return None
        blob = self.path.read_bytes()
        data = self._unprotect(blob)
        try:
            return StoredCredentials.from_dict(json.loads(data.decode('utf-8')))
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Corrupt credential file {self.path}: {e}") from e

    def store(self, creds: StoredCredentials):
        """Encrypt and persist credentials, replacing any previous file"""
        if creds is None:
            raise CredentialError("Credentials are required")
        validate_secret(creds.auth_secret)
        if not creds.created_at:
            creds.created_at = _utcnow()
        with self.lock:
            self._write(creds)
        logger.info(f"Stored credentials for agent {creds.agent_id}")

    def retrieve(self) -> Optional[StoredCredentials]:
        """Decrypt stored credentials; None when nothing has been stored"""
        with self.lock:
            return self._read()

    def exists(self) -> bool:
        return self.path.exists()

    def delete(self):
        with self.lock:
            if self.path.exists():
                self.path.unlink()
                logger.info("Deleted stored credentials")

    def update_token(self, new_secret: str) -> bool:
        """Replace the secret, keeping the rest of the identity. False if nothing stored."""
        validate_secret(new_secret)
        with self.lock:
            creds = self._read()
            if creds is None:
                logger.warning("update_token called without stored credentials")
                return False
            creds.auth_secret = new_secret
            creds.token_updated_at = _utcnow()
            self._write(creds)
        logger.info(f"Rotated secret for agent {creds.agent_id}")
        return True
