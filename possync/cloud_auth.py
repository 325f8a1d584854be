# Cloud Auth - agent credential generation and request validation
# Only the SHA-256 hash of a secret is ever persisted.

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .api_client import hash_secret
from .config import SyncConfig
from .errors import AuthFailure


logger = logging.getLogger(__name__)

AGENT_ID_PREFIX = 'tis-agent-'
SECRET_BYTES = 32


def generate_agent_id() -> str:
    """tis-agent-<16 hex>"""
    return f"{AGENT_ID_PREFIX}{secrets.token_hex(8)}"


def generate_secret() -> str:
    return secrets.token_hex(SECRET_BYTES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentIdentity:
    """Resolved owner of a validated request"""
    agent_id: str
    tenant_id: str
    integration_id: str
    agent_instance_id: int
    branch_id: Optional[str]
    store_code: Optional[str]
    status: str
    sync_config: SyncConfig


class AuthValidator:
    """Checks (agent_id, secret) against the stored hash and expiry"""

    def __init__(self, agents, clock: Callable[[], datetime] = _utcnow):
        self.agents = agents
        self.clock = clock

    def validate(self, agent_id: str, presented_secret: str) -> AgentIdentity:
        instance = self.agents.get(agent_id) if agent_id else None
        if instance is None:
            logger.warning(f"Auth rejected: unknown agent {agent_id!r}")
            raise AuthFailure('Agent not found', AuthFailure.AGENT_NOT_FOUND)

        presented_hash = hash_secret(presented_secret or '')
        if not hmac.compare_digest(presented_hash, instance.auth_token_hash or ''):
            self.agents.record_error(agent_id, 'Authentication failed: invalid credentials')
            logger.warning(f"Auth rejected for {agent_id}: invalid credentials")
            raise AuthFailure('Invalid credentials', AuthFailure.INVALID_CREDENTIALS)

        if instance.token_expires_at is not None and instance.token_expires_at <= self.clock():
            self.agents.record_error(agent_id, 'Authentication failed: token expired')
            logger.warning(f"Auth rejected for {agent_id}: token expired at "
                           f"{instance.token_expires_at.isoformat()}")
            raise AuthFailure('Token has expired', AuthFailure.TOKEN_EXPIRED)

        return AgentIdentity(
            agent_id=instance.agent_id,
            tenant_id=instance.tenant_id,
            integration_id=instance.integration_id,
            agent_instance_id=instance.id,
            branch_id=instance.branch_id,
            store_code=instance.store_code,
            status=instance.status,
            sync_config=instance.sync_config,
        )
