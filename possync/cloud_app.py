# Cloud ingestion API - /register, /heartbeat, /sync, /health

import logging
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from .cloud_auth import AgentIdentity, AuthValidator
from .cloud_store import AgentInstanceStore, RecordStore, SyncLogStore
from .config import CloudSettings, load_cloud_settings
from .errors import AuthFailure, DuplicateAgent, InvalidTransition, PayloadError, ProcessingFailure
from .ingestion import IngestionProcessor, SyncRequest
from .offline_sweeper import OfflineSweeper
from .rate_limiter import RateLimiter
from .status import HEARTBEAT_STATUSES, AgentStatus, SyncType


logger = logging.getLogger(__name__)


class AgentRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    auth_secret: Optional[str] = None


class RegisterRequest(AgentRequest):
    tenant_id: str = Field(min_length=1)
    integration_id: str = Field(min_length=1)
    agent_version: Optional[str] = None
    machine_name: Optional[str] = None
    sr_version: Optional[str] = None
    sr_database_name: Optional[str] = None
    sr_sql_instance: Optional[str] = None
    sr_empresa_id: Optional[str] = None


class HeartbeatRequest(AgentRequest):
    status: AgentStatus
    last_sync_at: Optional[datetime] = None
    last_sync_records: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = None

    @model_validator(mode='after')
    def _reportable_status(self):
        if self.status not in HEARTBEAT_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(s.value for s in HEARTBEAT_STATUSES)}")
        return self


class SyncRequestBody(AgentRequest):
    sync_type: SyncType
    batch_id: str = Field(min_length=1)
    batch_index: int = Field(ge=0)
    batch_total: int = Field(ge=1)
    data: List[Any]

    @model_validator(mode='after')
    def _index_in_range(self):
        if self.batch_index >= self.batch_total:
            raise ValueError('batch_index must be lower than batch_total')
        return self


@dataclass
class CloudContext:
    settings: CloudSettings
    agents: AgentInstanceStore
    logs: SyncLogStore
    records: RecordStore
    validator: AuthValidator
    processor: IngestionProcessor
    limiter: RateLimiter
    sweeper: OfflineSweeper


def build_context(settings: CloudSettings, clock: Optional[Callable[[], datetime]] = None) -> CloudContext:
    kwargs = {'clock': clock} if clock else {}
    agents = AgentInstanceStore(settings.db_path, **kwargs)
    logs = SyncLogStore(settings.db_path, **kwargs)
    records = RecordStore(settings.db_path, **kwargs)
    return CloudContext(
        settings=settings,
        agents=agents,
        logs=logs,
        records=records,
        validator=AuthValidator(agents, **kwargs),
        processor=IngestionProcessor(agents, logs, records, settings.default_currency),
        limiter=RateLimiter(per_minute=settings.rate_limit_per_minute),
        sweeper=OfflineSweeper(agents, settings.offline_timeout_seconds,
                               settings.sweep_interval_seconds),
    )


def _error(status_code: int, message: str, error_code: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code,
                        content={'success': False, 'error': message, 'errorCode': error_code, **extra})


def _presented_secret(request: Request, body: AgentRequest) -> str:
    if body.auth_secret:
        return body.auth_secret
    header = request.headers.get('authorization', '')
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return ''


def create_app(settings: Optional[CloudSettings] = None,
               clock: Optional[Callable[[], datetime]] = None,
               start_sweeper: bool = True) -> FastAPI:
    settings = settings or load_cloud_settings()
    ctx = build_context(settings, clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_sweeper:
            ctx.sweeper.start()
        try:
            yield
        finally:
            ctx.sweeper.stop()

    app = FastAPI(title='possync cloud', lifespan=lifespan)
    app.state.possync = ctx

    def get_ctx(request: Request) -> CloudContext:
        return request.app.state.possync

    def authenticate(request: Request, body: AgentRequest, c: CloudContext) -> AgentIdentity:
        return c.validator.validate(body.agent_id, _presented_secret(request, body))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = '; '.join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        return _error(400, details or 'Invalid request body', 'VALIDATION_ERROR')

    @app.exception_handler(PayloadError)
    async def payload_error(request: Request, exc: PayloadError):
        return _error(400, str(exc), 'VALIDATION_ERROR')

    @app.exception_handler(AuthFailure)
    async def auth_failure(request: Request, exc: AuthFailure):
        return _error(401, str(exc), exc.error_code)

    @app.exception_handler(DuplicateAgent)
    async def duplicate_agent(request: Request, exc: DuplicateAgent):
        return _error(409, str(exc), 'DUPLICATE_AGENT')

    @app.exception_handler(InvalidTransition)
    async def invalid_transition(request: Request, exc: InvalidTransition):
        return _error(409, str(exc), 'INVALID_TRANSITION')

    @app.post('/register')
    def register(body: RegisterRequest, request: Request, c: CloudContext = Depends(get_ctx)):
        identity = authenticate(request, body, c)
        if (body.tenant_id, body.integration_id) != (identity.tenant_id, identity.integration_id):
            other = c.agents.get_for_integration(body.tenant_id, body.integration_id)
            if other is not None and other.agent_id != identity.agent_id:
                raise DuplicateAgent(
                    f"Integration {body.integration_id} already has agent {other.agent_id}"
                )
            raise AuthFailure('Agent is not provisioned for this tenant/integration',
                              AuthFailure.INVALID_CREDENTIALS)

        instance = c.agents.register(
            identity.agent_id,
            agent_version=body.agent_version,
            machine_name=body.machine_name,
            sr_version=body.sr_version,
            sr_database_name=body.sr_database_name,
            sr_sql_instance=body.sr_sql_instance,
            sr_empresa_id=body.sr_empresa_id,
        )
        return {
            'success': True,
            'agent_id': instance.agent_id,
            'status': instance.status,
            'sync_config': instance.sync_config.to_dict(),
            'message': 'Agent registered',
        }

    @app.post('/heartbeat')
    def heartbeat(body: HeartbeatRequest, request: Request, c: CloudContext = Depends(get_ctx)):
        identity = authenticate(request, body, c)
        instance = c.agents.record_heartbeat(
            identity.agent_id,
            body.status.value,
            last_sync_at=body.last_sync_at,
            last_sync_records=body.last_sync_records,
            error_message=body.error_message,
        )
        if body.status == AgentStatus.ERROR:
            logger.warning(f"Agent {identity.agent_id} reported error: {body.error_message}")
        return {
            'success': True,
            'status': instance.status,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    @app.post('/sync')
    def sync(body: SyncRequestBody, request: Request, c: CloudContext = Depends(get_ctx)):
        allowed, retry_after = c.limiter.allow(body.agent_id)
        if not allowed:
            seconds = max(1, math.ceil(retry_after))
            response = _error(429, 'Rate limit exceeded', 'RATE_LIMITED')
            response.headers['Retry-After'] = str(seconds)
            return response

        identity = authenticate(request, body, c)
        try:
            outcome = c.processor.process_batch(identity, SyncRequest(
                sync_type=body.sync_type.value,
                batch_id=body.batch_id,
                batch_index=body.batch_index,
                batch_total=body.batch_total,
                data=body.data,
                payload_size_bytes=int(request.headers.get('content-length') or 0),
            ))
        except ProcessingFailure as e:
            return _error(500, str(e), 'PROCESSING_FAILED',
                          sync_type=body.sync_type.value,
                          batch_id=body.batch_id,
                          batch_index=e.batch_index if e.batch_index is not None else body.batch_index)
        return outcome.to_response()

    @app.get('/health')
    def health(c: CloudContext = Depends(get_ctx)):
        return {'status': 'ok', 'agents': c.agents.get_stats()}

    return app
