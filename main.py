#!/usr/bin/env python3
"""
possync - Soft Restaurant sync agent and cloud ingestion API

    main.py agent [--config PATH]
    main.py store-credentials --agent-id ID --secret SECRET --tenant T --integration I
    main.py cloud [--host HOST] [--port PORT]
    main.py create-agent --tenant T --integration I [--branch B] [--store-code S]
    main.py regenerate-token --agent-id ID
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from possync import __version__
from possync.api_client import ApiClient
from possync.config import AgentConfig, load_agent_config, load_cloud_settings
from possync.credential_store import CredentialStore, StoredCredentials
from possync.detector import Detector
from possync.errors import ConfigError, PosSyncError
from possync.logging_config import setup_logging
from possync.pos_repository import SoftRestaurantRepository
from possync.state_store import AgentStateStore
from possync.sync_engine import SyncEngine


LOG_DIR = Path(__file__).parent / 'logs'

logger = logging.getLogger('possync')


def build_engine(config: AgentConfig) -> SyncEngine:
    credential_store = CredentialStore(config.credentials_path)
    creds = credential_store.retrieve()
    if creds is None:
        raise ConfigError(
            f"No credentials at {config.credentials_path}; run `main.py store-credentials` first"
        )
    config = replace(
        config,
        agent_id=config.agent_id or creds.agent_id,
        tenant_id=config.tenant_id or creds.tenant_id,
        integration_id=config.integration_id or creds.integration_id,
        connection_string=config.connection_string or creds.connection_string,
    )
    config.require_identity()

    api = ApiClient(
        config.server_url,
        config.agent_id,
        creds.auth_secret,
        timeout=config.request_timeout,
        max_retries=config.max_retries,
        retry_delay=config.retry_delay,
        agent_version=config.agent_version,
    )
    detector = Detector(connection_string=config.connection_string)

    def repository_factory(connection_string: str) -> SoftRestaurantRepository:
        return SoftRestaurantRepository(
            connection_string,
            query_timeout=config.query_timeout,
            store_code=config.store_code,
        )

    return SyncEngine(
        config,
        detector,
        repository_factory,
        api,
        AgentStateStore(config.state_db_path),
        credential_store=credential_store,
    )


class StatusHandler(BaseHTTPRequestHandler):
    """Local diagnostics: GET /status, GET /sync-now?type=menu"""

    engine: SyncEngine = None

    def _send_json(self, code: int, payload):
        body = json.dumps(payload, default=str).encode()
        self.send_response(code)
        self.send_header('Content-type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        url = urlparse(self.path)
        if url.path == '/status':
            self._send_json(200, self.engine.get_statistics())
        elif url.path == '/sync-now':
            sync_type = parse_qs(url.query).get('type', ['sales'])[0]
            try:
                records = self.engine.sync_now(sync_type)
            except ValueError:
                self._send_json(400, {'error': f'Unknown sync type: {sync_type}'})
            except PosSyncError as e:
                self._send_json(503, {'error': str(e)})
            except Exception as e:
                logger.exception(f"On-demand {sync_type} sync failed")
                self._send_json(500, {'error': str(e) or e.__class__.__name__})
            else:
                self._send_json(200, {'sync_type': sync_type, 'records': records})
        else:
            self.send_error(404)

    def log_message(self, format, *args):
        pass


def start_status_server(engine: SyncEngine, port: int) -> ThreadingHTTPServer:
    handler = type('BoundStatusHandler', (StatusHandler,), {'engine': engine})
    server = ThreadingHTTPServer(('127.0.0.1', port), handler)
    threading.Thread(target=server.serve_forever, name='status-http', daemon=True).start()
    logger.info(f"Status page on http://127.0.0.1:{port}/status")
    return server


def run_agent(args) -> int:
    config = load_agent_config(args.config)
    with setup_logging(config.log_path or LOG_DIR / 'possync.log'):
        logger.info(f"possync agent {__version__} starting")
        engine = build_engine(config)
        stop = threading.Event()

        def _stop(signum, frame):
            logger.info(f"Signal {signum} received, stopping...")
            stop.set()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)

        server = start_status_server(engine, config.status_port) if config.status_port else None
        try:
            engine.run(stop)
        finally:
            if server:
                server.shutdown()
    return 0


def store_credentials(args) -> int:
    config = load_agent_config(args.config)
    with setup_logging(config.log_path or LOG_DIR / 'possync.log'):
        store = CredentialStore(config.credentials_path)
        store.store(StoredCredentials(
            agent_id=args.agent_id,
            auth_secret=args.secret,
            tenant_id=args.tenant,
            integration_id=args.integration,
            branch_id=args.branch,
            connection_string=args.connection_string,
        ))
    print(f"Credentials for {args.agent_id} stored in {config.credentials_path}")
    return 0


def run_cloud(args) -> int:
    import uvicorn
    from possync.cloud_app import create_app

    settings = load_cloud_settings()
    with setup_logging(args.log_path or LOG_DIR / 'possync-cloud.log'):
        logger.info(f"possync cloud {__version__} on {args.host}:{args.port} (db={settings.db_path})")
        uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
    return 0


def create_agent(args) -> int:
    from possync.cloud_store import AgentInstanceStore

    settings = load_cloud_settings()
    store = AgentInstanceStore(settings.db_path)
    instance, secret = store.create_agent(
        args.tenant, args.integration,
        branch_id=args.branch,
        store_code=args.store_code,
        token_ttl_days=settings.token_ttl_days,
    )
    print(f"agent_id:    {instance.agent_id}")
    print(f"auth_secret: {secret}")
    print(f"expires:     {instance.token_expires_at.isoformat()}")
    print("The secret is shown once; store it on the agent host with `main.py store-credentials`.")
    return 0


def regenerate_token(args) -> int:
    from possync.cloud_store import AgentInstanceStore

    settings = load_cloud_settings()
    store = AgentInstanceStore(settings.db_path)
    secret = store.regenerate_token(args.agent_id, settings.token_ttl_days)
    print(f"auth_secret: {secret}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='possync', description='Soft Restaurant sync agent')
    parser.add_argument('--version', action='version', version=__version__)
    sub = parser.add_subparsers(dest='command', required=True)

    agent = sub.add_parser('agent', help='run the on-prem sync agent')
    agent.add_argument('--config', help='path to config.json')
    agent.set_defaults(func=run_agent)

    creds = sub.add_parser('store-credentials', help='encrypt agent credentials on this host')
    creds.add_argument('--config', help='path to config.json')
    creds.add_argument('--agent-id', required=True)
    creds.add_argument('--secret', required=True)
    creds.add_argument('--tenant', required=True)
    creds.add_argument('--integration', required=True)
    creds.add_argument('--branch')
    creds.add_argument('--connection-string')
    creds.set_defaults(func=store_credentials)

    cloud = sub.add_parser('cloud', help='run the cloud ingestion API')
    cloud.add_argument('--host', default='0.0.0.0')
    cloud.add_argument('--port', type=int, default=8000)
    cloud.add_argument('--log-path')
    cloud.set_defaults(func=run_cloud)

    create = sub.add_parser('create-agent', help='provision an agent and print its one-time secret')
    create.add_argument('--tenant', required=True)
    create.add_argument('--integration', required=True)
    create.add_argument('--branch')
    create.add_argument('--store-code')
    create.set_defaults(func=create_agent)

    regen = sub.add_parser('regenerate-token', help='issue a new secret for an agent')
    regen.add_argument('--agent-id', required=True)
    regen.set_defaults(func=regenerate_token)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except PosSyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
