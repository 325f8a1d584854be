# Tests for the cloud side: agent store, auth, ingestion, offline sweep, rate limiting

from datetime import datetime, timedelta, timezone

import pytest

from possync.cloud_auth import AuthValidator, generate_agent_id
from possync.cloud_store import AgentInstanceStore, RecordStore, SyncLogStore, to_ts, from_ts
from possync.config import SyncConfig
from possync.errors import AuthFailure, DuplicateAgent, InvalidTransition, ProcessingFailure
from possync.ingestion import IngestionProcessor, SyncRequest, final_status
from possync.cloud_store import ApplyResult
from possync.offline_sweeper import OfflineSweeper
from possync.rate_limiter import RateLimiter
from possync.status import SyncLogStatus


class FakeClock:
    def __init__(self, start=datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_sale(receipt, total=100.0, **overrides):
    sale = {
        'external_id': f'sr-{receipt}',
        'receipt_number': receipt,
        'order_number': f'O-{receipt}',
        'grand_total': total,
        'subtotal': total,
        'currency': 'MXN',
        'status': 'completed',
        'items': [
            {'product_code': 'TAC01', 'product_name': 'Tacos', 'quantity': 2, 'unit_price': 50,
             'line_total': 100},
            {'product_code': None, 'product_name': None, 'quantity': 1},
        ],
        'payments': [
            {'method': 'cash', 'amount': total},
            {'method': 'card', 'amount': 0},
        ],
    }
    sale.update(overrides)
    return sale


class TestTimestamps:
    """Test the stored timestamp format"""

    def test_fixed_width_and_ordered(self):
        """Test timestamps sort correctly as text"""
        earlier = to_ts(datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc))
        later = to_ts(datetime(2026, 3, 1, 10, 0, 0, 5, tzinfo=timezone.utc))

        assert len(earlier) == len(later)
        assert earlier < later
        assert from_ts(later) == datetime(2026, 3, 1, 10, 0, 0, 5, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        """Test naive datetimes are treated as UTC"""
        assert to_ts(datetime(2026, 1, 2, 3, 4, 5)) == '2026-01-02T03:04:05.000000Z'


class TestAgentInstanceStore:
    """Test agent provisioning and lifecycle persistence"""

    def setup_method(self):
        self.clock = FakeClock()

    def _store(self, tmp_path) -> AgentInstanceStore:
        return AgentInstanceStore(str(tmp_path / 'cloud.db'), clock=self.clock)

    def test_create_agent(self, tmp_path):
        """Test a new agent is pending with a hashed secret"""
        store = self._store(tmp_path)
        instance, secret = store.create_agent('tenant-1', 'int-1', branch_id='b1')

        assert instance.agent_id.startswith('tis-agent-')
        assert instance.status == 'pending'
        assert len(secret) == 64
        assert instance.auth_token_hash != secret
        assert instance.token_expires_at == self.clock.now + timedelta(days=30)
        assert instance.sync_config == SyncConfig()

    def test_generated_agent_id_format(self):
        """Test generated ids are tis-agent- plus 16 hex characters"""
        agent_id = generate_agent_id()

        assert agent_id.startswith('tis-agent-')
        assert len(agent_id) == len('tis-agent-') + 16

    def test_duplicate_integration(self, tmp_path):
        """Test one live agent per tenant/integration"""
        store = self._store(tmp_path)
        first, _ = store.create_agent('tenant-1', 'int-1')

        with pytest.raises(DuplicateAgent):
            store.create_agent('tenant-1', 'int-1')

        store.delete(first.agent_id)
        second, _ = store.create_agent('tenant-1', 'int-1')
        assert second.agent_id != first.agent_id
        assert store.get(first.agent_id) is None
        assert store.get(first.agent_id, include_deleted=True).status == 'offline'

    def test_register_and_heartbeats(self, tmp_path):
        """Test registration details and heartbeat error counting"""
        store = self._store(tmp_path)
        instance, _ = store.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001')

        registered = store.register('tis-agent-001', agent_version='1.0.0', sr_version='11.x',
                                    sr_sql_instance=r'.\DVSOFT')
        assert registered.status == 'registered'
        assert registered.sr_version == '11.x'
        assert registered.last_heartbeat_at == self.clock.now

        store.record_heartbeat('tis-agent-001', 'error', error_message='db locked')
        errored = store.record_heartbeat('tis-agent-001', 'error')
        assert errored.consecutive_errors == 2
        assert errored.last_error_message == 'Agent reported an error'

        synced_at = self.clock.now - timedelta(minutes=1)
        connected = store.record_heartbeat('tis-agent-001', 'connected', last_sync_at=synced_at,
                                           last_sync_records=12)
        assert connected.consecutive_errors == 0
        assert connected.last_sync_records == 12
        assert connected.last_sync_at == synced_at

    def test_pending_agent_cannot_heartbeat(self, tmp_path):
        """Test a pending agent must register before reporting status"""
        store = self._store(tmp_path)
        store.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001')

        with pytest.raises(InvalidTransition):
            store.record_heartbeat('tis-agent-001', 'connected')

    def test_sync_totals_accumulate(self, tmp_path):
        """Test total_records_synced is incremented in place"""
        store = self._store(tmp_path)
        store.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001')
        store.add_sync_totals('tis-agent-001', 5)
        store.add_sync_totals('tis-agent-001', 7)

        instance = store.get('tis-agent-001')
        assert instance.total_records_synced == 12
        assert instance.last_sync_records == 7

    def test_update_config(self, tmp_path):
        """Test sync options are persisted"""
        store = self._store(tmp_path)
        store.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001')
        store.update_config('tis-agent-001', SyncConfig(interval_seconds=900, sync_tables=True))

        assert store.get('tis-agent-001').sync_config.interval_seconds == 900
        assert store.get('tis-agent-001').sync_config.sync_tables is True

    def test_stats(self, tmp_path):
        """Test counts by status and totals"""
        store = self._store(tmp_path)
        store.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001')
        store.create_agent('tenant-1', 'int-2', agent_id='tis-agent-002')
        store.create_agent('tenant-2', 'int-1', agent_id='tis-agent-003')
        store.register('tis-agent-002')
        store.add_sync_totals('tis-agent-002', 40)

        stats = store.get_stats('tenant-1')
        assert stats['total_agents'] == 2
        assert stats['by_status'] == {'pending': 1, 'registered': 1}
        assert stats['total_records_synced'] == 40
        assert store.get_stats()['total_agents'] == 3
        assert [a.agent_id for a in store.list_for_tenant('tenant-2')] == ['tis-agent-003']


class TestOfflineSweep:
    """Test stale agents become offline"""

    def setup_method(self):
        self.clock = FakeClock()

    def _connected_agent(self, store, agent_id, integration):
        store.create_agent('tenant-1', integration, agent_id=agent_id)
        store.register(agent_id)
        store.record_heartbeat(agent_id, 'connected')

    def test_timeout_boundary(self, tmp_path):
        """Test 299s and exactly 300s are live, 301s is offline"""
        store = AgentInstanceStore(str(tmp_path / 'cloud.db'), clock=self.clock)
        self._connected_agent(store, 'tis-agent-001', 'int-1')
        sweeper = OfflineSweeper(store, timeout_seconds=300)

        self.clock.advance(seconds=299)
        assert sweeper.sweep() == 0
        self.clock.advance(seconds=1)
        assert sweeper.sweep() == 0
        self.clock.advance(seconds=1)
        assert sweeper.sweep() == 1
        assert store.get('tis-agent-001').status == 'offline'
        assert sweeper.sweep() == 0

    def test_only_connected_or_syncing(self, tmp_path):
        """Test registered and errored agents are left alone"""
        store = AgentInstanceStore(str(tmp_path / 'cloud.db'), clock=self.clock)
        self._connected_agent(store, 'tis-agent-001', 'int-1')
        store.create_agent('tenant-1', 'int-2', agent_id='tis-agent-002')
        store.register('tis-agent-002')
        self._connected_agent(store, 'tis-agent-003', 'int-3')
        store.record_heartbeat('tis-agent-003', 'error', error_message='x')

        self.clock.advance(minutes=30)
        assert OfflineSweeper(store).sweep() == 1
        assert store.get('tis-agent-002').status == 'registered'
        assert store.get('tis-agent-003').status == 'error'

    def test_offline_agent_can_reconnect(self, tmp_path):
        """Test a heartbeat after the sweep brings the agent back"""
        store = AgentInstanceStore(str(tmp_path / 'cloud.db'), clock=self.clock)
        self._connected_agent(store, 'tis-agent-001', 'int-1')
        self.clock.advance(minutes=10)
        OfflineSweeper(store).sweep()

        assert store.record_heartbeat('tis-agent-001', 'connected').status == 'connected'


class TestAuthValidator:
    """Test agent credential checks"""

    def setup_method(self):
        self.clock = FakeClock()

    def _setup(self, tmp_path):
        store = AgentInstanceStore(str(tmp_path / 'cloud.db'), clock=self.clock)
        instance, secret = store.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001',
                                              branch_id='b1', token_ttl_days=30)
        return store, AuthValidator(store, clock=self.clock), secret

    def test_valid_credentials(self, tmp_path):
        """Test a valid secret resolves the agent identity"""
        store, validator, secret = self._setup(tmp_path)
        identity = validator.validate('tis-agent-001', secret)

        assert identity.tenant_id == 'tenant-1'
        assert identity.branch_id == 'b1'
        assert identity.status == 'pending'

    def test_unknown_agent(self, tmp_path):
        """Test an unknown agent id"""
        _, validator, secret = self._setup(tmp_path)

        with pytest.raises(AuthFailure) as exc:
            validator.validate('tis-agent-404', secret)
        assert exc.value.error_code == AuthFailure.AGENT_NOT_FOUND

    def test_wrong_secret_records_error(self, tmp_path):
        """Test a wrong secret is rejected and counted against the agent"""
        store, validator, _ = self._setup(tmp_path)

        with pytest.raises(AuthFailure) as exc:
            validator.validate('tis-agent-001', 'not-the-secret')
        assert exc.value.error_code == AuthFailure.INVALID_CREDENTIALS
        assert store.get('tis-agent-001').consecutive_errors == 1

    def test_expired_token(self, tmp_path):
        """Test a token at or past its expiry is rejected"""
        _, validator, secret = self._setup(tmp_path)
        self.clock.advance(days=30)

        with pytest.raises(AuthFailure) as exc:
            validator.validate('tis-agent-001', secret)
        assert exc.value.error_code == AuthFailure.TOKEN_EXPIRED

    def test_regenerated_token(self, tmp_path):
        """Test the old secret stops working after regeneration"""
        store, validator, old_secret = self._setup(tmp_path)
        self.clock.advance(days=29)
        new_secret = store.regenerate_token('tis-agent-001', token_ttl_days=30)
        self.clock.advance(days=5)

        assert validator.validate('tis-agent-001', new_secret).agent_id == 'tis-agent-001'
        with pytest.raises(AuthFailure):
            validator.validate('tis-agent-001', old_secret)

    def test_deleted_agent(self, tmp_path):
        """Test a soft-deleted agent can no longer authenticate"""
        store, validator, secret = self._setup(tmp_path)
        store.delete('tis-agent-001')

        with pytest.raises(AuthFailure) as exc:
            validator.validate('tis-agent-001', secret)
        assert exc.value.error_code == AuthFailure.AGENT_NOT_FOUND


class TestIngestion:
    """Test idempotent batch processing"""

    def setup_method(self):
        self.clock = FakeClock()

    def _setup(self, tmp_path, currency='MXN'):
        db = str(tmp_path / 'cloud.db')
        self.agents = AgentInstanceStore(db, clock=self.clock)
        self.logs = SyncLogStore(db, clock=self.clock)
        self.records = RecordStore(db, clock=self.clock)
        _, secret = self.agents.create_agent('tenant-1', 'int-1', agent_id='tis-agent-001',
                                             store_code='SUC01')
        self.agents.register('tis-agent-001')
        self.identity = AuthValidator(self.agents, clock=self.clock).validate('tis-agent-001', secret)
        self.processor = IngestionProcessor(self.agents, self.logs, self.records, currency)

    def _request(self, data, sync_type='sales', batch_id='b1', index=0, total=1):
        return SyncRequest(sync_type, batch_id, index, total, data)

    def test_sales_batch(self, tmp_path):
        """Test sales, items and payments are stored"""
        self._setup(tmp_path)
        outcome = self.processor.process_batch(
            self.identity, self._request([make_sale('F1'), make_sale('F2'), make_sale('F3')]))

        assert outcome.status == 'completed'
        assert outcome.result == {'processed': 3, 'created': 3, 'updated': 0, 'skipped': 0, 'failed': 0}
        assert self.records.count('sales', 'tenant-1') == 3
        # nameless items and zero payments are dropped
        assert self.records.count('sale_items') == 3
        assert self.records.count('payments') == 3
        assert self.records.get_sale('tenant-1', 'F1')['location_code'] == 'SUC01'
        assert self.agents.get('tis-agent-001').total_records_synced == 3

    def test_redelivery_is_replayed(self, tmp_path):
        """Test the same (batch_id, batch_index) returns the stored outcome without re-applying"""
        self._setup(tmp_path)
        request = self._request([make_sale('F1'), make_sale('F2'), make_sale('F3')])
        first = self.processor.process_batch(self.identity, request)
        second = self.processor.process_batch(self.identity, request)

        assert second.replayed is True
        assert second.result == first.result
        assert second.status == 'completed'
        assert self.records.count('sales') == 3
        assert self.agents.get('tis-agent-001').total_records_synced == 3
        assert len(self.logs.list_for_agent('tis-agent-001')) == 1

    def test_known_sales_in_new_batch_are_skipped(self, tmp_path):
        """Test a re-sent sale under a new batch id is skipped, not duplicated"""
        self._setup(tmp_path)
        self.processor.process_batch(self.identity, self._request([make_sale('F1')]))
        outcome = self.processor.process_batch(
            self.identity, self._request([make_sale('F1', total=999), make_sale('F2')], batch_id='b2'))

        assert outcome.result['processed'] == 2
        assert outcome.result['created'] == 1
        assert outcome.result['skipped'] == 1
        assert self.records.get_sale('tenant-1', 'F1')['grand_total'] == 100.0

    def test_sale_key_fallback(self, tmp_path):
        """Test order number stands in for a missing receipt; no key at all is skipped"""
        self._setup(tmp_path)
        outcome = self.processor.process_batch(self.identity, self._request([
            make_sale(None, order_number='O-77'),
            make_sale(None, order_number=None),
            'not a record',
        ]))

        assert outcome.result['processed'] == 1
        assert outcome.result['skipped'] == 2
        assert self.records.get_sale('tenant-1', 'O-77') is not None

    def test_partial_batch(self, tmp_path):
        """Test a bad record fails alone and the batch is partial"""
        self._setup(tmp_path)
        outcome = self.processor.process_batch(self.identity, self._request([
            make_sale('F1'), make_sale('F2', guest_count='many'), make_sale('F3'),
        ]))

        assert outcome.status == 'partial'
        assert outcome.result['processed'] == 2
        assert outcome.result['failed'] == 1
        assert self.records.count('sales') == 2
        assert self.records.count('sale_items') == 2
        entry = self.logs.get_by_key('tis-agent-001', 'b1', 0)
        assert 'F2' in entry.error_message
        instance = self.agents.get('tis-agent-001')
        assert instance.total_records_synced == 2
        assert instance.consecutive_errors == 1

    def test_failed_batch_then_fixed_redelivery(self, tmp_path):
        """Test batch 1 failing after batch 0 completed, then a corrected re-send"""
        self._setup(tmp_path)
        self.processor.process_batch(self.identity, self._request([make_sale('F1')], index=0, total=2))

        with pytest.raises(ProcessingFailure) as exc:
            self.processor.process_batch(
                self.identity, self._request([make_sale('F2', grand_total='abc')], index=1, total=2))
        assert exc.value.batch_index == 1

        statuses = {e.batch_index: e.status for e in self.logs.list_for_agent('tis-agent-001')}
        assert statuses == {0: 'completed', 1: 'failed'}

        outcome = self.processor.process_batch(
            self.identity, self._request([make_sale('F2')], index=1, total=2))
        assert outcome.status == 'completed'
        assert self.logs.get_by_key('tis-agent-001', 'b1', 1).status == 'completed'
        assert self.records.count('sales') == 2

    def test_abandoned_processing_entry(self, tmp_path):
        """Test an in-flight batch is refused and counted, then reclaimed once stale"""
        self._setup(tmp_path)
        entry, _ = self.logs.start('tis-agent-001', 'tenant-1', 'sales', 'b1', 0, 1, 1)
        assert self.logs.mark_processing(entry.id) is True
        request = self._request([make_sale('F1')])

        with pytest.raises(ProcessingFailure) as exc:
            self.processor.process_batch(self.identity, request)
        assert exc.value.batch_index == 0
        agent = self.agents.get('tis-agent-001')
        assert agent.consecutive_errors == 1
        assert 'already being processed' in agent.last_error_message

        self.clock.advance(seconds=301)
        outcome = self.processor.process_batch(self.identity, request)
        assert outcome.status == 'completed'
        assert self.records.count('sales') == 1

    def test_default_currency(self, tmp_path):
        """Test sales without a currency get the configured default"""
        self._setup(tmp_path, currency='USD')
        sale = make_sale('F1')
        del sale['currency']
        self.processor.process_batch(self.identity, self._request([sale]))

        assert self.records.get_sale('tenant-1', 'F1')['currency'] == 'USD'

    def test_menu_upsert(self, tmp_path):
        """Test menu items are created then updated by external id"""
        self._setup(tmp_path)
        item = {'external_id': 'sr-prod-TAC01', 'code': 'TAC01', 'name': 'Tacos', 'price': 120}
        self.processor.process_batch(self.identity, self._request([item], sync_type='menu'))
        outcome = self.processor.process_batch(
            self.identity, self._request([dict(item, price=130)], sync_type='menu', batch_id='b2'))

        assert outcome.result['updated'] == 1
        assert self.records.count('menu_items') == 1
        assert self.agents.get('tis-agent-001').total_records_synced == 2

    def test_inventory_and_tables(self, tmp_path):
        """Test snapshot types are stored under their natural keys"""
        self._setup(tmp_path)
        self.processor.process_batch(self.identity, self._request(
            [{'external_id': 'sr-inv-TORT', 'code': 'TORT', 'current_stock': 2, 'min_stock': 5}],
            sync_type='inventory'))
        self.processor.process_batch(self.identity, self._request(
            [{'number': '7', 'status': 'occupied'}, {'number': None}],
            sync_type='tables', batch_id='b2'))

        assert self.records.count('inventory_items') == 1
        assert self.records.count('restaurant_tables') == 1

    def test_final_status(self):
        """Test partial needs more processed than failed records"""
        assert final_status(ApplyResult(processed=3)) == SyncLogStatus.COMPLETED
        assert final_status(ApplyResult(processed=2, failed=1)) == SyncLogStatus.PARTIAL
        assert final_status(ApplyResult(processed=1, failed=1)) == SyncLogStatus.FAILED
        assert final_status(ApplyResult(processed=0, failed=2)) == SyncLogStatus.FAILED


class TestRateLimiter:
    """Test per-agent token buckets"""

    def test_limit_and_refill(self):
        """Test requests past the limit wait for refill"""
        now = [0.0]
        limiter = RateLimiter(per_minute=2, clock=lambda: now[0])

        assert limiter.allow('a') == (True, 0.0)
        assert limiter.allow('a')[0] is True
        allowed, retry_after = limiter.allow('a')
        assert allowed is False
        assert retry_after == pytest.approx(30.0)
        assert limiter.allow('b')[0] is True

        now[0] = 31.0
        assert limiter.allow('a')[0] is True

    def test_idle_buckets_forgotten(self):
        """Test refilled buckets are dropped once too many agents are tracked"""
        now = [0.0]
        limiter = RateLimiter(per_minute=60, clock=lambda: now[0], max_agents=2)
        limiter.allow('a')
        limiter.allow('b')

        now[0] = 5.0
        limiter.allow('c')

        assert set(limiter._buckets) == {'c'}
        assert limiter.allow('a') == (True, 0.0)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
