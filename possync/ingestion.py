# Ingestion Processor - applies /sync batches idempotently
# Key: (agent_id, batch_id, batch_index). A completed or partial batch is replayed from its log.

import json
import logging
import sqlite3
import time
from functools import partial
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .cloud_auth import AgentIdentity
from .cloud_store import AgentInstanceStore, ApplyResult, RecordStore, SyncLogStore
from .errors import ProcessingFailure
from .status import SyncLogStatus, SyncType


logger = logging.getLogger(__name__)

CREATED = 'created'
UPDATED = 'updated'
SKIPPED = 'skipped'

DEFAULT_CURRENCY = 'MXN'


@dataclass
class SyncRequest:
    sync_type: str
    batch_id: str
    batch_index: int
    batch_total: int
    data: List[Any] = field(default_factory=list)
    payload_size_bytes: int = 0


@dataclass
class BatchOutcome:
    success: bool
    sync_type: str
    batch_id: str
    batch_index: int
    batch_total: int
    status: str
    result: Dict[str, int]
    duration_ms: int
    replayed: bool = False

    def to_response(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'sync_type': self.sync_type,
            'batch_id': self.batch_id,
            'batch_index': self.batch_index,
            'batch_total': self.batch_total,
            'status': self.status,
            'result': self.result,
            'duration_ms': self.duration_ms,
        }


def final_status(result: ApplyResult) -> SyncLogStatus:
    if result.failed > 0:
        return SyncLogStatus.PARTIAL if result.processed > result.failed else SyncLogStatus.FAILED
    return SyncLogStatus.COMPLETED


def _num(value, default: float = 0.0) -> float:
    if value is None or value == '':
        return default
    return float(value)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _apply_each(conn: sqlite3.Connection, records: List[Any], kind: str,
                key_of: Callable[[Dict], Optional[str]],
                write: Callable[[sqlite3.Connection, str, Dict], str]) -> ApplyResult:
    """Run write() per record inside its own savepoint and tally the outcomes"""
    result = ApplyResult()
    for record in records:
        key = key_of(record) if isinstance(record, dict) else None
        if key is None:
            result.skipped += 1
            continue
        conn.execute('SAVEPOINT record')
        try:
            outcome = write(conn, key, record)
        except (sqlite3.IntegrityError, ValueError, TypeError) as e:
            conn.execute('ROLLBACK TO SAVEPOINT record')
            conn.execute('RELEASE SAVEPOINT record')
            result.failed += 1
            result.errors.append(f"{kind} {key}: {e}")
            continue
        conn.execute('RELEASE SAVEPOINT record')
        result.processed += 1
        if outcome == CREATED:
            result.created += 1
        elif outcome == UPDATED:
            result.updated += 1
        else:
            result.skipped += 1
    return result


# -- sales -------------------------------------------------------------------

def sale_key(record: Dict) -> Optional[str]:
    """Receipt number (folio), falling back to the order number"""
    return _text(record.get('receipt_number')) or _text(record.get('order_number'))


def apply_sales(conn: sqlite3.Connection, identity: AgentIdentity, records: List[Any],
                now: str, currency: str = DEFAULT_CURRENCY) -> ApplyResult:
    """Insert-only; a sale already stored for the tenant/branch is skipped but counted processed"""
    branch = identity.branch_id or ''

    def write(c: sqlite3.Connection, key: str, sale: Dict) -> str:
        existing = c.execute('''
            SELECT id FROM sales WHERE tenant_id = ? AND branch_id = ? AND receipt_number = ?
        ''', (identity.tenant_id, branch, key)).fetchone()
        if existing:
            return SKIPPED

        cursor = c.execute('''
            INSERT INTO sales
            (tenant_id, branch_id, integration_id, agent_id, receipt_number, external_id,
             order_number, location_code, opened_at, closed_at, table_number, customer_id,
             server_id, subtotal, tax_total, discount_total, tip_total, grand_total, currency,
             status, order_type, guest_count, raw_payload, synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (identity.tenant_id, branch, identity.integration_id, identity.agent_id, key,
              _text(sale.get('external_id')), _text(sale.get('order_number')),
              _text(sale.get('location_code')) or identity.store_code,
              sale.get('opened_at'), sale.get('closed_at'), _text(sale.get('table_number')),
              _text(sale.get('customer_id')), _text(sale.get('server_id')),
              _num(sale.get('subtotal')), _num(sale.get('tax_total')),
              _num(sale.get('discount_total')), _num(sale.get('tip_total')),
              _num(sale.get('grand_total')), sale.get('currency') or currency,
              sale.get('status'), sale.get('order_type'),
              int(sale.get('guest_count') or 1), json.dumps(sale, default=str), now))
        sale_id = cursor.lastrowid

        for item in sale.get('items') or []:
            code = _text(item.get('product_code'))
            name = _text(item.get('product_name'))
            if not code and not name:
                continue
            c.execute('''
                INSERT INTO sale_items
                (sale_id, tenant_id, product_code, product_name, quantity, unit_price,
                 line_total, discount, tax, modifiers, notes, is_voided)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (sale_id, identity.tenant_id, code or name[:50], name or 'Unknown',
                  _num(item.get('quantity'), 1.0), _num(item.get('unit_price')),
                  _num(item.get('line_total')), _num(item.get('discount')), _num(item.get('tax')),
                  json.dumps(item.get('modifiers')) if item.get('modifiers') else None,
                  item.get('notes'), int(bool(item.get('is_voided')))))

        for payment in sale.get('payments') or []:
            amount = _num(payment.get('amount'))
            if amount <= 0:
                continue
            c.execute('''
                INSERT INTO payments
                (sale_id, tenant_id, method, method_name, amount, tip, currency, reference,
                 last_four_digits)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (sale_id, identity.tenant_id, payment.get('method') or 'other',
                  payment.get('method_name'), amount, _num(payment.get('tip')),
                  payment.get('currency') or sale.get('currency') or currency,
                  _text(payment.get('reference')), _text(payment.get('last_four_digits'))))
        return CREATED

    return _apply_each(conn, records, 'sale', sale_key, write)


# -- snapshots ---------------------------------------------------------------

def _catalog_key(record: Dict) -> Optional[str]:
    return _text(record.get('external_id')) or _text(record.get('code'))


def apply_menu(conn: sqlite3.Connection, identity: AgentIdentity, records: List[Any],
               now: str) -> ApplyResult:
    def write(c: sqlite3.Connection, key: str, item: Dict) -> str:
        values = (_text(item.get('code')), item.get('name') or 'Sin nombre',
                  _num(item.get('price')), item.get('category'),
                  int(item.get('is_available', True) is not False),
                  json.dumps(item, default=str), now)
        existing = c.execute('''
            SELECT id FROM menu_items WHERE tenant_id = ? AND integration_id = ? AND external_id = ?
        ''', (identity.tenant_id, identity.integration_id, key)).fetchone()
        if existing:
            c.execute('''
                UPDATE menu_items SET code = ?, name = ?, price = ?, category = ?,
                    is_available = ?, raw_data = ?, last_synced_at = ?
                WHERE id = ?
            ''', values + (existing['id'],))
            return UPDATED
        c.execute('''
            INSERT INTO menu_items
            (code, name, price, category, is_available, raw_data, last_synced_at,
             tenant_id, integration_id, external_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', values + (identity.tenant_id, identity.integration_id, key))
        return CREATED

    return _apply_each(conn, records, 'menu item', _catalog_key, write)


def apply_inventory(conn: sqlite3.Connection, identity: AgentIdentity, records: List[Any],
                    now: str) -> ApplyResult:
    def write(c: sqlite3.Connection, key: str, item: Dict) -> str:
        current = _num(item.get('current_stock'))
        minimum = _num(item.get('min_stock'))
        average_cost = item.get('average_cost')
        values = (_text(item.get('code')), item.get('name') or 'Sin nombre', item.get('unit'),
                  current, minimum, int(current <= minimum),
                  _num(average_cost) if average_cost is not None else None,
                  _num(item.get('stock_value')) if item.get('stock_value') is not None else None,
                  json.dumps(item, default=str), now)
        existing = c.execute('''
            SELECT id FROM inventory_items WHERE tenant_id = ? AND integration_id = ? AND external_id = ?
        ''', (identity.tenant_id, identity.integration_id, key)).fetchone()
        if existing:
            c.execute('''
                UPDATE inventory_items SET code = ?, name = ?, unit = ?, current_stock = ?,
                    min_stock = ?, is_low_stock = ?, average_cost = ?, stock_value = ?,
                    raw_data = ?, last_synced_at = ?
                WHERE id = ?
            ''', values + (existing['id'],))
            return UPDATED
        c.execute('''
            INSERT INTO inventory_items
            (code, name, unit, current_stock, min_stock, is_low_stock, average_cost, stock_value,
             raw_data, last_synced_at, tenant_id, integration_id, external_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', values + (identity.tenant_id, identity.integration_id, key))
        return CREATED

    return _apply_each(conn, records, 'inventory item', _catalog_key, write)


def _table_key(record: Dict) -> Optional[str]:
    return _text(record.get('number'))


def apply_tables(conn: sqlite3.Connection, identity: AgentIdentity, records: List[Any],
                 now: str) -> ApplyResult:
    branch = identity.branch_id or ''

    def write(c: sqlite3.Connection, key: str, table: Dict) -> str:
        capacity = table.get('capacity')
        values = (table.get('name') or f"Mesa {key}",
                  int(capacity) if capacity is not None else 4,
                  table.get('status') or 'available', table.get('section'),
                  json.dumps(table, default=str), now)
        existing = c.execute('''
            SELECT id FROM restaurant_tables WHERE tenant_id = ? AND branch_id = ? AND table_number = ?
        ''', (identity.tenant_id, branch, key)).fetchone()
        if existing:
            c.execute('''
                UPDATE restaurant_tables SET name = ?, capacity = ?, status = ?, section = ?,
                    raw_data = ?, last_synced_at = ?
                WHERE id = ?
            ''', values + (existing['id'],))
            return UPDATED
        c.execute('''
            INSERT INTO restaurant_tables
            (name, capacity, status, section, raw_data, last_synced_at,
             tenant_id, branch_id, table_number)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', values + (identity.tenant_id, branch, key))
        return CREATED

    return _apply_each(conn, records, 'table', _table_key, write)


APPLY_FUNCTIONS = {
    SyncType.SALES.value: apply_sales,
    SyncType.MENU.value: apply_menu,
    SyncType.INVENTORY.value: apply_inventory,
    SyncType.TABLES.value: apply_tables,
}


class IngestionProcessor:
    """Turns a validated /sync request into stored records, a finalized log and updated counters"""

    def __init__(self, agents: AgentInstanceStore, logs: SyncLogStore, records: RecordStore,
                 currency: str = DEFAULT_CURRENCY):
        self.agents = agents
        self.logs = logs
        self.records = records
        self.currency = currency

    def process_batch(self, identity: AgentIdentity, request: SyncRequest) -> BatchOutcome:
        started = time.monotonic()
        entry, created = self.logs.start(
            identity.agent_id, identity.tenant_id, request.sync_type, request.batch_id,
            request.batch_index, request.batch_total, len(request.data),
            request.payload_size_bytes,
        )

        if not created and entry.is_cached:
            logger.info(f"Replaying batch {request.batch_id}#{request.batch_index} "
                        f"for {identity.agent_id} ({entry.status})")
            cached = entry.result or {}
            return BatchOutcome(
                success=True,
                sync_type=entry.sync_type,
                batch_id=entry.batch_id,
                batch_index=entry.batch_index,
                batch_total=entry.batch_total,
                status=entry.status,
                result=cached.get('result', {}),
                duration_ms=cached.get('duration_ms', entry.duration_ms or 0),
                replayed=True,
            )

        if not self.logs.mark_processing(entry.id):
            message = f"Batch {request.batch_id}#{request.batch_index} is already being processed"
            self.agents.record_error(identity.agent_id, message)
            logger.warning(f"{identity.agent_id}: {message}")
            raise ProcessingFailure(message, batch_index=request.batch_index)

        apply = APPLY_FUNCTIONS[request.sync_type]
        if request.sync_type == SyncType.SALES.value:
            apply = partial(apply_sales, currency=self.currency)
        try:
            with self.records.batch() as conn:
                result = apply(conn, identity, request.data, self.records.now())
        except Exception as e:
            message = f"Batch {request.batch_index} ({request.sync_type}) failed: {e}"
            self.logs.finalize(entry.id, SyncLogStatus.FAILED, failed=len(request.data),
                               error_message=str(e))
            self.agents.record_error(identity.agent_id, message)
            logger.error(f"{identity.agent_id}: {message}")
            raise ProcessingFailure(message, batch_index=request.batch_index) from e

        status = final_status(result)
        duration_ms = int((time.monotonic() - started) * 1000)
        error_message = '; '.join(result.errors)[:2000] if result.errors else None
        self.logs.finalize(
            entry.id, status,
            processed=result.processed, created=result.created, updated=result.updated,
            skipped=result.skipped, failed=result.failed,
            error_message=error_message,
            result={'result': result.to_dict(), 'duration_ms': duration_ms},
        )

        if status == SyncLogStatus.FAILED:
            message = f"Batch {request.batch_index} ({request.sync_type}) failed: {error_message}"
            self.agents.record_error(identity.agent_id, message)
            logger.error(f"{identity.agent_id}: {message}")
            raise ProcessingFailure(message, batch_index=request.batch_index)

        self.agents.add_sync_totals(identity.agent_id, result.created + result.updated)
        if result.failed:
            self.agents.record_error(
                identity.agent_id,
                f"Batch {request.batch_index} ({request.sync_type}): {result.failed} records failed",
            )
        logger.info(
            f"{identity.agent_id}: {request.sync_type} batch {request.batch_index + 1}/"
            f"{request.batch_total} {status.value} ({result.processed} processed, "
            f"{result.created} created, {result.skipped} skipped, {result.failed} failed)"
        )
        return BatchOutcome(
            success=True,
            sync_type=request.sync_type,
            batch_id=request.batch_id,
            batch_index=request.batch_index,
            batch_total=request.batch_total,
            status=status.value,
            result=result.to_dict(),
            duration_ms=duration_ms,
        )
