# Transformers - Soft Restaurant native records -> canonical wire records
# Pure functions: no I/O, input never mutated, missing optional fields get defaults.

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .models import SRSale, SRSaleItem, SRPayment, SRProduct, SRInventoryItem, SRTable

DEFAULT_CURRENCY = 'MXN'
SOURCE = 'soft_restaurant'

ORDER_TYPES = {
    1: 'dine_in',
    2: 'takeout',
    3: 'delivery',
    4: 'drive_thru',
}

# SR unit code -> canonical unit; unknown codes are passed through lower-cased
UNITS = {
    'PZA': 'unit',
    'KG': 'kg',
    'GR': 'g',
    'LT': 'l',
    'ML': 'ml',
    'OZ': 'oz',
    'LB': 'lb',
    'CAJA': 'box',
    'CAJAS': 'box',
    'BOLSA': 'bag',
    'BOLSAS': 'bag',
    'BOTELLA': 'bottle',
    'BOTELLAS': 'bottle',
    'LATA': 'can',
    'LATAS': 'can',
}

TABLE_STATUSES = {
    'libre': 'available',
    'available': 'available',
    'disponible': 'available',
    'ocupada': 'occupied',
    'ocupado': 'occupied',
    'occupied': 'occupied',
    'reservada': 'reserved',
    'reservado': 'reserved',
    'reserved': 'reserved',
    'cuenta': 'waiting_payment',
    'bill': 'waiting_payment',
    'esperando pago': 'waiting_payment',
    'bloqueada': 'blocked',
    'blocked': 'blocked',
    'no disponible': 'blocked',
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _num(value, default: float = 0.0) -> float:
    return float(value) if value is not None else default


def _opt_num(value) -> Optional[float]:
    return float(value) if value is not None else None


def _text(value: Optional[str]) -> str:
    return (value or '').strip()


def sale_status(sale: SRSale) -> str:
    """cancelled > completed (paid) > closed > open"""
    if sale.cancelada:
        return 'cancelled'
    if sale.pagada:
        return 'completed'
    if sale.fecha_cierre is not None:
        return 'closed'
    return 'open'


def order_type(tipo_orden: Optional[int]) -> str:
    return ORDER_TYPES.get(tipo_orden, 'dine_in')


def payment_method(forma_pago: Optional[str]) -> str:
    name = _text(forma_pago).lower()
    if not name:
        return 'other'
    if 'efectivo' in name or 'cash' in name:
        return 'cash'
    if 'tarjeta' in name or 'card' in name or name in ('credit', 'debit', 'debito'):
        return 'card'
    if 'transfer' in name:
        return 'bank_transfer'
    if 'vale' in name or 'voucher' in name:
        return 'voucher'
    if 'cortesia' in name or 'courtesy' in name:
        return 'courtesy'
    if 'credito' in name or 'fiado' in name:
        return 'credit'
    return 'other'


def unit_of(unidad: Optional[str]) -> str:
    code = _text(unidad).upper()
    if not code:
        return 'unit'
    return UNITS.get(code, code.lower())


def table_status(estado: Optional[str]) -> str:
    return TABLE_STATUSES.get(_text(estado).lower(), 'available')


def transform_sale_item(item: SRSaleItem) -> Dict[str, Any]:
    return {
        'product_code': item.codigo,
        'product_name': item.descripcion,
        'quantity': _num(item.cantidad),
        'unit_price': _num(item.precio_unitario),
        'line_total': _num(item.importe),
        'discount': _num(item.descuento),
        'tax': _num(item.impuesto),
        'modifiers': item.modificadores,
        'notes': item.notas,
        'category_code': item.codigo_categoria,
        'is_voided': bool(item.cancelado),
        'sent_at': _iso(item.hora_envio),
        'served_at': _iso(item.hora_servido),
    }


def transform_payment(payment: SRPayment, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    return {
        'method': payment_method(payment.forma_pago),
        'method_name': payment.forma_pago,
        'amount': _num(payment.monto),
        'tip': _num(payment.propina),
        'reference': payment.referencia,
        'currency': payment.moneda or currency,
        'exchange_rate': _num(payment.tipo_cambio, 1.0),
        'card_brand': payment.marca_tarjeta,
        'last_four_digits': payment.ultimos4_digitos,
    }


def transform_sale(sale: SRSale, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    currency = sale.moneda or currency
    return {
        'external_id': f"sr-{sale.id_venta}",
        'order_number': sale.numero_orden or '',
        'receipt_number': sale.folio or '',
        'station_id': sale.estacion or '',
        'location_code': sale.almacen or '',
        'opened_at': _iso(sale.fecha_apertura),
        'closed_at': _iso(sale.fecha_cierre),
        'table_number': sale.numero_mesa,
        'customer_id': sale.codigo_cliente,
        'customer_name': sale.nombre_cliente,
        'server_id': sale.codigo_mesero,
        'server_name': sale.nombre_mesero,
        'notes': sale.observaciones,
        'subtotal': _num(sale.subtotal),
        'tax_total': _num(sale.impuestos),
        'discount_total': _num(sale.descuento),
        'tip_total': _num(sale.propina),
        'grand_total': _num(sale.total),
        'currency': currency,
        'status': sale_status(sale),
        'order_type': order_type(sale.tipo_orden),
        'guest_count': sale.numero_comensales or 1,
        'items': [transform_sale_item(d) for d in (sale.detalles or [])],
        'payments': [transform_payment(p, currency) for p in (sale.pagos or [])],
        'metadata': {
            'source': SOURCE,
            'sr_id_venta': sale.id_venta,
            'sr_folio': sale.folio,
        },
    }


def transform_product(product: SRProduct, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    return {
        'external_id': f"sr-prod-{product.codigo}",
        'code': product.codigo,
        'name': product.descripcion or '',
        'price': _num(product.precio),
        'wholesale_price': _opt_num(product.precio_mayoreo),
        'cost': _opt_num(product.costo),
        'currency': currency,
        'category': product.categoria,
        'category_code': product.codigo_categoria,
        'is_active': bool(product.activo),
        'is_available': bool(product.activo),
        'is_recipe': bool(product.es_receta),
        'is_modifier': bool(product.es_modificador),
        'prep_time_minutes': product.tiempo_preparacion,
        'calories': product.calorias,
        'allergens': product.alergenos,
        'menu_description': product.descripcion_menu,
        'image_url': product.imagen,
        'barcode': product.codigo_barras,
        'unit': unit_of(product.unidad_medida),
        'tax_rate': _num(product.tasa_impuesto),
        'price_includes_tax': bool(product.precio_incluye_impuesto),
        'sort_order': product.orden or 0,
        'printer': product.impresora,
        'modified_at': _iso(product.fecha_modificacion),
        'metadata': {'source': SOURCE, 'sr_codigo': product.codigo},
    }


def transform_inventory(item: SRInventoryItem, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    current = _num(item.existencia_actual)
    minimum = _num(item.existencia_minima)
    average_cost = _num(item.costo_promedio)
    return {
        'external_id': f"sr-inv-{item.codigo}",
        'code': item.codigo,
        'name': item.descripcion or '',
        'unit': unit_of(item.unidad_medida),
        'current_stock': current,
        'min_stock': minimum,
        'max_stock': _opt_num(item.existencia_maxima),
        'average_cost': average_cost,
        'last_cost': _opt_num(item.ultimo_costo),
        'last_purchase': _iso(item.ultima_compra),
        'currency': currency,
        'category': item.categoria,
        'category_code': item.codigo_categoria,
        'is_active': bool(item.activo),
        'location_code': item.almacen,
        'supplier_id': item.codigo_proveedor,
        'supplier_name': item.nombre_proveedor,
        'barcode': item.codigo_barras,
        'is_perishable': bool(item.es_perecedero),
        'shelf_life_days': item.dias_vigencia,
        'is_low_stock': current <= minimum,
        'stock_value': round(current * average_cost, 2),
        'metadata': {
            'source': SOURCE,
            'sr_codigo': item.codigo,
            'temperature_requirements': item.temperatura or '',
            'last_count': _iso(item.ultimo_conteo),
        },
    }


def transform_table(table: SRTable, currency: str = DEFAULT_CURRENCY) -> Dict[str, Any]:
    return {
        'external_id': f"sr-table-{table.numero}",
        'number': table.numero,
        'name': table.nombre or (f"Mesa {table.numero}" if table.numero else ''),
        'capacity': table.capacidad if table.capacidad is not None else 4,
        'section': table.seccion,
        'status': table_status(table.estado),
        'current_order_number': table.orden_actual,
        'assigned_server': table.mesero_asignado,
        'occupied_at': _iso(table.hora_ocupacion),
        'guest_count': table.numero_comensales,
        'is_active': bool(table.activo),
        'sort_order': table.orden or 0,
        'position_x': table.posicion_x,
        'position_y': table.posicion_y,
        'shape': table.forma.lower() if table.forma else None,
        'metadata': {'source': SOURCE},
    }


TRANSFORMERS: Dict[str, Callable[..., Dict[str, Any]]] = {
    'sales': transform_sale,
    'menu': transform_product,
    'inventory': transform_inventory,
    'tables': transform_table,
}


def transform_many(sync_type: str, records: Iterable, currency: str = DEFAULT_CURRENCY) -> Iterator[Dict[str, Any]]:
    """Lazily transform native records of one sync type"""
    transform = TRANSFORMERS[sync_type]
    for record in records:
        yield transform(record, currency)


def transform_all(sync_type: str, records: Iterable, currency: str = DEFAULT_CURRENCY) -> List[Dict[str, Any]]:
    return list(transform_many(sync_type, records, currency))
