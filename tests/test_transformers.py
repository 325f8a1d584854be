# Tests for Soft Restaurant -> canonical record transformers

from datetime import datetime

import pytest

from possync.models import SRSale, SRSaleItem, SRPayment, SRProduct, SRInventoryItem, SRTable
from possync.transformers import (
    payment_method,
    sale_status,
    transform_all,
    transform_inventory,
    transform_product,
    transform_sale,
    transform_table,
    unit_of,
)


def make_sale(**overrides) -> SRSale:
    sale = SRSale(
        id_venta=1042,
        numero_orden='A-77',
        folio='F-1042',
        estacion='CAJA1',
        almacen='SUC01',
        fecha_apertura=datetime(2026, 3, 1, 13, 5),
        fecha_cierre=datetime(2026, 3, 1, 14, 20),
        numero_mesa='12',
        codigo_mesero='M03',
        subtotal=431.03,
        impuestos=68.97,
        total=500.0,
        pagada=True,
        tipo_orden=1,
        numero_comensales=3,
        detalles=[
            SRSaleItem(codigo='TAC01', descripcion='Tacos al pastor', cantidad=2,
                       precio_unitario=120, importe=240),
            SRSaleItem(codigo='REF02', descripcion='Refresco', cantidad=2,
                       precio_unitario=45, importe=90),
        ],
        pagos=[
            SRPayment(forma_pago='Efectivo', monto=300),
            SRPayment(forma_pago='Tarjeta Visa', monto=200, propina=20, ultimos4_digitos='4242'),
        ],
    )
    for key, value in overrides.items():
        setattr(sale, key, value)
    return sale


class TestSaleTransformer:
    """Test sale transformation"""

    def test_transform_sale_fields(self):
        """Test identifiers, totals and nested records"""
        record = transform_sale(make_sale())

        assert record['external_id'] == 'sr-1042'
        assert record['receipt_number'] == 'F-1042'
        assert record['order_number'] == 'A-77'
        assert record['grand_total'] == 500.0
        assert record['currency'] == 'MXN'
        assert record['status'] == 'completed'
        assert record['order_type'] == 'dine_in'
        assert record['opened_at'] == '2026-03-01T13:05:00'
        assert len(record['items']) == 2
        assert record['items'][0]['product_code'] == 'TAC01'
        assert [p['method'] for p in record['payments']] == ['cash', 'card']
        assert record['payments'][1]['last_four_digits'] == '4242'
        assert record['metadata']['sr_id_venta'] == 1042

    def test_transform_sale_currency(self):
        """Test explicit currency is applied to sale and payments"""
        record = transform_sale(make_sale(), currency='USD')

        assert record['currency'] == 'USD'
        assert all(p['currency'] == 'USD' for p in record['payments'])

    def test_transform_does_not_mutate_input(self):
        """Test the native record is left untouched"""
        sale = make_sale()
        transform_sale(sale)

        assert sale.folio == 'F-1042'
        assert len(sale.detalles) == 2

    def test_missing_optional_fields(self):
        """Test an almost empty sale still produces a complete record"""
        record = transform_sale(SRSale(id_venta=5))

        assert record['external_id'] == 'sr-5'
        assert record['items'] == []
        assert record['payments'] == []
        assert record['opened_at'] is None
        assert record['guest_count'] == 1

    def test_sale_status_precedence(self):
        """Test cancelled wins over paid, paid over closed"""
        assert sale_status(make_sale(cancelada=True)) == 'cancelled'
        assert sale_status(make_sale()) == 'completed'
        assert sale_status(make_sale(pagada=False)) == 'closed'
        assert sale_status(make_sale(pagada=False, fecha_cierre=None)) == 'open'


class TestPaymentMethod:
    """Test payment method mapping"""

    @pytest.mark.parametrize('name,expected', [
        ('Efectivo', 'cash'),
        ('TARJETA MASTERCARD', 'card'),
        ('debit', 'card'),
        ('Transferencia', 'bank_transfer'),
        ('Vale despensa', 'voucher'),
        ('Cortesia', 'courtesy'),
        ('Credito', 'credit'),
        ('Fiado', 'credit'),
        ('Bitcoin', 'other'),
        (None, 'other'),
    ])
    def test_payment_method(self, name, expected):
        """Test SR payment names map to canonical methods"""
        assert payment_method(name) == expected


class TestCatalogTransformers:
    """Test product, inventory and table transformation"""

    def test_transform_product(self):
        """Test product identifiers and units"""
        record = transform_product(SRProduct(codigo='TAC01', descripcion='Tacos', precio=120,
                                             unidad_medida='PZA', activo=False))

        assert record['external_id'] == 'sr-prod-TAC01'
        assert record['price'] == 120.0
        assert record['unit'] == 'unit'
        assert record['is_available'] is False

    def test_transform_inventory_low_stock(self):
        """Test low stock flag and stock value"""
        record = transform_inventory(SRInventoryItem(
            codigo='TORT', descripcion='Tortilla', unidad_medida='KG',
            existencia_actual=4, existencia_minima=5, costo_promedio=22.333,
        ))

        assert record['external_id'] == 'sr-inv-TORT'
        assert record['unit'] == 'kg'
        assert record['is_low_stock'] is True
        assert record['stock_value'] == 89.33
        assert record['metadata']['temperature_requirements'] == ''

    def test_transform_inventory_at_minimum_is_low(self):
        """Test stock equal to the minimum counts as low"""
        record = transform_inventory(SRInventoryItem(codigo='X', existencia_actual=5,
                                                     existencia_minima=5))

        assert record['is_low_stock'] is True

    def test_transform_table(self):
        """Test table status and shape mapping"""
        record = transform_table(SRTable(numero='7', estado='Ocupada', forma='REDONDA'))

        assert record['external_id'] == 'sr-table-7'
        assert record['name'] == 'Mesa 7'
        assert record['status'] == 'occupied'
        assert record['shape'] == 'redonda'

    def test_unknown_unit_passes_through(self):
        """Test unknown unit codes are lower-cased"""
        assert unit_of('GALON') == 'galon'
        assert unit_of(None) == 'unit'

    def test_transform_all(self):
        """Test batch transformation by sync type"""
        records = transform_all('tables', [SRTable(numero='1'), SRTable(numero='2', estado='??')])

        assert [r['number'] for r in records] == ['1', '2']
        assert records[1]['status'] == 'available'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
