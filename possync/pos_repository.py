# Soft Restaurant repository - bounded, ordered reads from the POS SQL Server database
# The repository never tracks its own position: callers pass the acknowledged cursor.

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from .models import (
    SRSale, SRSaleItem, SRPayment, SRProduct, SRInventoryItem, SRTable, SRDatabaseStats,
)

logger = logging.getLogger(__name__)

ODBC_DRIVER = 'ODBC Driver 17 for SQL Server'


def build_connection_string(instance: str, database: str = 'master',
                            driver: str = ODBC_DRIVER, timeout: int = 5) -> str:
    """Trusted (Windows auth) connection string for a local SQL Server instance"""
    return (
        f"DRIVER={{{driver}}};SERVER={instance};DATABASE={database};"
        f"Trusted_Connection=yes;TrustServerCertificate=yes;Connection Timeout={timeout}"
    )


def odbc_connect(connection_string: str, timeout: int = 30):
    """Default connection factory (pyodbc)"""
    import pyodbc  # needs the system ODBC driver manager, so only loaded when used
    conn = pyodbc.connect(connection_string, timeout=timeout, autocommit=True)
    conn.timeout = timeout
    return conn


def _rows(cursor) -> List[Dict]:
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


_SALE_COLUMNS = '''
    v.IdVenta,
    v.NumeroOrden,
    v.Folio AS FolioVenta,
    ISNULL(v.Estacion, '') AS Estacion,
    ISNULL(v.Almacen, '') AS Almacen,
    v.FechaApertura,
    v.FechaCierre,
    v.NumeroMesa,
    v.CodigoCliente,
    c.Nombre AS NombreCliente,
    v.CodigoEmpleado AS CodigoMesero,
    e.Nombre AS NombreMesero,
    v.Observaciones,
    ISNULL(v.Subtotal, 0) AS Subtotal,
    ISNULL(v.Impuestos, 0) AS Impuestos,
    ISNULL(v.Descuento, 0) AS Descuento,
    ISNULL(v.Propina, 0) AS Propina,
    ISNULL(v.Total, 0) AS Total,
    v.Moneda,
    ISNULL(v.Cancelada, 0) AS Cancelada,
    ISNULL(v.Pagada, 0) AS Pagada,
    ISNULL(v.TipoOrden, 1) AS TipoOrden,
    ISNULL(v.NumeroComensales, 1) AS NumeroComensales
'''

_PRODUCT_COLUMNS = '''
    p.Codigo,
    p.Descripcion,
    ISNULL(p.Precio, 0) AS Precio,
    p.PrecioMayoreo,
    p.Costo,
    c.Descripcion AS Categoria,
    p.CodigoCategoria,
    ISNULL(p.Activo, 1) AS Activo,
    ISNULL(p.EsReceta, 0) AS EsReceta,
    ISNULL(p.EsModificador, 0) AS EsModificador,
    p.TiempoPreparacion,
    p.Calorias,
    p.Alergenos,
    p.DescripcionMenu,
    p.Imagen,
    p.CodigoBarras,
    ISNULL(p.UnidadMedida, 'PZA') AS UnidadMedida,
    ISNULL(p.TasaImpuesto, 0) AS TasaImpuesto,
    ISNULL(p.PrecioIncluyeImpuesto, 0) AS PrecioIncluyeImpuesto,
    ISNULL(p.Orden, 0) AS Orden,
    p.Impresora,
    p.FechaModificacion
'''


def _sale_from_row(row: Dict) -> SRSale:
    return SRSale(
        id_venta=int(row['IdVenta']),
        numero_orden=row.get('NumeroOrden') or '',
        folio=row.get('FolioVenta') or '',
        estacion=row.get('Estacion') or '',
        almacen=row.get('Almacen') or '',
        fecha_apertura=row.get('FechaApertura'),
        fecha_cierre=row.get('FechaCierre'),
        numero_mesa=row.get('NumeroMesa'),
        codigo_cliente=row.get('CodigoCliente'),
        nombre_cliente=row.get('NombreCliente'),
        codigo_mesero=row.get('CodigoMesero'),
        nombre_mesero=row.get('NombreMesero'),
        observaciones=row.get('Observaciones'),
        subtotal=float(row.get('Subtotal') or 0),
        impuestos=float(row.get('Impuestos') or 0),
        descuento=float(row.get('Descuento') or 0),
        propina=float(row.get('Propina') or 0),
        total=float(row.get('Total') or 0),
        moneda=row.get('Moneda'),
        cancelada=bool(row.get('Cancelada')),
        pagada=bool(row.get('Pagada')),
        tipo_orden=int(row.get('TipoOrden') or 1),
        numero_comensales=int(row.get('NumeroComensales') or 1),
    )


def _item_from_row(row: Dict) -> SRSaleItem:
    return SRSaleItem(
        codigo=row.get('Codigo') or '',
        descripcion=row.get('Descripcion') or '',
        cantidad=float(row.get('Cantidad') or 0),
        precio_unitario=float(row.get('PrecioUnitario') or 0),
        importe=float(row.get('Importe') or 0),
        descuento=float(row.get('Descuento') or 0),
        impuesto=float(row.get('Impuesto') or 0),
        modificadores=row.get('Modificadores'),
        notas=row.get('Notas'),
        codigo_categoria=row.get('CodigoCategoria'),
        cancelado=bool(row.get('Cancelado')),
        hora_envio=row.get('HoraEnvio'),
        hora_servido=row.get('HoraServido'),
    )


def _payment_from_row(row: Dict) -> SRPayment:
    return SRPayment(
        forma_pago=row.get('FormaPago'),
        monto=float(row.get('Monto') or 0),
        referencia=row.get('Referencia'),
        propina=float(row.get('Propina') or 0),
        moneda=row.get('Moneda'),
        tipo_cambio=float(row.get('TipoCambio') or 1),
        ultimos4_digitos=row.get('Ultimos4Digitos'),
        marca_tarjeta=row.get('MarcaTarjeta'),
    )


def _product_from_row(row: Dict) -> SRProduct:
    return SRProduct(
        codigo=row.get('Codigo') or '',
        descripcion=row.get('Descripcion') or '',
        precio=float(row.get('Precio') or 0),
        precio_mayoreo=row.get('PrecioMayoreo'),
        costo=row.get('Costo'),
        categoria=row.get('Categoria'),
        codigo_categoria=row.get('CodigoCategoria'),
        activo=bool(row.get('Activo', True)),
        es_receta=bool(row.get('EsReceta')),
        es_modificador=bool(row.get('EsModificador')),
        tiempo_preparacion=row.get('TiempoPreparacion'),
        calorias=row.get('Calorias'),
        alergenos=row.get('Alergenos'),
        descripcion_menu=row.get('DescripcionMenu'),
        imagen=row.get('Imagen'),
        codigo_barras=row.get('CodigoBarras'),
        unidad_medida=row.get('UnidadMedida'),
        tasa_impuesto=float(row.get('TasaImpuesto') or 0),
        precio_incluye_impuesto=bool(row.get('PrecioIncluyeImpuesto')),
        orden=int(row.get('Orden') or 0),
        impresora=row.get('Impresora'),
        fecha_modificacion=row.get('FechaModificacion'),
    )


def _inventory_from_row(row: Dict) -> SRInventoryItem:
    return SRInventoryItem(
        codigo=row.get('Codigo') or '',
        descripcion=row.get('Descripcion') or '',
        unidad_medida=row.get('UnidadMedida'),
        existencia_actual=float(row.get('ExistenciaActual') or 0),
        existencia_minima=float(row.get('ExistenciaMinima') or 0),
        existencia_maxima=row.get('ExistenciaMaxima'),
        costo_promedio=float(row.get('CostoPromedio') or 0),
        ultimo_costo=row.get('UltimoCosto'),
        ultima_compra=row.get('UltimaCompra'),
        categoria=row.get('Categoria'),
        codigo_categoria=row.get('CodigoCategoria'),
        activo=bool(row.get('Activo', True)),
        almacen=row.get('Almacen'),
        codigo_proveedor=row.get('CodigoProveedor'),
        nombre_proveedor=row.get('NombreProveedor'),
        codigo_barras=row.get('CodigoBarras'),
        es_perecedero=bool(row.get('EsPerecedero')),
        dias_vigencia=row.get('DiasVigencia'),
        temperatura=row.get('Temperatura'),
        ultimo_conteo=row.get('UltimoConteo'),
    )


def _table_from_row(row: Dict) -> SRTable:
    return SRTable(
        numero=str(row.get('Numero') or ''),
        nombre=row.get('Nombre'),
        capacidad=int(row.get('Capacidad') or 4),
        seccion=row.get('Seccion'),
        estado=row.get('Estado'),
        orden_actual=row.get('OrdenActual'),
        mesero_asignado=row.get('MeseroAsignado'),
        hora_ocupacion=row.get('HoraOcupacion'),
        numero_comensales=row.get('NumeroComensales'),
        activo=bool(row.get('Activo', True)),
        orden=int(row.get('Orden') or 0),
        posicion_x=row.get('PosicionX'),
        posicion_y=row.get('PosicionY'),
        forma=row.get('Forma'),
    )


class SoftRestaurantRepository:
    """Read-only access to a Soft Restaurant database"""

    def __init__(self, connection_string: str, connect: Callable = None,
                 query_timeout: int = 30, store_code: Optional[str] = None):
        self.connection_string = connection_string
        self.connect = connect or odbc_connect
        self.query_timeout = query_timeout
        self.store_code = store_code or None
        if self.store_code:
            logger.info(f"Repository filtering by store code {self.store_code}")

    def _open(self):
        return self.connect(self.connection_string, timeout=self.query_timeout)

    def _query(self, conn, sql: str, params: Sequence = ()) -> List[Dict]:
        cursor = conn.cursor()
        try:
            if params:
                cursor.execute(sql, tuple(params))
            else:
                cursor.execute(sql)
            return _rows(cursor)
        finally:
            cursor.close()

    def _scalar(self, conn, sql: str, params: Sequence = ()):
        cursor = conn.cursor()
        try:
            if params:
                cursor.execute(sql, tuple(params))
            else:
                cursor.execute(sql)
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            cursor.close()

    def test_connection(self) -> bool:
        try:
            conn = self._open()
        except Exception as e:
            logger.error(f"Connection test failed: {e}")
            return False
        try:
            self._scalar(conn, 'SELECT 1')
            return True
        except Exception as e:
            logger.error(f"Connection test failed: {e}")
            return False
        finally:
            conn.close()

    def get_new_sales(self, after_id: int = 0, limit: int = 100) -> List[SRSale]:
        """Closed sales with IdVenta > after_id, ascending, at most limit rows"""
        store_filter = 'AND v.Almacen = ?' if self.store_code else ''
        sql = f'''
            SELECT TOP ({int(limit)})
            {_SALE_COLUMNS}
            FROM dbo.Ventas v
            LEFT JOIN dbo.Clientes c ON v.CodigoCliente = c.Codigo
            LEFT JOIN dbo.Empleados e ON v.CodigoEmpleado = e.Codigo
            WHERE v.IdVenta > ?
              AND v.FechaCierre IS NOT NULL
              {store_filter}
            ORDER BY v.IdVenta ASC
        '''
        params = [int(after_id)]
        if self.store_code:
            params.append(self.store_code)

        conn = self._open()
        try:
            sales = [_sale_from_row(row) for row in self._query(conn, sql, params)]
            if sales:
                order_numbers = [s.numero_orden for s in sales]
                items = self._load_items(conn, order_numbers)
                payments = self._load_payments(conn, order_numbers)
                for sale in sales:
                    sale.detalles = items.get(sale.numero_orden, [])
                    sale.pagos = payments.get(sale.numero_orden, [])
        finally:
            conn.close()

        logger.debug(f"Retrieved {len(sales)} sales after id {after_id}")
        return sales

    def _load_items(self, conn, order_numbers: List[str]) -> Dict[str, List[SRSaleItem]]:
        placeholders = ', '.join('?' for _ in order_numbers)
        sql = f'''
            SELECT
                d.NumeroOrden,
                d.CodigoProducto AS Codigo,
                ISNULL(p.Descripcion, d.Descripcion) AS Descripcion,
                d.Cantidad,
                d.PrecioUnitario,
                d.Importe,
                ISNULL(d.Descuento, 0) AS Descuento,
                ISNULL(d.Impuesto, 0) AS Impuesto,
                d.Modificadores,
                d.Notas,
                p.CodigoCategoria,
                ISNULL(d.Cancelado, 0) AS Cancelado,
                d.HoraEnvio,
                d.HoraServido
            FROM dbo.DetalleVentas d
            LEFT JOIN dbo.Productos p ON d.CodigoProducto = p.Codigo
            WHERE d.NumeroOrden IN ({placeholders})
            ORDER BY d.NumeroOrden, d.IdDetalle
        '''
        grouped: Dict[str, List[SRSaleItem]] = {}
        for row in self._query(conn, sql, order_numbers):
            grouped.setdefault(row['NumeroOrden'], []).append(_item_from_row(row))
        return grouped

    def _load_payments(self, conn, order_numbers: List[str]) -> Dict[str, List[SRPayment]]:
        placeholders = ', '.join('?' for _ in order_numbers)
        sql = f'''
            SELECT
                p.NumeroOrden,
                ISNULL(f.Descripcion, p.FormaPago) AS FormaPago,
                p.Monto,
                p.Referencia,
                ISNULL(p.Propina, 0) AS Propina,
                p.Moneda,
                ISNULL(p.TipoCambio, 1) AS TipoCambio,
                p.Ultimos4Digitos,
                p.MarcaTarjeta
            FROM dbo.PagosVenta p
            LEFT JOIN dbo.FormasPago f ON p.FormaPago = f.Codigo
            WHERE p.NumeroOrden IN ({placeholders})
        '''
        grouped: Dict[str, List[SRPayment]] = {}
        for row in self._query(conn, sql, order_numbers):
            grouped.setdefault(row['NumeroOrden'], []).append(_payment_from_row(row))
        return grouped

    def get_all_products(self, include_inactive: bool = False) -> List[SRProduct]:
        sql = f'''
            SELECT
            {_PRODUCT_COLUMNS}
            FROM dbo.Productos p
            LEFT JOIN dbo.Categorias c ON p.CodigoCategoria = c.Codigo
            WHERE (? = 1 OR ISNULL(p.Activo, 1) = 1)
            ORDER BY c.Descripcion, p.Descripcion
        '''
        conn = self._open()
        try:
            rows = self._query(conn, sql, [1 if include_inactive else 0])
        finally:
            conn.close()
        logger.debug(f"Retrieved {len(rows)} products")
        return [_product_from_row(row) for row in rows]

    def get_modified_products(self, since: datetime) -> List[SRProduct]:
        sql = f'''
            SELECT
            {_PRODUCT_COLUMNS}
            FROM dbo.Productos p
            LEFT JOIN dbo.Categorias c ON p.CodigoCategoria = c.Codigo
            WHERE p.FechaModificacion > ?
            ORDER BY p.FechaModificacion
        '''
        conn = self._open()
        try:
            rows = self._query(conn, sql, [since])
        finally:
            conn.close()
        logger.debug(f"Retrieved {len(rows)} products modified since {since}")
        return [_product_from_row(row) for row in rows]

    def get_all_inventory(self) -> List[SRInventoryItem]:
        store_filter = 'AND i.Almacen = ?' if self.store_code else ''
        sql = f'''
            SELECT
                i.Codigo,
                i.Descripcion,
                ISNULL(i.UnidadMedida, 'PZA') AS UnidadMedida,
                ISNULL(i.ExistenciaActual, 0) AS ExistenciaActual,
                ISNULL(i.ExistenciaMinima, 0) AS ExistenciaMinima,
                i.ExistenciaMaxima,
                ISNULL(i.CostoPromedio, 0) AS CostoPromedio,
                i.UltimoCosto,
                i.UltimaCompra,
                c.Descripcion AS Categoria,
                i.CodigoCategoria,
                ISNULL(i.Activo, 1) AS Activo,
                i.Almacen,
                i.CodigoProveedor,
                pr.Nombre AS NombreProveedor,
                i.CodigoBarras,
                ISNULL(i.EsPerecedero, 0) AS EsPerecedero,
                i.DiasVigencia,
                i.UltimoConteo
            FROM dbo.Inventario i
            LEFT JOIN dbo.CategoriasInventario c ON i.CodigoCategoria = c.Codigo
            LEFT JOIN dbo.Proveedores pr ON i.CodigoProveedor = pr.Codigo
            WHERE ISNULL(i.Activo, 1) = 1
            {store_filter}
            ORDER BY c.Descripcion, i.Descripcion
        '''
        params = [self.store_code] if self.store_code else []
        conn = self._open()
        try:
            rows = self._query(conn, sql, params)
        finally:
            conn.close()
        logger.debug(f"Retrieved {len(rows)} inventory items")
        return [_inventory_from_row(row) for row in rows]

    def get_all_tables(self) -> List[SRTable]:
        sql = '''
            SELECT
                m.Numero,
                ISNULL(m.Nombre, m.Numero) AS Nombre,
                ISNULL(m.Capacidad, 4) AS Capacidad,
                m.Seccion,
                CASE WHEN v.IdVenta IS NOT NULL THEN 'Ocupada' ELSE 'Libre' END AS Estado,
                v.NumeroOrden AS OrdenActual,
                e.Nombre AS MeseroAsignado,
                v.FechaApertura AS HoraOcupacion,
                v.NumeroComensales,
                ISNULL(m.Activo, 1) AS Activo,
                ISNULL(m.Orden, 0) AS Orden,
                m.PosicionX,
                m.PosicionY,
                m.Forma
            FROM dbo.Mesas m
            LEFT JOIN dbo.Ventas v
                ON m.Numero = v.NumeroMesa AND v.FechaCierre IS NULL AND ISNULL(v.Cancelada, 0) = 0
            LEFT JOIN dbo.Empleados e ON v.CodigoEmpleado = e.Codigo
            WHERE ISNULL(m.Activo, 1) = 1
            ORDER BY m.Seccion, m.Orden, m.Numero
        '''
        conn = self._open()
        try:
            rows = self._query(conn, sql)
        finally:
            conn.close()
        logger.debug(f"Retrieved {len(rows)} tables")
        return [_table_from_row(row) for row in rows]

    def get_max_sale_id(self) -> int:
        conn = self._open()
        try:
            value = self._scalar(conn, 'SELECT ISNULL(MAX(IdVenta), 0) FROM dbo.Ventas')
        finally:
            conn.close()
        return int(value or 0)

    def get_stats(self) -> SRDatabaseStats:
        """Snapshot counters; missing tables yield zeros rather than an error"""
        sql = '''
            SELECT
                (SELECT COUNT(*) FROM dbo.Productos) AS TotalProductos,
                (SELECT COUNT(*) FROM dbo.Productos WHERE ISNULL(Activo, 1) = 1) AS ProductosActivos,
                (SELECT COUNT(*) FROM dbo.Inventario WHERE ISNULL(Activo, 1) = 1) AS TotalInventario,
                (SELECT COUNT(*) FROM dbo.Inventario WHERE ISNULL(Activo, 1) = 1
                    AND ExistenciaActual <= ExistenciaMinima) AS ItemsBajoStock,
                (SELECT COUNT(*) FROM dbo.Mesas WHERE ISNULL(Activo, 1) = 1) AS TotalMesas,
                (SELECT COUNT(*) FROM dbo.Ventas) AS TotalVentas,
                (SELECT ISNULL(SUM(Total), 0) FROM dbo.Ventas
                    WHERE CAST(FechaCierre AS DATE) = CAST(GETDATE() AS DATE)
                    AND ISNULL(Cancelada, 0) = 0) AS VentasHoy,
                (SELECT MAX(FechaCierre) FROM dbo.Ventas) AS UltimaVenta
        '''
        stats = SRDatabaseStats()
        try:
            conn = self._open()
            try:
                rows = self._query(conn, sql)
            finally:
                conn.close()
        except Exception as e:
            logger.warning(f"Error fetching stats (some tables may not exist): {e}")
            return stats
        if rows:
            row = rows[0]
            stats.total_productos = int(row.get('TotalProductos') or 0)
            stats.productos_activos = int(row.get('ProductosActivos') or 0)
            stats.total_inventario = int(row.get('TotalInventario') or 0)
            stats.items_bajo_stock = int(row.get('ItemsBajoStock') or 0)
            stats.total_mesas = int(row.get('TotalMesas') or 0)
            stats.total_ventas = int(row.get('TotalVentas') or 0)
            stats.ventas_hoy = float(row.get('VentasHoy') or 0)
            stats.ultima_venta = row.get('UltimaVenta')
        return stats
