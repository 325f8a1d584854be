# Tests for POS database detection and repository reads (fake ODBC connections)

from datetime import datetime

import pytest

from possync.detector import (
    Detector,
    InstanceProbeStrategy,
    RegistryStrategy,
    ServiceStrategy,
    REGISTRY_PATHS,
    REQUIRED_TABLES,
    probe_instance,
)
from possync.pos_repository import SoftRestaurantRepository, build_connection_string


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = []

    def execute(self, sql, params=()):
        self.conn.executed.append((sql, tuple(params)))
        for marker, rows in self.conn.responses:
            if marker in sql:
                if isinstance(rows, Exception):
                    raise rows
                self.description = [(name,) for name in (rows[0].keys() if rows else [])]
                self._rows = [tuple(row.values()) for row in rows]
                return
        self.description = []
        self._rows = []

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def close(self):
        pass


class FakeConnection:
    """Answers queries by the first response marker found in the SQL text"""

    def __init__(self, responses):
        self.responses = responses
        self.executed = []
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


SR11_TABLES = [{'TABLE_NAME': t} for t in REQUIRED_TABLES + ['ConfiguracionV11', 'Empresas']]


class FakeServer:
    """connect() stand-in: one SQL Server with a set of databases per instance"""

    def __init__(self, instances):
        self.instances = instances
        self.connections = []

    def __call__(self, connection_string, timeout=30):
        parts = dict(p.split('=', 1) for p in connection_string.split(';') if '=' in p)
        instance, database = parts['SERVER'], parts['DATABASE']
        if instance not in self.instances:
            raise ConnectionError(f"cannot reach {instance}")
        databases = self.instances[instance]
        if database == 'master':
            responses = [('sys.databases', [{'name': name} for name in databases])]
        else:
            responses = [
                ('INFORMATION_SCHEMA.TABLES', databases[database]),
                ('dbo.Empresas', [{'Codigo': 'EMP-1'}]),
            ]
        conn = FakeConnection(responses)
        self.connections.append(conn)
        return conn


class TestDetector:
    """Test SR database detection"""

    def setup_method(self):
        self.server = FakeServer({
            r'.\DVSOFT': {'model_copy': [], 'DVSOFT_EMPRESA1': SR11_TABLES},
        })

    def test_probe_finds_sr_database(self):
        """Test probing picks the prefixed database with all required tables"""
        result = probe_instance(r'.\DVSOFT', self.server)

        assert result.found is True
        assert result.database_name == 'DVSOFT_EMPRESA1'
        assert result.version == '11.x'
        assert result.empresa_id == 'EMP-1'
        assert 'DATABASE=DVSOFT_EMPRESA1' in result.connection_string
        assert all(conn.closed for conn in self.server.connections)

    def test_database_missing_tables_is_skipped(self):
        """Test a prefixed database without the SR schema does not qualify"""
        server = FakeServer({r'.\DVSOFT': {'DVSOFT_OLD': [{'TABLE_NAME': 'Ventas'}]}})

        assert probe_instance(r'.\DVSOFT', server).found is False

    def test_instance_probe_skips_unreachable(self):
        """Test unreachable instances are recorded and the next one is tried"""
        detector = Detector(
            strategies=[InstanceProbeStrategy([r'.\SQLEXPRESS', r'.\DVSOFT'])],
            connect=self.server,
        )
        result = detector.detect()

        assert result.found is True
        assert result.method == 'instance_probe'
        assert result.instance == r'.\DVSOFT'
        assert any('SQLEXPRESS' in e for e in result.errors)

    def test_registry_version_and_hint(self):
        """Test the registry strategy supplies instance, database hint and version"""
        def reader(path):
            if path == REGISTRY_PATHS[0]:
                return {'Version': '11.2', 'SQLInstance': r'.\DVSOFT', 'Database': 'DVSOFT_EMPRESA1'}
            return None

        detector = Detector(
            strategies=[RegistryStrategy(reader), InstanceProbeStrategy([])],
            connect=self.server,
        )
        result = detector.detect()

        assert result.method == 'registry'
        assert result.version == '11.2'
        assert result.methods_tried == ['registry']

    def test_strategy_error_does_not_stop_detection(self):
        """Test a failing strategy is logged and the next strategy runs"""
        def lister():
            raise OSError('access denied')

        detector = Detector(
            strategies=[ServiceStrategy(lister), InstanceProbeStrategy([r'.\DVSOFT'])],
            connect=self.server,
        )
        result = detector.detect()

        assert result.found is True
        assert result.methods_tried == ['service', 'instance_probe']
        assert any('access denied' in e for e in result.errors)

    def test_service_names_map_to_instances(self):
        """Test MSSQLSERVER and MSSQL$NAME service names become instances"""
        strategy = ServiceStrategy(lambda: ['MSSQL$CUSTOM', 'MSSQLSERVER', 'MSSQL$DVSOFT', 'Spooler'])

        assert [c.instance for c in strategy.candidates()] == ['.', r'.\DVSOFT', r'.\CUSTOM']

    def test_nothing_found(self):
        """Test detection reports not found after every strategy"""
        detector = Detector(strategies=[InstanceProbeStrategy([r'.\NOPE'])], connect=self.server)
        result = detector.detect()

        assert result.found is False
        assert result.methods_tried == ['instance_probe']

    def test_configured_connection_string(self):
        """Test an explicit connection string bypasses the strategies"""
        conn_str = build_connection_string(r'.\DVSOFT', 'DVSOFT_EMPRESA1')
        result = Detector(strategies=[], connect=self.server, connection_string=conn_str).detect()

        assert result.found is True
        assert result.method == 'configured'
        assert result.instance == r'.\DVSOFT'
        assert result.database_name == 'DVSOFT_EMPRESA1'


class TestRepository:
    """Test bounded reads from the SR database"""

    def setup_method(self):
        self.conn = FakeConnection([
            ('dbo.DetalleVentas', [
                {'NumeroOrden': 'A1', 'Codigo': 'TAC01', 'Descripcion': 'Tacos', 'Cantidad': 2,
                 'PrecioUnitario': 60, 'Importe': 120},
                {'NumeroOrden': 'A2', 'Codigo': 'REF02', 'Descripcion': 'Refresco', 'Cantidad': 1,
                 'PrecioUnitario': 45, 'Importe': 45},
            ]),
            ('dbo.PagosVenta', [
                {'NumeroOrden': 'A1', 'FormaPago': 'Efectivo', 'Monto': 120},
            ]),
            ('FROM dbo.Ventas v', [
                {'IdVenta': 101, 'NumeroOrden': 'A1', 'FolioVenta': 'F101', 'Total': 120,
                 'FechaCierre': datetime(2026, 3, 1, 14, 0), 'Pagada': 1},
                {'IdVenta': 102, 'NumeroOrden': 'A2', 'FolioVenta': 'F102', 'Total': 45,
                 'FechaCierre': datetime(2026, 3, 1, 14, 5), 'Pagada': 1},
            ]),
            ('MAX(IdVenta)', [{'MaxId': 250}]),
        ])
        self.repo = SoftRestaurantRepository('DSN=test', connect=lambda cs, timeout=30: self.conn)

    def test_get_new_sales_attaches_items_and_payments(self):
        """Test sales are read after the cursor with their detail rows"""
        sales = self.repo.get_new_sales(after_id=100, limit=2)

        assert [s.id_venta for s in sales] == [101, 102]
        assert [d.codigo for d in sales[0].detalles] == ['TAC01']
        assert sales[0].pagos[0].monto == 120.0
        assert sales[1].pagos == []

        sql, params = self.conn.executed[0]
        assert 'TOP (2)' in sql
        assert 'v.IdVenta > ?' in sql
        assert params == (100,)
        assert self.conn.closed

    def test_store_code_filter(self):
        """Test a configured store code adds the warehouse filter"""
        repo = SoftRestaurantRepository('DSN=test', connect=lambda cs, timeout=30: self.conn,
                                        store_code='SUC01')
        repo.get_new_sales(after_id=0, limit=10)

        sql, params = self.conn.executed[0]
        assert 'v.Almacen = ?' in sql
        assert params == (0, 'SUC01')

    def test_max_sale_id(self):
        """Test the highest sale id is read as an int"""
        assert self.repo.get_max_sale_id() == 250

    def test_connection_failure_in_stats(self):
        """Test stats degrade to zeros when the database is unreachable"""
        def broken(cs, timeout=30):
            raise ConnectionError('down')

        stats = SoftRestaurantRepository('DSN=test', connect=broken).get_stats()
        assert stats.total_ventas == 0


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
