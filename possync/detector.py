# Detector - locate the Soft Restaurant database on this host
# Strategies run in a fixed order: registry, running SQL services, known instance names.

import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from .pos_repository import build_connection_string, odbc_connect

# Windows registry / service manager - optional
WIN32_AVAILABLE = False
if sys.platform == 'win32':
    try:
        import winreg
        import win32service
        WIN32_AVAILABLE = True
    except ImportError:
        pass

logger = logging.getLogger(__name__)

KNOWN_INSTANCES = [
    '.',
    r'.\SQLEXPRESS',
    r'.\DVSOFT',
    r'.\SOFTRESTAURANT',
    r'.\SR10',
    r'.\SR11',
    r'.\MSSQLSERVER',
]

KNOWN_DATABASE_PREFIXES = ['DVSOFT', 'SOFTRESTAURANT', 'SR_EMPRESA', 'RESTAURANT', 'DATOS_SR']

REQUIRED_TABLES = ['Ventas', 'DetalleVentas', 'Productos', 'Clientes', 'Empleados']

REGISTRY_PATHS = [
    r'SOFTWARE\National Soft\Soft Restaurant 11',
    r'SOFTWARE\National Soft\Soft Restaurant 10',
    r'SOFTWARE\WOW6432Node\National Soft\Soft Restaurant 11',
    r'SOFTWARE\WOW6432Node\National Soft\Soft Restaurant 10',
]

_SYSTEM_DATABASES = ('master', 'tempdb', 'model', 'msdb')


@dataclass
class DetectionResult:
    found: bool = False
    method: Optional[str] = None
    methods_tried: List[str] = field(default_factory=list)
    instance: Optional[str] = None
    database_name: Optional[str] = None
    connection_string: Optional[str] = None
    version: Optional[str] = None
    empresa_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class Candidate:
    """An instance worth probing, with optional hints from the strategy"""
    instance: Optional[str]
    database_hint: Optional[str] = None
    version: Optional[str] = None


def _version_from_tables(tables: Iterable[str]) -> Optional[str]:
    names = {t.lower() for t in tables}
    if 'configuracionv11' in names:
        return '11.x'
    if 'ventas' in names:
        return '10.x'
    return None


def _is_candidate_database(name: str, hint: Optional[str] = None) -> bool:
    upper = name.upper()
    if hint and upper == hint.upper():
        return True
    return any(upper.startswith(prefix) for prefix in KNOWN_DATABASE_PREFIXES)


def _fetch_column(conn, sql: str) -> List:
    cursor = conn.cursor()
    try:
        cursor.execute(sql)
        return [row[0] for row in cursor.fetchall()]
    finally:
        cursor.close()


def _empresa_id(conn, tables: Iterable[str]) -> Optional[str]:
    names = {t.lower() for t in tables}
    try:
        if 'empresas' in names:
            rows = _fetch_column(conn, 'SELECT TOP 1 Codigo FROM dbo.Empresas WHERE Activa = 1')
        elif 'configuracion' in names:
            rows = _fetch_column(conn, 'SELECT TOP 1 CAST(IdEmpresa AS VARCHAR(50)) FROM dbo.Configuracion')
        else:
            return None
    except Exception as e:
        logger.debug(f"Could not read empresa id: {e}")
        return None
    return str(rows[0]) if rows and rows[0] is not None else None


def probe_instance(instance: str, connect: Callable = None,
                   database_hint: Optional[str] = None, timeout: int = 5) -> DetectionResult:
    """
    Connect to one SQL Server instance and look for an online SR database.

    A database qualifies when its name matches a known prefix (or the hint)
    and it contains every table in REQUIRED_TABLES.
    """
    connect = connect or odbc_connect
    result = DetectionResult(instance=instance)

    master = connect(build_connection_string(instance, 'master', timeout=timeout), timeout=timeout)
    try:
        databases = _fetch_column(master, f'''
            SELECT name FROM sys.databases
            WHERE state_desc = 'ONLINE'
            AND name NOT IN ({", ".join(repr(d) for d in _SYSTEM_DATABASES)})
        ''')
    finally:
        master.close()

    # hinted database first
    if database_hint:
        databases.sort(key=lambda name: name.upper() != database_hint.upper())

    for name in databases:
        if not _is_candidate_database(name, database_hint):
            continue
        conn_str = build_connection_string(instance, name, timeout=timeout)
        try:
            conn = connect(conn_str, timeout=timeout)
        except Exception as e:
            result.errors.append(f"{instance}/{name}: {e}")
            continue
        try:
            tables = _fetch_column(conn, '''
                SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES
                WHERE TABLE_TYPE = 'BASE TABLE'
            ''')
            present = {t.lower() for t in tables}
            missing = [t for t in REQUIRED_TABLES if t.lower() not in present]
            if missing:
                logger.debug(f"{instance}/{name} lacks tables: {', '.join(missing)}")
                continue
            result.found = True
            result.database_name = name
            result.connection_string = conn_str
            result.version = _version_from_tables(tables)
            result.empresa_id = _empresa_id(conn, tables)
            return result
        except Exception as e:
            result.errors.append(f"{instance}/{name}: {e}")
        finally:
            conn.close()

    return result


def _read_registry(path: str) -> Optional[dict]:
    """Values under HKLM\\path, or None when the key does not exist"""
    try:
        key = winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, path)
    except OSError:
        return None
    values = {}
    try:
        index = 0
        while True:
            try:
                name, value, _ = winreg.EnumValue(key, index)
            except OSError:
                break
            values[name] = value
            index += 1
    finally:
        winreg.CloseKey(key)
    return values


def _running_services() -> List[str]:
    scm = win32service.OpenSCManager(None, None, win32service.SC_MANAGER_ENUMERATE_SERVICE)
    try:
        services = win32service.EnumServicesStatus(
            scm, win32service.SERVICE_WIN32, win32service.SERVICE_ACTIVE
        )
    finally:
        win32service.CloseServiceHandle(scm)
    return [name for name, _display, status in services
            if status[1] == win32service.SERVICE_RUNNING]


class RegistryStrategy:
    """SR install registration: version plus configured instance/database when present"""

    name = 'registry'

    def __init__(self, reader: Callable[[str], Optional[dict]] = None):
        if reader is None and not WIN32_AVAILABLE:
            raise RuntimeError("Registry access requires Windows")
        self.reader = reader or _read_registry

    def candidates(self) -> List[Candidate]:
        found = []
        for path in REGISTRY_PATHS:
            values = self.reader(path)
            if values is None:
                continue
            version = values.get('Version') or ('11.x' if '11' in path else '10.x')
            instance = (values.get('SQLInstance') or values.get('Instancia')
                        or values.get('Servidor'))
            database = values.get('Database') or values.get('BaseDatos')
            found.append(Candidate(instance=instance, database_hint=database, version=version))
        return found


class ServiceStrategy:
    """Running SQL Server services (MSSQLSERVER, MSSQL$NAME); SR-looking names first"""

    name = 'service'

    def __init__(self, lister: Callable[[], List[str]] = None):
        if lister is None and not WIN32_AVAILABLE:
            raise RuntimeError("Service enumeration requires Windows")
        self.lister = lister or _running_services

    def candidates(self) -> List[Candidate]:
        instances = []
        for service in self.lister():
            upper = service.upper()
            if upper == 'MSSQLSERVER':
                instances.append('.')
            else:
                match = re.match(r'^MSSQL\$(.+)$', service, re.IGNORECASE)
                if match:
                    instances.append(f'.\\{match.group(1)}')
        known = {i.upper() for i in KNOWN_INSTANCES}
        instances.sort(key=lambda i: i.upper() not in known)
        return [Candidate(instance=i) for i in instances]


class InstanceProbeStrategy:
    """Known SR instance names, probed blindly"""

    name = 'instance_probe'

    def __init__(self, instances: List[str] = None):
        self.instances = list(instances or KNOWN_INSTANCES)

    def candidates(self) -> List[Candidate]:
        return [Candidate(instance=i) for i in self.instances]


def default_strategies() -> list:
    strategies = []
    if WIN32_AVAILABLE:
        strategies.append(RegistryStrategy())
        strategies.append(ServiceStrategy())
    strategies.append(InstanceProbeStrategy())
    return strategies


class Detector:
    """Runs the strategies in order and returns the first connectable SR database"""

    def __init__(self, strategies: list = None, connect: Callable = None,
                 connection_string: Optional[str] = None, timeout: int = 5):
        self.strategies = strategies if strategies is not None else default_strategies()
        self.connect = connect or odbc_connect
        self.connection_string = connection_string
        self.timeout = timeout

    def detect(self) -> DetectionResult:
        if self.connection_string:
            return self._check_configured()

        result = DetectionResult()
        registry_version = None
        probed = set()

        for strategy in self.strategies:
            result.methods_tried.append(strategy.name)
            try:
                candidates = strategy.candidates()
            except Exception as e:
                logger.warning(f"Detection strategy {strategy.name} failed: {e}")
                result.errors.append(f"{strategy.name}: {e}")
                continue

            for candidate in candidates:
                if candidate.version and strategy.name == RegistryStrategy.name:
                    registry_version = registry_version or candidate.version
                if not candidate.instance:
                    continue
                key = (candidate.instance.upper(), (candidate.database_hint or '').upper())
                if key in probed:
                    continue
                probed.add(key)
                try:
                    probe = probe_instance(candidate.instance, self.connect,
                                           candidate.database_hint, self.timeout)
                except Exception as e:
                    logger.debug(f"Instance {candidate.instance} not reachable: {e}")
                    result.errors.append(f"{strategy.name}:{candidate.instance}: {e}")
                    continue
                result.errors.extend(probe.errors)
                if probe.found:
                    probe.method = strategy.name
                    probe.methods_tried = result.methods_tried
                    probe.errors = result.errors
                    probe.version = registry_version or candidate.version or probe.version
                    logger.info(
                        f"Found SR database {probe.database_name} on {probe.instance} "
                        f"(method={probe.method}, version={probe.version})"
                    )
                    return probe

        result.version = registry_version
        logger.warning(f"Soft Restaurant database not found (tried: {', '.join(result.methods_tried)})")
        return result

    def _check_configured(self) -> DetectionResult:
        result = DetectionResult(method='configured', methods_tried=['configured'],
                                 connection_string=self.connection_string)
        parts = dict(
            p.split('=', 1) for p in self.connection_string.split(';') if '=' in p
        )
        parts = {k.strip().upper(): v.strip() for k, v in parts.items()}
        result.instance = parts.get('SERVER') or parts.get('DATA SOURCE')
        result.database_name = parts.get('DATABASE') or parts.get('INITIAL CATALOG')
        try:
            conn = self.connect(self.connection_string, timeout=self.timeout)
            try:
                tables = _fetch_column(conn, '''
                    SELECT TABLE_NAME FROM INFORMATION_SCHEMA.TABLES
                    WHERE TABLE_TYPE = 'BASE TABLE'
                ''')
                result.version = _version_from_tables(tables)
                result.empresa_id = _empresa_id(conn, tables)
            finally:
                conn.close()
        except Exception as e:
            logger.warning(f"Configured connection string failed: {e}")
            result.errors.append(f"configured: {e}")
            return result
        result.found = True
        return result
