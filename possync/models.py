# Native Soft Restaurant records as read from the POS database
# Field names follow the SR columns (snake_case); transformers map them to the wire schema.

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class SRSaleItem:
    codigo: str = ''
    descripcion: str = ''
    cantidad: float = 0
    precio_unitario: float = 0
    importe: float = 0
    descuento: float = 0
    impuesto: float = 0
    modificadores: Optional[str] = None
    notas: Optional[str] = None
    codigo_categoria: Optional[str] = None
    cancelado: bool = False
    hora_envio: Optional[datetime] = None
    hora_servido: Optional[datetime] = None


@dataclass
class SRPayment:
    forma_pago: Optional[str] = None
    monto: float = 0
    referencia: Optional[str] = None
    propina: float = 0
    moneda: Optional[str] = None
    tipo_cambio: float = 1
    ultimos4_digitos: Optional[str] = None
    marca_tarjeta: Optional[str] = None


@dataclass
class SRSale:
    id_venta: int = 0
    numero_orden: str = ''
    folio: str = ''
    estacion: str = ''
    almacen: str = ''
    fecha_apertura: Optional[datetime] = None
    fecha_cierre: Optional[datetime] = None
    numero_mesa: Optional[str] = None
    codigo_cliente: Optional[str] = None
    nombre_cliente: Optional[str] = None
    codigo_mesero: Optional[str] = None
    nombre_mesero: Optional[str] = None
    observaciones: Optional[str] = None
    subtotal: float = 0
    impuestos: float = 0
    descuento: float = 0
    propina: float = 0
    total: float = 0
    moneda: Optional[str] = None
    cancelada: bool = False
    pagada: bool = False
    tipo_orden: int = 1
    numero_comensales: int = 1
    detalles: List[SRSaleItem] = field(default_factory=list)
    pagos: List[SRPayment] = field(default_factory=list)


@dataclass
class SRProduct:
    codigo: str = ''
    descripcion: str = ''
    precio: float = 0
    precio_mayoreo: Optional[float] = None
    costo: Optional[float] = None
    categoria: Optional[str] = None
    codigo_categoria: Optional[str] = None
    activo: bool = True
    es_receta: bool = False
    es_modificador: bool = False
    tiempo_preparacion: Optional[int] = None
    calorias: Optional[int] = None
    alergenos: Optional[str] = None
    descripcion_menu: Optional[str] = None
    imagen: Optional[str] = None
    codigo_barras: Optional[str] = None
    unidad_medida: Optional[str] = None
    tasa_impuesto: float = 0
    precio_incluye_impuesto: bool = False
    orden: int = 0
    impresora: Optional[str] = None
    fecha_modificacion: Optional[datetime] = None


@dataclass
class SRInventoryItem:
    codigo: str = ''
    descripcion: str = ''
    unidad_medida: Optional[str] = None
    existencia_actual: float = 0
    existencia_minima: float = 0
    existencia_maxima: Optional[float] = None
    costo_promedio: float = 0
    ultimo_costo: Optional[float] = None
    ultima_compra: Optional[datetime] = None
    categoria: Optional[str] = None
    codigo_categoria: Optional[str] = None
    activo: bool = True
    almacen: Optional[str] = None
    codigo_proveedor: Optional[str] = None
    nombre_proveedor: Optional[str] = None
    codigo_barras: Optional[str] = None
    es_perecedero: bool = False
    dias_vigencia: Optional[int] = None
    temperatura: Optional[str] = None
    ultimo_conteo: Optional[datetime] = None


@dataclass
class SRTable:
    numero: str = ''
    nombre: Optional[str] = None
    capacidad: int = 4
    seccion: Optional[str] = None
    estado: Optional[str] = None
    orden_actual: Optional[str] = None
    mesero_asignado: Optional[str] = None
    hora_ocupacion: Optional[datetime] = None
    numero_comensales: Optional[int] = None
    activo: bool = True
    orden: int = 0
    posicion_x: Optional[int] = None
    posicion_y: Optional[int] = None
    forma: Optional[str] = None


@dataclass
class SRDatabaseStats:
    total_productos: int = 0
    productos_activos: int = 0
    total_inventario: int = 0
    items_bajo_stock: int = 0
    total_mesas: int = 0
    mesas_ocupadas: int = 0
    total_ventas: int = 0
    ventas_hoy: float = 0
    ultima_venta: Optional[datetime] = None
