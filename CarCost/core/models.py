"""
Entity definitions for the reconciled data.

Every entity family (cars, expenses, maintenance reminders, tags, tag links and
planned expenses) is a plain dataclass with a ``SCHEMA`` describing the type of
each column. The schema drives both the SQLite table definitions and the casting
of raw cells read back from the remote worksheets, so a row coming from either
store is turned into the same typed entity.

Timestamps are integer epoch milliseconds and identities are opaque strings.
"""
import dataclasses
import enum
import logging
import time
import uuid
from typing import Any, ClassVar, Dict, Optional, Type


class EntityKind(enum.StrEnum):
    """Entity families kept in sync. Values name the accessor on a store."""
    Car = 'cars'
    Expense = 'expenses'
    Reminder = 'reminders'
    Tag = 'tags'
    TagLink = 'tag_links'
    PlannedExpense = 'planned_expenses'

    @property
    def is_car_child(self) -> bool:
        return self in (EntityKind.Expense, EntityKind.Reminder, EntityKind.PlannedExpense)


class OdometerUnit(enum.StrEnum):
    KM = 'KM'
    MI = 'MI'


class FuelType(enum.StrEnum):
    GASOLINE = 'GASOLINE'
    DIESEL = 'DIESEL'
    ELECTRIC = 'ELECTRIC'
    HYBRID = 'HYBRID'
    GAS = 'GAS'
    OTHER = 'OTHER'


class ExpenseCategory(enum.StrEnum):
    FUEL = 'FUEL'
    MAINTENANCE = 'MAINTENANCE'
    REPAIR = 'REPAIR'
    INSURANCE = 'INSURANCE'
    TAX = 'TAX'
    PARKING = 'PARKING'
    TOLL = 'TOLL'
    WASH = 'WASH'
    FINE = 'FINE'
    ACCESSORIES = 'ACCESSORIES'
    OTHER = 'OTHER'


class ServiceType(enum.StrEnum):
    """Kind of work recorded on a maintenance expense."""
    OIL_CHANGE = 'OIL_CHANGE'
    OIL_FILTER = 'OIL_FILTER'
    AIR_FILTER = 'AIR_FILTER'
    CABIN_FILTER = 'CABIN_FILTER'
    FUEL_FILTER = 'FUEL_FILTER'
    SPARK_PLUGS = 'SPARK_PLUGS'
    BRAKE_PADS = 'BRAKE_PADS'
    BRAKE_DISCS = 'BRAKE_DISCS'
    TIMING_BELT = 'TIMING_BELT'
    TRANSMISSION_FLUID = 'TRANSMISSION_FLUID'
    COOLANT = 'COOLANT'
    BRAKE_FLUID = 'BRAKE_FLUID'
    TIRES = 'TIRES'
    BATTERY = 'BATTERY'
    INSPECTION = 'INSPECTION'
    OTHER = 'OTHER'


class MaintenanceType(enum.StrEnum):
    """Kind of periodic maintenance tracked by a reminder."""
    OIL_CHANGE = 'OIL_CHANGE'
    OIL_FILTER = 'OIL_FILTER'
    AIR_FILTER = 'AIR_FILTER'
    CABIN_FILTER = 'CABIN_FILTER'
    FUEL_FILTER = 'FUEL_FILTER'
    SPARK_PLUGS = 'SPARK_PLUGS'
    BRAKE_PADS = 'BRAKE_PADS'
    TIMING_BELT = 'TIMING_BELT'
    TRANSMISSION_FLUID = 'TRANSMISSION_FLUID'
    COOLANT = 'COOLANT'
    BRAKE_FLUID = 'BRAKE_FLUID'

    @property
    def default_interval(self) -> int:
        """The default distance between two services of this type, in kilometers."""
        return MAINTENANCE_INTERVALS[self]

    @classmethod
    def from_service_type(cls, service_type: Optional[ServiceType]) -> Optional['MaintenanceType']:
        """Returns the reminder type refreshed by a service, or None when the service is not tracked."""
        if service_type is None:
            return None
        try:
            return cls(str(service_type))
        except ValueError:
            return None


MAINTENANCE_INTERVALS: Dict[MaintenanceType, int] = {
    MaintenanceType.OIL_CHANGE: 10000,
    MaintenanceType.OIL_FILTER: 10000,
    MaintenanceType.AIR_FILTER: 20000,
    MaintenanceType.CABIN_FILTER: 15000,
    MaintenanceType.FUEL_FILTER: 30000,
    MaintenanceType.SPARK_PLUGS: 30000,
    MaintenanceType.BRAKE_PADS: 40000,
    MaintenanceType.TIMING_BELT: 60000,
    MaintenanceType.TRANSMISSION_FLUID: 60000,
    MaintenanceType.COOLANT: 40000,
    MaintenanceType.BRAKE_FLUID: 40000,
}


class PlannedExpensePriority(enum.StrEnum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'
    URGENT = 'URGENT'


class PlannedExpenseStatus(enum.StrEnum):
    PLANNED = 'PLANNED'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


# Member used when a stored enum name is not recognised
ENUM_DEFAULTS: Dict[Type[enum.Enum], enum.Enum] = {
    OdometerUnit: OdometerUnit.KM,
    FuelType: FuelType.GASOLINE,
    ExpenseCategory: ExpenseCategory.OTHER,
    ServiceType: ServiceType.OTHER,
    MaintenanceType: MaintenanceType.OIL_CHANGE,
    PlannedExpensePriority: PlannedExpensePriority.MEDIUM,
    PlannedExpenseStatus: PlannedExpenseStatus.PLANNED,
}


def now_ms() -> int:
    """Return the current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    """Return a new random identity."""
    return str(uuid.uuid4())


def is_legacy_id(identity: Any) -> bool:
    """Return True if the identity is a store-assigned integer key rather than a UUID."""
    return str(identity).isdigit()


def cast_value(column_type: Any, value: Any, optional: bool = False) -> Any:
    """Cast a raw cell value to the declared column type.

    Values that cannot be cast fall back to ``None`` for optional columns and to
    a zero value (or the enum's default member) otherwise.

    Args:
        column_type: One of 'string', 'int', 'float', 'bool' or an enum class.
        value: The raw value read from SQLite or a worksheet cell.
        optional: Whether the column accepts None.

    Returns:
        Any: The casted value.
    """
    if value is None or (isinstance(value, str) and value == ''):
        if optional:
            return None
        value = None

    if isinstance(column_type, type) and issubclass(column_type, enum.Enum):
        if value is None:
            return ENUM_DEFAULTS[column_type]
        try:
            return column_type(str(value))
        except ValueError:
            logging.debug(f'Unknown {column_type.__name__} value "{value}", using the default.')
            return None if optional else ENUM_DEFAULTS[column_type]

    if column_type == 'string':
        return '' if value is None else str(value)

    if column_type == 'bool':
        if value is None:
            return False
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes')
        return bool(value)

    if column_type == 'int':
        if value is None:
            return 0
        if isinstance(value, bool):
            return int(value)
        try:
            return int(float(value))
        except (TypeError, ValueError):
            logging.debug(f'Failed to parse "{value}" as integer.')
            return None if optional else 0

    if column_type == 'float':
        if value is None:
            return 0.0
        try:
            return float(value)
        except (TypeError, ValueError):
            logging.debug(f'Failed to parse "{value}" as float.')
            return None if optional else 0.0

    raise ValueError(f'Unknown column type "{column_type}"')


class Entity:
    """Mixin shared by the entity dataclasses.

    Subclasses declare ``SCHEMA`` (column -> type) and ``OPTIONAL`` (columns accepting None).
    """
    SCHEMA: ClassVar[Dict[str, Any]] = {}
    OPTIONAL: ClassVar[frozenset] = frozenset()

    @property
    def identity(self) -> str:
        return self.id

    @classmethod
    def columns(cls) -> list:
        return list(cls.SCHEMA.keys())

    def to_row(self) -> Dict[str, Any]:
        """Returns the entity as a flat dictionary of plain values."""
        row = {}
        for column in self.SCHEMA:
            value = getattr(self, column)
            if isinstance(value, enum.Enum):
                value = value.value
            elif isinstance(value, bool):
                value = int(value)
            row[column] = value
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]):
        """Builds an entity from a row, casting every column by its declared type.

        Columns missing from the row take the dataclass default.
        """
        kwargs = {}
        for column, column_type in cls.SCHEMA.items():
            if column not in row:
                continue
            kwargs[column] = cast_value(column_type, row[column], optional=column in cls.OPTIONAL)
        return cls(**kwargs)


@dataclasses.dataclass
class Car(Entity):
    id: str = dataclasses.field(default_factory=new_id)
    brand: str = ''
    model: str = ''
    year: int = 0
    license_plate: str = ''
    vin: Optional[str] = None
    color: Optional[str] = None
    photo_uri: Optional[str] = None
    current_odometer: int = 0
    odometer_unit: OdometerUnit = OdometerUnit.KM
    purchase_date: int = 0
    purchase_price: Optional[float] = None
    purchase_odometer: Optional[int] = None
    fuel_type: FuelType = FuelType.GASOLINE
    tank_capacity: Optional[float] = None
    is_active: bool = True
    created_at: int = dataclasses.field(default_factory=now_ms)
    updated_at: int = dataclasses.field(default_factory=now_ms)

    SCHEMA: ClassVar[Dict[str, Any]] = {
        'id': 'string',
        'brand': 'string',
        'model': 'string',
        'year': 'int',
        'license_plate': 'string',
        'vin': 'string',
        'color': 'string',
        'photo_uri': 'string',
        'current_odometer': 'int',
        'odometer_unit': OdometerUnit,
        'purchase_date': 'int',
        'purchase_price': 'float',
        'purchase_odometer': 'int',
        'fuel_type': FuelType,
        'tank_capacity': 'float',
        'is_active': 'bool',
        'created_at': 'int',
        'updated_at': 'int',
    }
    OPTIONAL: ClassVar[frozenset] = frozenset({
        'vin', 'color', 'photo_uri', 'purchase_price', 'purchase_odometer', 'tank_capacity'
    })

    @property
    def display_name(self) -> str:
        return f'{self.brand} {self.model}'.strip()


@dataclasses.dataclass
class Expense(Entity):
    id: str = dataclasses.field(default_factory=new_id)
    car_id: str = ''
    category: ExpenseCategory = ExpenseCategory.OTHER
    amount: float = 0.0
    currency: str = 'RUB'
    date: int = dataclasses.field(default_factory=now_ms)
    odometer: int = 0
    title: Optional[str] = None
    description: Optional[str] = None
    receipt_photo_uri: Optional[str] = None
    location: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    fuel_liters: Optional[float] = None
    fuel_type: Optional[FuelType] = None
    is_full_tank: bool = False
    service_type: Optional[ServiceType] = None
    next_service_odometer: Optional[int] = None
    next_service_date: Optional[int] = None
    workshop_name: Optional[str] = None
    created_at: int = dataclasses.field(default_factory=now_ms)
    updated_at: int = dataclasses.field(default_factory=now_ms)

    SCHEMA: ClassVar[Dict[str, Any]] = {
        'id': 'string',
        'car_id': 'string',
        'category': ExpenseCategory,
        'amount': 'float',
        'currency': 'string',
        'date': 'int',
        'odometer': 'int',
        'title': 'string',
        'description': 'string',
        'receipt_photo_uri': 'string',
        'location': 'string',
        'latitude': 'float',
        'longitude': 'float',
        'fuel_liters': 'float',
        'fuel_type': FuelType,
        'is_full_tank': 'bool',
        'service_type': ServiceType,
        'next_service_odometer': 'int',
        'next_service_date': 'int',
        'workshop_name': 'string',
        'created_at': 'int',
        'updated_at': 'int',
    }
    OPTIONAL: ClassVar[frozenset] = frozenset({
        'title', 'description', 'receipt_photo_uri', 'location', 'latitude', 'longitude',
        'fuel_liters', 'fuel_type', 'service_type', 'next_service_odometer', 'next_service_date',
        'workshop_name',
    })


@dataclasses.dataclass
class MaintenanceReminder(Entity):
    id: str = dataclasses.field(default_factory=new_id)
    car_id: str = ''
    type: MaintenanceType = MaintenanceType.OIL_CHANGE
    last_change_odometer: int = 0
    last_change_date: int = dataclasses.field(default_factory=now_ms)
    interval_km: int = 0
    next_change_odometer: int = 0
    is_active: bool = True
    notes: Optional[str] = None
    created_at: int = dataclasses.field(default_factory=now_ms)
    updated_at: int = dataclasses.field(default_factory=now_ms)

    SCHEMA: ClassVar[Dict[str, Any]] = {
        'id': 'string',
        'car_id': 'string',
        'type': MaintenanceType,
        'last_change_odometer': 'int',
        'last_change_date': 'int',
        'interval_km': 'int',
        'next_change_odometer': 'int',
        'is_active': 'bool',
        'notes': 'string',
        'created_at': 'int',
        'updated_at': 'int',
    }
    OPTIONAL: ClassVar[frozenset] = frozenset({'notes'})

    @classmethod
    def create(cls, car_id: str, maintenance_type: MaintenanceType, odometer: int,
               interval_km: Optional[int] = None) -> 'MaintenanceReminder':
        """Returns a new reminder whose next change is one interval after ``odometer``."""
        interval = interval_km or maintenance_type.default_interval
        return cls(
            car_id=car_id,
            type=maintenance_type,
            last_change_odometer=odometer,
            interval_km=interval,
            next_change_odometer=odometer + interval,
        )

    def remaining_km(self, current_odometer: int) -> int:
        return self.next_change_odometer - current_odometer

    def is_due(self, current_odometer: int) -> bool:
        return self.is_active and current_odometer >= self.next_change_odometer


@dataclasses.dataclass
class ExpenseTag(Entity):
    id: str = dataclasses.field(default_factory=new_id)
    name: str = ''
    color: str = '#808080'
    user_id: str = ''
    created_at: int = dataclasses.field(default_factory=now_ms)
    # Tags written by older clients carry no update timestamp
    updated_at: Optional[int] = None

    SCHEMA: ClassVar[Dict[str, Any]] = {
        'id': 'string',
        'name': 'string',
        'color': 'string',
        'user_id': 'string',
        'created_at': 'int',
        'updated_at': 'int',
    }
    OPTIONAL: ClassVar[frozenset] = frozenset({'updated_at'})


@dataclasses.dataclass
class ExpenseTagLink(Entity):
    expense_id: str = ''
    tag_id: str = ''

    SCHEMA: ClassVar[Dict[str, Any]] = {
        'expense_id': 'string',
        'tag_id': 'string',
    }

    @property
    def identity(self) -> str:
        return link_identity(self.expense_id, self.tag_id)


def link_identity(expense_id: str, tag_id: str) -> str:
    return f'{expense_id}:{tag_id}'


def split_link_identity(identity: str):
    expense_id, _, tag_id = identity.partition(':')
    return expense_id, tag_id


@dataclasses.dataclass
class PlannedExpense(Entity):
    id: str = dataclasses.field(default_factory=new_id)
    car_id: str = ''
    user_id: str = ''
    title: str = ''
    description: Optional[str] = None
    category: ExpenseCategory = ExpenseCategory.OTHER
    estimated_amount: Optional[float] = None
    actual_amount: Optional[float] = None
    target_date: Optional[int] = None
    completed_date: Optional[int] = None
    priority: PlannedExpensePriority = PlannedExpensePriority.MEDIUM
    status: PlannedExpenseStatus = PlannedExpenseStatus.PLANNED
    target_odometer: Optional[int] = None
    notes: Optional[str] = None
    shop_url: Optional[str] = None
    linked_expense_id: Optional[str] = None
    created_at: int = dataclasses.field(default_factory=now_ms)
    updated_at: int = dataclasses.field(default_factory=now_ms)
    is_synced: bool = False

    SCHEMA: ClassVar[Dict[str, Any]] = {
        'id': 'string',
        'car_id': 'string',
        'user_id': 'string',
        'title': 'string',
        'description': 'string',
        'category': ExpenseCategory,
        'estimated_amount': 'float',
        'actual_amount': 'float',
        'target_date': 'int',
        'completed_date': 'int',
        'priority': PlannedExpensePriority,
        'status': PlannedExpenseStatus,
        'target_odometer': 'int',
        'notes': 'string',
        'shop_url': 'string',
        'linked_expense_id': 'string',
        'created_at': 'int',
        'updated_at': 'int',
        'is_synced': 'bool',
    }
    OPTIONAL: ClassVar[frozenset] = frozenset({
        'description', 'estimated_amount', 'actual_amount', 'target_date', 'completed_date',
        'target_odometer', 'notes', 'shop_url', 'linked_expense_id',
    })
