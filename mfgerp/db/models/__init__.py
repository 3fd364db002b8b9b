"""
ORM models for tenancy/security, master data (items, work centers, BOMs),
the stock ledger, and manufacturing/work orders.

Importing this package ensures model classes are registered with the Base
metadata for Alembic and runtime usage.
"""

from .security import (  # noqa: F401
    Tenant,
    User,
    Role,
    UserRole,
)
from .master_data import (  # noqa: F401
    Item,
    ItemType,
    WorkCenter,
    Bom,
    BomLine,
    BomOperation,
)
from .inventory import (  # noqa: F401
    StockLedgerEntry,
    StockPolicy,
    VoucherType,
)
from .production import (  # noqa: F401
    ManufacturingOrder,
    WorkOrder,
    OrderState,
    WorkOrderState,
    Priority,
)
