from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Tuple

# Resources
ORDERS = "manufacturing_orders"
WORK_ORDERS = "work_orders"
STOCK = "stock"
BOMS = "boms"
ITEMS = "items"
WORK_CENTERS = "work_centers"

# Actions
VIEW = "view"
PLAN = "plan"
CREATE = "create"
CONFIRM = "confirm"
START = "start"
COMPLETE = "complete"
CANCEL = "cancel"
ASSIGN = "assign"
ADJUST = "adjust"

WILDCARD = "*"

# Roles
ADMIN = "admin"
MANAGER = "manager"
OPERATOR = "operator"
INVENTORY = "inventory"

Grant = Tuple[str, str]  # (resource, action)

ROLE_GRANTS: Dict[str, FrozenSet[Grant]] = {
    ADMIN: frozenset({(WILDCARD, WILDCARD)}),
    MANAGER: frozenset(
        {
            (ORDERS, WILDCARD),
            (WORK_ORDERS, WILDCARD),
            (STOCK, VIEW),
            (STOCK, ADJUST),
            (BOMS, VIEW),
            (ITEMS, VIEW),
            (WORK_CENTERS, VIEW),
        }
    ),
    OPERATOR: frozenset(
        {
            (ORDERS, VIEW),
            (WORK_ORDERS, VIEW),
            (WORK_ORDERS, START),
            (WORK_ORDERS, COMPLETE),
            (WORK_CENTERS, VIEW),
        }
    ),
    INVENTORY: frozenset(
        {
            (STOCK, VIEW),
            (STOCK, ADJUST),
            (BOMS, VIEW),
            (ITEMS, VIEW),
            (ORDERS, VIEW),
        }
    ),
}


# PUBLIC_INTERFACE
def can(role: str, action: str, resource: str) -> bool:
    """
    Return True when `role` may perform `action` on `resource`.

    Unknown roles are denied. Grants may use "*" for the resource or the action.
    """
    grants = ROLE_GRANTS.get(role.lower())
    if not grants:
        return False
    for granted_resource, granted_action in grants:
        if granted_resource not in (WILDCARD, resource):
            continue
        if granted_action in (WILDCARD, action):
            return True
    return False


# PUBLIC_INTERFACE
def can_any(roles: Iterable[str], action: str, resource: str) -> bool:
    """Return True when any of the roles grants the action."""
    return any(can(role, action, resource) for role in roles)
