"""
API route modules.

This package contains subrouters for:
- Auth: login, refresh, and current user
- Master data: items, BOM listing and resolution
- Inventory: stock movements, ledger and balances
- Production: planning, manufacturing orders, work orders and work center load

Routers are included from mfgerp.api.main (under the /api/v1 prefix).
"""
