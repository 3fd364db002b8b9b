"""
Core application utilities for settings, security and FastAPI dependencies.

This package provides:
- Application-level settings (separate from DB settings)
- Password hashing and JWT helpers
- Role grants used by route guards
- Dependency helpers (tenant extraction, tenant-scoped DB session, current user)
"""
