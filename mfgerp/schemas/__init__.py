"""
Public Pydantic schemas used by FastAPI routes, services, and tests.

Schemas are grouped by domain module (master data, inventory, production) and
also include the standard message and error envelopes.
"""

from .common import MessageResponse  # noqa: F401
