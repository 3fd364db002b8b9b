from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, Union

# Request-scoped context stamped on every record
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
order_ref_var: ContextVar[Optional[str]] = ContextVar("order_ref", default=None)

LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(name)s | cid=%(correlation_id)s | tenant=%(tenant_id)s | "
    "user=%(user_id)s | order=%(order_ref)s | %(message)s"
)

_CONTEXT = (
    ("correlation_id", correlation_id_var),
    ("tenant_id", tenant_id_var),
    ("user_id", user_id_var),
    ("order_ref", order_ref_var),
)


class ExecutionContextFilter(logging.Filter):
    """
    Copy the request, actor and order context onto each record.

    Missing values render as "-" so the format never fails on records emitted
    outside a request (startup, migrations, seeding).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for attr, var in _CONTEXT:
            setattr(record, attr, var.get() or "-")
        return True


# PUBLIC_INTERFACE
@contextmanager
def order_context(order_ref: object) -> Iterator[None]:
    """Tag records logged inside the block with a manufacturing order id or number."""
    token = order_ref_var.set(str(order_ref))
    try:
        yield
    finally:
        order_ref_var.reset(token)


# PUBLIC_INTERFACE
def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """
    Install one stdout handler with the context filter on the root logger.

    Calling it again replaces the handler instead of stacking a second one.
    """
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
    handler.addFilter(ExecutionContextFilter())

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)
