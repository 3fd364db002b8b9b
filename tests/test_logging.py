from __future__ import annotations

import logging

import pytest

from mfgerp.core.logging import (
    ExecutionContextFilter,
    configure_logging,
    order_context,
    order_ref_var,
    tenant_id_var,
    user_id_var,
)


def _record() -> logging.LogRecord:
    return logging.LogRecord("mfgerp.test", logging.INFO, __file__, 1, "hello", None, None)


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_filter_fills_placeholders_outside_a_request():
    record = _record()

    assert ExecutionContextFilter().filter(record) is True
    assert (record.correlation_id, record.tenant_id, record.user_id, record.order_ref) == ("-", "-", "-", "-")


def test_filter_stamps_actor_and_order():
    tenant_token = tenant_id_var.set("tenant-1")
    user_token = user_id_var.set("user-7")
    try:
        with order_context("MO-2025-00001"):
            record = _record()
            ExecutionContextFilter().filter(record)
    finally:
        user_id_var.reset(user_token)
        tenant_id_var.reset(tenant_token)

    assert record.tenant_id == "tenant-1"
    assert record.user_id == "user-7"
    assert record.order_ref == "MO-2025-00001"


def test_order_context_resets_on_error():
    with pytest.raises(RuntimeError):
        with order_context("MO-1"):
            raise RuntimeError("boom")

    assert order_ref_var.get() is None


def test_configure_logging_replaces_handlers(root_logger):
    configure_logging("debug")
    configure_logging("warning")

    assert len(root_logger.handlers) == 1
    assert root_logger.level == logging.WARNING
    assert any(isinstance(f, ExecutionContextFilter) for f in root_logger.handlers[0].filters)
