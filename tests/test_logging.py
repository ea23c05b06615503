"""Tests for the structured logging system (billing_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from billing_kernel.exceptions import PaymentNotFoundError
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "billing_kernel.test"
        assert "ts" in record

    def test_extra_fields_rendered(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        payment_id = uuid4()
        get_logger("test").info(
            "payment_allocated", extra={"amount": Decimal("12.50"), "payment": payment_id}
        )

        record = _parse_all_logs(stream)[0]
        assert record["amount"] == "12.50"
        assert record["payment"] == str(payment_id)

    def test_exception_attributes_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise PaymentNotFoundError("pay-1")
        except PaymentNotFoundError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_all_logs(stream)[0]
        assert record["exc_type"] == "PaymentNotFoundError"
        assert record["exc_code"] == "PAYMENT_NOT_FOUND"
        assert record["exc_payment_id"] == "pay-1"
        assert "traceback" in record


class TestLogContext:
    def test_bound_fields_appear_and_are_restored(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")

        with LogContext.bind(tab_id="tab-1", payment_id=None):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _parse_all_logs(stream)
        assert inside["tab_id"] == "tab-1"
        assert "payment_id" not in inside
        assert "tab_id" not in outside

    def test_nested_bind_restores_outer_value(self):
        with LogContext.bind(tab_id="outer"):
            with LogContext.bind(tab_id="inner"):
                assert LogContext.get_all()["tab_id"] == "inner"
            assert LogContext.get_all()["tab_id"] == "outer"
        assert "tab_id" not in LogContext.get_all()

    def test_unknown_field_rejected_by_set(self):
        with pytest.raises(KeyError):
            LogContext.set(colour="red")


class TestConfigureLogging:
    def test_idempotent(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        get_logger("test").info("once")
        assert len(_parse_all_logs(stream)) == 1

    def test_level_filters(self):
        handler, stream = _make_handler()
        configure_logging(level="WARNING", handler=handler)
        logger = get_logger("test")
        logger.info("dropped")
        logger.warning("kept")
        assert [r["message"] for r in _parse_all_logs(stream)] == ["kept"]
