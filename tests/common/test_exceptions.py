"""Tests for the exception hierarchy and context redaction."""

from __future__ import annotations

from stockloyal.broker.exceptions import BrokerConnectionError, BrokerError
from stockloyal.common.exceptions import ConflictError, FetchError, NotFoundError, StockLoyalError, ValidationError
from stockloyal.orders.exceptions import (
    BatchConflictError,
    BatchNotFoundError,
    InvalidTransitionError,
    MissingBrokerAccountError,
)


class TestStockLoyalError:
    def test_message_and_context(self):
        exc = StockLoyalError("boom", context={"order_id": 7})
        assert exc.message == "boom"
        assert exc.context == {"order_id": 7}
        assert "order_id" in str(exc)

    def test_str_without_context(self):
        assert str(StockLoyalError("plain")) == "plain"

    def test_secret_context_redacted(self):
        exc = StockLoyalError("auth failed", context={"api_key": "sk-live", "path": "/v1/journals"})
        text = str(exc)
        assert "sk-live" not in text
        assert "[REDACTED]" in text
        assert "/v1/journals" in text


class TestHierarchy:
    def test_order_errors_map_to_http_families(self):
        assert issubclass(BatchNotFoundError, NotFoundError)
        assert issubclass(BatchConflictError, ConflictError)
        assert issubclass(InvalidTransitionError, ConflictError)
        assert issubclass(MissingBrokerAccountError, ValidationError)

    def test_broker_errors_are_project_errors(self):
        assert issubclass(BrokerConnectionError, BrokerError)
        assert issubclass(BrokerError, FetchError)
        assert issubclass(FetchError, StockLoyalError)
