"""Brokerage-specific exceptions with structured context.

All brokerage and webhook errors are subclasses of BrokerError, a
FetchError, so the API layer and the batch engines can treat them
uniformly (context is redacted by the base class).

Usage:
    from stockloyal.broker.exceptions import BrokerAuthError

    raise BrokerAuthError("Authentication failed", context={"path": "/v1/journals"})
"""

from __future__ import annotations

from stockloyal.common.exceptions import FetchError


class BrokerError(FetchError):
    """Base exception for all brokerage API errors."""


class BrokerAuthError(BrokerError):
    """Invalid API key/secret (401 or 403 from the brokerage)."""


class BrokerRateLimitError(BrokerError):
    """Rate limit exceeded (429). Check context for retry_after."""


class BrokerOrderRejectedError(BrokerError):
    """Order or journal rejected by the brokerage (4xx on a write endpoint)."""


class BrokerApiError(BrokerError):
    """Generic API error with status code and response details."""


class BrokerConnectionError(BrokerError):
    """Network issue or timeout talking to the brokerage or a broker webhook."""


class AccountProvisioningError(BrokerError):
    """A member brokerage account could not be found or created."""
