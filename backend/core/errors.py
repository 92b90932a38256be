"""
Error taxonomy for the alerting engine.

  - TransientExternalError: platform fetch / delivery failures. Contained to
    the shop or item, surfaced as failed audit entries.
  - DataInconsistencyError: facts for malformed payloads. Dropped with a log record.
  - ConcurrentWriteError: CAS conflict on a single TrackedItem that survived
    the bounded retry. The key is skipped for the cycle.
  - StoreUnavailableError: the record store cannot be reached at all. The
    only error that is allowed to reach the orchestration loop.

Audit rows never store raw exception strings; classify_error() maps an
exception to a stable category code and an operator-readable message.
"""

import asyncio


class StockPulseError(Exception):
    """Base class for engine errors."""

    category = "unknown"


class TransientExternalError(StockPulseError):
    category = "platform_unavailable"


class CapabilityTimeoutError(TransientExternalError):
    category = "timeout"


class DeliveryError(TransientExternalError):
    category = "delivery_failed"


class RecipientResolutionError(TransientExternalError):
    category = "recipient_unresolved"


class ShopifyAPIError(TransientExternalError):
    category = "platform_unavailable"


class DataInconsistencyError(StockPulseError):
    category = "invalid_data"


class WebhookPayloadError(DataInconsistencyError):
    pass


class ConcurrentWriteError(StockPulseError):
    category = "write_conflict"


class StoreUnavailableError(StockPulseError):
    category = "store_unavailable"


ERROR_MESSAGES = {
    "timeout": "The service did not respond in time",
    "delivery_failed": "The email provider could not deliver the alert",
    "recipient_unresolved": "No alert email address could be determined for this shop",
    "platform_unavailable": "The store platform could not be reached",
    "invalid_data": "The inventory update contained invalid data",
    "write_conflict": "The product was being updated by another process",
    "store_unavailable": "Alert storage is temporarily unavailable",
    "unknown": "An unexpected error occurred",
}


def classify_error(exc: BaseException) -> tuple[str, str]:
    """Return (category, human-readable message) for an exception."""
    if isinstance(exc, StockPulseError):
        category = exc.category
    elif isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        category = "timeout"
    else:
        category = "unknown"
    return category, ERROR_MESSAGES.get(category, ERROR_MESSAGES["unknown"])
