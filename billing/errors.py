from __future__ import annotations
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class of every error raised by the billing core."""

    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BillingError):
    """Bad input (line items, missing fields). Raised before any write."""

    status_code = 400


class NotFoundError(BillingError):
    status_code = 404


class InvalidStateError(BillingError):
    """Operation not allowed in the document's current status."""

    status_code = 409


class ConflictError(BillingError):
    """Concurrent modification detected, or a unique key is already taken."""

    status_code = 409


class ExternalServiceError(BillingError):
    """Accounting push or notification failed. Never fatal to local state."""

    status_code = 502

    def __init__(self, message: str, *, status: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)
        self.status = status
