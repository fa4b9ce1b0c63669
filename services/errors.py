"""Billing error taxonomy shared by the state machine, webhooks and routes."""

from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    status_code = 500


class ValidationError(BillingError):
    """A plan change blocked by a business rule.  User-facing, not retryable."""

    status_code = 400

    def __init__(self, errors: list[str], warnings: Optional[list[str]] = None):
        super().__init__("; ".join(errors) or "Validation failed")
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class NotFoundError(BillingError):
    """Unknown tenant, plan, subscription or payment."""

    status_code = 404


class ExternalGatewayError(BillingError):
    """Network error, timeout or error response from the payment gateway.

    Retryable.  After a DB mutation this becomes a sync flag, not a crash.
    """

    status_code = 502

    def __init__(self, message: str, provider: str = "", retryable: bool = True):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable


class ConflictError(BillingError):
    """Idempotent replay or an already-applied transition.  Treated as success."""

    status_code = 409


class ConfigurationError(BillingError):
    """Missing anchor date, credentials or price mapping."""

    status_code = 500
