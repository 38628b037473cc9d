# app/core/dispatch/errors.py
"""
Typed domain errors for the dispatch core.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to JSON responses
without embedding business logic in the route handlers.

"No eligible cleaner" and race outcomes (already answered, job taken)
are results, not errors: see ``app.core.dispatch.domain``.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Invalid request payload (400)."""

    status_code = 400


class NotFoundError(DispatchError):
    """Resource not found (404)."""

    status_code = 404


class InvalidTransitionError(DispatchError):
    """Job or attempt status does not allow the requested operation (409)."""

    status_code = 409


class DuplicateAttemptError(DispatchError):
    """A dispatch attempt already exists for this (job, cleaner) pair (409)."""

    status_code = 409


class ChannelError(DispatchError):
    """Notification channel failed to deliver a message (502)."""

    status_code = 502

    def __init__(self, detail: str = "Notification channel error", *, retryable: bool = False):
        self.retryable = retryable
        super().__init__(detail)


class InvalidTokenError(DispatchError):
    """Signed job link is malformed, forged or expired (401)."""

    status_code = 401


class OfferDeliveryError(ChannelError):
    """An offer could not be delivered to a cleaner; its attempt is cancelled (502)."""

    def __init__(self, detail: str, *, cleaner_name: str, retryable: bool = False):
        self.cleaner_name = cleaner_name
        super().__init__(detail, retryable=retryable)
