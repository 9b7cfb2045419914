"""
Error taxonomy shared by every sync component.

WHY: The orchestrating operations (queue dispatch, reconciler, binding)
decide retry vs. terminal failure from the exception type alone, so cloud
and validation failures must be classified once, at the boundary.

RETRY POLICY BY TYPE:
- AuthenticationError: fatal for the current operation; the queue retries it later
- TransientError: retried with backoff (timeouts, 5xx, rate limiting)
- ValidationError: never retried (malformed MAC, missing field, 4xx)
- NotFoundError: device no longer registered externally; mark offline, don't delete
- ConflictError: duplicate unique key; surfaced, never retried
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for engine errors."""

    http_status = 500

    def to_dict(self) -> dict:
        return {"error": str(self), "type": type(self).__name__}


class AuthenticationError(SyncError):
    """Cloud login rejected or token unusable."""

    http_status = 401


class TransientError(SyncError):
    """Timeout, transport failure, 5xx or rate limiting. Safe to retry later."""

    http_status = 503


class ValidationError(SyncError, ValueError):
    """400-level input problem."""

    http_status = 400

    def __init__(self, message: str, *, value=None):
        super().__init__(message)
        self.value = value

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.value is not None:
            data["value"] = self.value
        return data


class CloudRejectedError(ValidationError):
    """The cloud answered with a non-success envelope code."""

    def __init__(self, message: str, *, code=None, value=None):
        super().__init__(message, value=value)
        self.code = code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["code"] = self.code
        return data


class NotFoundError(SyncError):
    """Entity absent locally or in the cloud."""

    http_status = 404


class ConflictError(SyncError):
    """409-level business rule conflict (e.g., gateway MAC already registered)."""

    http_status = 409


# Failures the sync queue must never retry
PERMANENT_ERRORS = (ValidationError, NotFoundError, ConflictError)

# Failures the sync queue retries with backoff
RETRYABLE_ERRORS = (TransientError, AuthenticationError)
