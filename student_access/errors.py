"""Exceptions shared by the portal services, the web API and the CLI."""
from __future__ import annotations


class PortalError(RuntimeError):
    """Base exception for portal operations."""

    status_code = 500


class ValidationError(PortalError, ValueError):
    """Raised when a request is missing fields or carries malformed values."""

    status_code = 400


class PermissionDenied(PortalError):
    """Raised when the signed-in user lacks the admin role."""

    status_code = 403


class NotFoundError(PortalError):
    """Raised when a policy, special group or suspension does not exist."""

    status_code = 404


class ConflictError(PortalError):
    """Raised when an operation clashes with existing state."""

    status_code = 409


__all__ = [
    "ConflictError",
    "NotFoundError",
    "PermissionDenied",
    "PortalError",
    "ValidationError",
]
