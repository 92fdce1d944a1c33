"""Typed service errors shared by every layer."""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """
    Error carrying a machine-readable code, a message, an HTTP status,
    and structured details (entity ids, attempted action).
    """

    status_code_default: int = 500

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = self.status_code_default if status_code is None else status_code
        self.details: dict[str, Any] = {} if details is None else details

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error!r}, {self.message!r}, {self.status_code})"


class NotFoundError(ServiceError):
    """Referenced bid, task, or payment does not exist."""

    status_code_default = 404

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, None, details)


class ValidationError(ServiceError):
    """Malformed input: non-positive amount, missing field, bad format."""

    status_code_default = 400

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, None, details)


class ConflictError(ServiceError):
    """Business-rule violation against the current state."""

    status_code_default = 409

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, None, details)


class AuthorizationError(ServiceError):
    """Actor is not the owner or bidder entitled to perform the action."""

    status_code_default = 403

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, None, details)


class GatewayError(ServiceError):
    """The payment gateway declined or errored; not the caller's fault."""

    status_code_default = 502

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, None, details)
