"""Service error types shared by the service layer and the HTTP handlers."""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """
    Error carrying a machine-readable code and an HTTP status.

    Raised by service classes and rendered by the exception handlers as
    ``{"error": ..., "message": ..., "details": ...}``.
    """

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}


class InvalidAmountError(ServiceError):
    """Amount is not a positive integer or exceeds what is held."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_AMOUNT", message, 400, details)


class InsufficientFundsError(ServiceError):
    """Wallet balance cannot cover the requested debit."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INSUFFICIENT_FUNDS", message, 402, details)


class UnauthorizedError(ServiceError):
    """Caller is not a party allowed to perform the action."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("UNAUTHORIZED", message, 403, details)


class InvalidTransitionError(ServiceError):
    """Requested status change is not allowed from the current status."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_TRANSITION", message, 409, details)


class AlreadyClosedError(ServiceError):
    """Escrow has already been released or refunded."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("ESCROW_ALREADY_CLOSED", message, 409, details)


class NotFoundError(ServiceError):
    """Wallet, task, escrow, transaction or profile does not exist."""

    def __init__(self, resource: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"{resource.upper()}_NOT_FOUND",
            f"{resource.capitalize()} not found",
            404,
            details,
        )


class InvalidSettingsError(ServiceError):
    """Platform settings are inconsistent or out of range."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("INVALID_SETTINGS", message, 500, details)


class ExternalPaymentFailedError(ServiceError):
    """Hosted checkout could not be initiated or reported a failure."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__("EXTERNAL_PAYMENT_FAILED", message, 502, details)
