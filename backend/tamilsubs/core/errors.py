from __future__ import annotations

from typing import Any


class ServiceError(RuntimeError):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def payload(self) -> dict[str, Any]:
        return {"error": self.message}


class Unauthorized(ServiceError):
    status_code = 401
    default_message = "Unauthorized"


class InvalidAssertion(ServiceError):
    status_code = 401
    default_message = "Authentication failed"


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"


class InvalidInput(ServiceError):
    status_code = 400
    default_message = "Invalid request"


class InvalidSignature(ServiceError):
    status_code = 400
    default_message = "Invalid signature"


class AlreadyGranted(ServiceError):
    status_code = 403
    default_message = "Trial already used"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "Forbidden"


class InsufficientBalance(ServiceError):
    status_code = 402
    default_message = "Insufficient balance"

    def __init__(self, required_amount: int, message: str | None = None) -> None:
        self.required_amount = int(required_amount)
        super().__init__(message)

    def payload(self) -> dict[str, Any]:
        return {"error": self.message, "requiredAmount": self.required_amount}


class UpstreamFailure(ServiceError):
    status_code = 500
    default_message = "Upstream service failed"

    def __init__(self, message: str | None = None, *, provider: str = "", status_code: int | None = None) -> None:
        self.provider = provider
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class StorageFailure(ServiceError):
    status_code = 500
    default_message = "Storage unavailable, please retry later"
