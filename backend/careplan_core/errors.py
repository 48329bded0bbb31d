from __future__ import annotations

from typing import Any


class CarePlanError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def as_payload(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, "success": False}


class ValidationError(CarePlanError):
    status_code = 400
    code = "validation_error"


class NotFoundError(CarePlanError):
    status_code = 404
    code = "not_found"


class ConflictError(CarePlanError):
    status_code = 409
    code = "conflict"


class UpstreamFailure(CarePlanError):
    status_code = 500
    code = "upstream_failure"


class UnauthorizedError(CarePlanError):
    status_code = 401
    code = "unauthorized"
