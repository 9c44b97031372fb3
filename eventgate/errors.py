"""Service-level exceptions and their HTTP mapping."""

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base class for errors raised by the service layer."""

    status_code = 500
    default_message = "Something went wrong."

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def error(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        payload = {"error": self.error, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(ServiceError):
    """Missing or malformed input the caller can correct."""

    status_code = 400
    default_message = "Some of the fields were invalid."

    def __init__(
        self,
        message: str | None = None,
        *,
        fields: list[str] | None = None,
        invalid: dict[str, str] | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if fields:
            details["fields"] = list(fields)
        if invalid:
            details["invalid"] = dict(invalid)
        super().__init__(message, **details)
        self.fields = list(fields or [])
        self.invalid = dict(invalid or {})


class Unauthorized(ServiceError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    default_message = "You don't have permission to perform this action."


class FormNotPublished(Forbidden):
    default_message = "This form is not available."


class NotFound(ServiceError):
    status_code = 404
    default_message = "Not found"


class Conflict(ServiceError):
    status_code = 409
    default_message = "This record already exists."


class UpstreamFailure(ServiceError):
    """Database or transport failure; the message stays generic."""

    status_code = 500
    default_message = "We hit an upstream issue. Please try again."


class Unavailable(UpstreamFailure):
    status_code = 503
    default_message = (
        "The service is busy at the moment. Please wait a few seconds and try again."
    )
