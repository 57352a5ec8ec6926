"""Domain error taxonomy.

Every error is an ``HTTPException`` so services can raise them directly and
FastAPI renders ``{"detail": {"code": ..., "message": ...}}`` with the
matching status code. Extra keyword arguments are merged into ``detail``.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException


class KorimaError(HTTPException):
    status_code = 500
    code = "unknown"
    default_message = "Unexpected error."

    def __init__(self, message: str | None = None, *, code: str | None = None, **extra: Any):
        self.code = code or self.code
        self.message = message or self.default_message
        detail = {"code": self.code, "message": self.message}
        detail.update(extra)
        super().__init__(status_code=self.status_code, detail=detail)


class ValidationFailed(KorimaError):
    status_code = 422
    code = "validation_failed"
    default_message = "Invalid input."


class InvalidPayload(ValidationFailed):
    code = "invalid_payload"
    default_message = "A response needs exactly one PDF file or one http(s) link."


class InvalidDoi(ValidationFailed):
    code = "invalid_doi"
    default_message = "A DOI must start with \"10.\"."


class PermissionDenied(KorimaError):
    status_code = 403
    code = "permission_denied"
    default_message = "You are not allowed to perform this action."


class NotOwner(PermissionDenied):
    code = "not_owner"
    default_message = "Only the request owner can rate its responses."


class PreconditionFailed(KorimaError):
    status_code = 409
    code = "precondition_failed"
    default_message = "The operation is not allowed in the current state."


class RequestNotActive(PreconditionFailed):
    code = "request_not_active"
    default_message = "The request is no longer active."


class AlreadyDecided(PreconditionFailed):
    code = "already_decided"
    default_message = "A response on this request has already been rated."


class AlreadyCheckedInToday(PreconditionFailed):
    code = "already_checked_in_today"
    default_message = "Daily check-in already claimed. Come back later."


class InsufficientPoints(PreconditionFailed):
    status_code = 402
    code = "insufficient_points"
    default_message = "Not enough points for this request."


class QuotaExceeded(PreconditionFailed):
    status_code = 429
    code = "quota_exceeded"
    default_message = "Daily request limit reached."


class NotFound(KorimaError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class ResponseNotFound(NotFound):
    code = "response_not_found"
    default_message = "Response not found for this request."


class PayloadExpired(NotFound):
    status_code = 410
    code = "payload_expired"
    default_message = "The shared document is no longer available."


class MetadataNotFound(NotFound):
    code = "metadata_not_found"
    default_message = "No bibliographic record found."


class UpstreamUnavailable(KorimaError):
    status_code = 502
    code = "upstream_error"
    default_message = "External catalog unavailable."


class UpstreamTimeout(UpstreamUnavailable):
    status_code = 504
    code = "upstream_timeout"
    default_message = "External catalog timed out."


class Unknown(KorimaError):
    pass
