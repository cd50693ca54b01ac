from typing import Any, Dict, Optional
import logging


class CoachError(Exception):
    """Base for failures that map onto a structured client-facing error.

    - status_code: HTTP status returned to the caller
    - code: stable snake_case identifier (e.g. ``client_not_found``)
    - message: human readable text, safe to show to end users
    - details: optional extra payload (validation errors and the like)
    """

    status_code: int = 500
    default_code: str = "internal_error"
    log_level: int = logging.ERROR

    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message or code or self.default_code)
        self.code = code or self.default_code
        self.message = message
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code}
        if self.message:
            payload["message"] = self.message
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(CoachError):
    status_code = 400
    default_code = "bad_request"
    log_level = logging.WARNING


class UnauthorizedError(CoachError):
    status_code = 401
    default_code = "unauthorized"
    log_level = logging.WARNING


class PaymentRequiredError(CoachError):
    status_code = 402
    default_code = "payment_required"
    log_level = logging.INFO


class ForbiddenError(CoachError):
    status_code = 403
    default_code = "forbidden"
    log_level = logging.WARNING


class NotFoundError(CoachError):
    status_code = 404
    default_code = "not_found"
    log_level = logging.INFO


class UpstreamError(CoachError):
    """An external collaborator (LLM / TTS) failed where no local recovery exists."""

    status_code = 502
    default_code = "upstream_failed"
    log_level = logging.ERROR
