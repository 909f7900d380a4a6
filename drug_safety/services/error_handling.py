from __future__ import annotations

import logging
import traceback
import uuid
from typing import Any, Tuple

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..utils.logging import get_request_logger

logger = logging.getLogger(__name__)

SAFE_ERROR_TEXT = "The drug safety check could not be completed. Please try again later."


class AppError(Exception):
    """Base application error for unified handling."""

    def __init__(
        self,
        message: str | None = None,
        *,
        reason: str | None = None,
        http_status: int | None = None,
        debug: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message or reason or "")
        self.reason = reason
        self.http_status = http_status
        self.debug = debug or {}


class BadRequestError(AppError):
    """Raised when the request is invalid or cannot be processed."""


class ValidationError(BadRequestError):
    """Raised when the payload fails validation (empty override reason, bad id list)."""


class NotFoundError(AppError):
    """Raised when a drug or allergy record does not exist."""

    def __init__(self, message: str | None = None, *, identifier: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.identifier = identifier


class DuplicateError(AppError):
    """Raised when an active allergy already exists for the patient and allergen."""


class UpstreamError(AppError):
    """Raised when external dependencies fail."""


class ExternalServiceError(UpstreamError):
    """Transport, timeout or non-2xx failure talking to the drug knowledge API."""

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        endpoint: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.endpoint = endpoint


def _detail_to_reason(detail: Any) -> str:
    if isinstance(detail, dict):
        return detail.get("reason") or detail.get("message") or "unknown"
    if isinstance(detail, list):
        return detail[0] if detail else "unknown"
    if detail:
        return str(detail)
    return "unknown"


def map_exception_to_error_code(exc: Exception) -> Tuple[str, str, int]:
    """Return normalized error code, reason, and HTTP status for the given exception."""

    if isinstance(exc, ValidationError):
        return (
            "VALIDATION_ERROR",
            exc.reason or str(exc) or "validation_error",
            exc.http_status or status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, BadRequestError):
        return (
            "BAD_REQUEST",
            exc.reason or str(exc) or "bad_request",
            exc.http_status or status.HTTP_400_BAD_REQUEST,
        )

    if isinstance(exc, NotFoundError):
        return (
            "NOT_FOUND",
            exc.reason or str(exc) or "not_found",
            exc.http_status or status.HTTP_404_NOT_FOUND,
        )

    if isinstance(exc, DuplicateError):
        return (
            "DUPLICATE",
            exc.reason or str(exc) or "duplicate",
            exc.http_status or status.HTTP_409_CONFLICT,
        )

    if isinstance(exc, RequestValidationError):
        return ("BAD_REQUEST", "request_validation_error", status.HTTP_422_UNPROCESSABLE_ENTITY)

    if isinstance(exc, ExternalServiceError):
        return (
            "UPSTREAM_UNAVAILABLE",
            exc.reason or f"external_service_error endpoint={exc.endpoint or '-'}",
            exc.http_status or status.HTTP_502_BAD_GATEWAY,
        )

    if isinstance(exc, UpstreamError):
        return (
            "UPSTREAM_UNAVAILABLE",
            exc.reason or "upstream_error",
            exc.http_status or status.HTTP_502_BAD_GATEWAY,
        )

    if isinstance(exc, HTTPException):
        status_code = exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
        reason = _detail_to_reason(exc.detail)
        if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
            return ("BAD_REQUEST", "rate_limit_exceeded", status_code)
        if status.HTTP_400_BAD_REQUEST <= status_code < status.HTTP_500_INTERNAL_SERVER_ERROR:
            return ("BAD_REQUEST", reason or "bad_request", status_code)
        if status_code in {
            status.HTTP_502_BAD_GATEWAY,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            status.HTTP_504_GATEWAY_TIMEOUT,
        }:
            return ("UPSTREAM_UNAVAILABLE", reason or "upstream_error", status_code)
        return ("INTERNAL_ERROR", reason or "internal_error", status_code)

    return (
        "INTERNAL_ERROR",
        getattr(exc, "reason", None) or exc.__class__.__name__,
        getattr(exc, "http_status", None) or status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


def build_error_response(
    *,
    error_code: str,
    reason: str,
    status_code: int,
    debug_payload: dict[str, Any] | None = None,
) -> JSONResponse:
    meta: dict[str, Any] = {}
    if debug_payload:
        meta["debug"] = debug_payload
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": error_code, "reason": reason, "message": SAFE_ERROR_TEXT},
            "data": None,
            "meta": meta,
        },
    )


def new_trace_id() -> str:
    return uuid.uuid4().hex


async def get_request_payload_size(request: Request) -> int:
    """Body size only; request bodies carry patient data and are never logged."""
    try:
        return len(await request.body())
    except Exception:
        return 0


async def log_exception(
    *,
    request: Request,
    exc: Exception,
    trace_id: str,
    handled: bool,
) -> None:
    req_logger = get_request_logger(
        logger,
        trace_id=trace_id,
        user_id=request.headers.get("x-user-id"),
    )
    payload_size = await get_request_payload_size(request)
    event = "request.error_handled" if handled else "request.error_unhandled"
    log_method = req_logger.warning if handled else req_logger.error
    log_method(
        "%s method=%s path=%s reason=%s payload_bytes=%d",
        event,
        request.method,
        request.url.path,
        getattr(exc, "reason", None) or exc.__class__.__name__,
        payload_size,
        exc_info=exc if not handled else None,
    )
    if handled and logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "request.error_traceback trace_id=%s\n%s",
            trace_id,
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )
