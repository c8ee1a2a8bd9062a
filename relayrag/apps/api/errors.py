from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from relayrag.core.errors import (
    DatabaseError,
    MalformedVendorOutputError,
    ProviderConfigError,
    RelayError,
    RetrievalUnavailableError,
    SessionNotFoundError,
    SessionOwnershipError,
    VendorAuthError,
    VendorError,
    VendorTimeoutError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
    429: "QUOTA_EXCEEDED",
    500: "INTERNAL_ERROR",
    502: "VENDOR_ERROR",
    503: "SERVICE_UNAVAILABLE",
    504: "VENDOR_TIMEOUT",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def error_payload(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def map_relay_error(exc: Exception) -> tuple[int, str, str]:
    # Stable client codes; vendor-internal text never leaves the server.
    if isinstance(exc, SessionNotFoundError):
        return status.HTTP_404_NOT_FOUND, "SESSION_NOT_FOUND", "Session not found."
    if isinstance(exc, SessionOwnershipError):
        return status.HTTP_403_FORBIDDEN, "SESSION_FORBIDDEN", "You do not have access to this session."
    if isinstance(exc, ProviderConfigError):
        return status.HTTP_503_SERVICE_UNAVAILABLE, "PROVIDER_CONFIG_ERROR", "The AI service is not configured."
    if isinstance(exc, MalformedVendorOutputError):
        return status.HTTP_502_BAD_GATEWAY, "GENERATION_FAILED", "The AI response could not be processed."
    if isinstance(exc, VendorAuthError):
        return status.HTTP_502_BAD_GATEWAY, "VENDOR_AUTH_ERROR", "The AI service rejected our credentials."
    if isinstance(exc, VendorTimeoutError):
        return status.HTTP_504_GATEWAY_TIMEOUT, "VENDOR_TIMEOUT", "The AI service timed out. Please try again."
    if isinstance(exc, VendorError):
        return status.HTTP_502_BAD_GATEWAY, "VENDOR_ERROR", "The AI service failed to respond. Please try again."
    if isinstance(exc, RetrievalUnavailableError):
        return status.HTTP_503_SERVICE_UNAVAILABLE, "RETRIEVAL_UNAVAILABLE", "Retrieval is unavailable."
    if isinstance(exc, DatabaseError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR, "DB_ERROR", "Database error. Check server logs."
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "Internal error."


def to_http_exception(exc: Exception) -> HTTPException:
    status_code, code, message = map_relay_error(exc)
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return JSONResponse(
        content=error_payload(code, message, details),
        status_code=exc.status_code,
        headers=exc.headers,
    )


async def relay_exception_handler(request: Request, exc: RelayError) -> JSONResponse:
    status_code, code, message = map_relay_error(exc)
    logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, type(exc).__name__)
    return JSONResponse(content=error_payload(code, message), status_code=status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        content=error_payload("REQUEST_VALIDATION_ERROR", "Validation error", {"errors": exc.errors()}),
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(
        content=error_payload("INTERNAL_ERROR", "Internal error."),
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
