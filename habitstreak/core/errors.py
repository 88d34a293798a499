"""Error kinds, engine results, and HTTP error normalization."""

import logging
import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from habitstreak.core.logging import get_request_id

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_TIMEZONE = "invalid_timezone"
    UNAUTHORIZED = "unauthorized"
    OWNERSHIP_MISMATCH = "ownership_mismatch"
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    CONFLICT = "conflict"
    INTEGRITY_VIOLATION = "integrity_violation"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


@dataclass(frozen=True)
class EngineError:
    kind: ErrorKind
    message: str
    details: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an engine operation: a value or a typed error, never both."""

    value: Optional[T] = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, details: Optional[List[str]] = None) -> "Result[T]":
        return cls(error=EngineError(kind=kind, message=message, details=list(details or [])))

    def unwrap(self) -> T:
        """Return the value or raise the AppError matching the error kind."""
        if self.error is not None:
            raise error_for(self.error)
        return self.value


class WriteConflict(Exception):
    """A concurrent commit touched the same habit/user key."""


class StoreSchemaError(Exception):
    """A persisted document failed schema validation."""


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None, details: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = list(details or [])


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class AlreadyExistsError(AppError):
    code = "already_exists"
    status_code = 409


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class IntegrityViolationError(AppError):
    code = "integrity_violation"
    status_code = 500


class OperationTimeoutError(AppError):
    code = "timeout"
    status_code = 504


class InternalError(AppError):
    code = "internal_error"
    status_code = 500


_KIND_TO_ERROR = {
    ErrorKind.INVALID_ARGUMENT: ValidationError,
    ErrorKind.INVALID_TIMEZONE: ValidationError,
    ErrorKind.UNAUTHORIZED: PermissionError,
    ErrorKind.OWNERSHIP_MISMATCH: PermissionError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.ALREADY_EXISTS: AlreadyExistsError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.INTEGRITY_VIOLATION: IntegrityViolationError,
    ErrorKind.TIMEOUT: OperationTimeoutError,
    ErrorKind.INTERNAL: InternalError,
}


def error_for(error: EngineError) -> AppError:
    cls = _KIND_TO_ERROR.get(error.kind, InternalError)
    return cls(error.message, details=error.details)


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[List[str]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("habitstreak")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("habitstreak")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("habitstreak")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
