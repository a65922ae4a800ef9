from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError


@dataclass
class AppError(Exception):
    """Base application error tagged with a stable error code and HTTP status.

    ``code`` is the error kind; callers branch on it instead of inspecting the
    exception's shape.
    """

    message: str
    code: str = "internal_error"
    http_status: int = 500
    detail: Any = None
    cause: Optional[BaseException] = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message

    @property
    def kind(self) -> str:
        return self.code


class BadRequestError(AppError):
    def __init__(self, message: str, *, detail: Any = None, cause: Optional[BaseException] = None):
        super().__init__(message=message, code="bad_request", http_status=400, detail=detail, cause=cause)


class NotFoundError(AppError):
    def __init__(self, message: str, *, detail: Any = None, cause: Optional[BaseException] = None):
        super().__init__(message=message, code="not_found", http_status=404, detail=detail, cause=cause)


class UnsupportedOperationError(AppError):
    def __init__(self, message: str, *, detail: Any = None, cause: Optional[BaseException] = None):
        super().__init__(
            message=message, code="unsupported_operation", http_status=400, detail=detail, cause=cause
        )


class TransportError(AppError):
    """Bus/RPC failure. ``http_status`` carries the remote status code."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 500,
        detail: Any = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            message=message, code="transport_error", http_status=int(status_code), detail=detail, cause=cause
        )

    @property
    def status_code(self) -> int:
        return self.http_status


class RecipientFailure(AppError):
    """Failure scoped to a single recipient of a fan-out pass."""

    def __init__(self, message: str, *, detail: Any = None, cause: Optional[BaseException] = None):
        super().__init__(message=message, code="recipient_failure", http_status=500, detail=detail, cause=cause)


def validation_error_to_bad_request(prefix: str, exc: ValidationError) -> BadRequestError:
    details = exc.errors()
    if not details:
        return BadRequestError(f"{prefix}: invalid arguments", cause=exc)
    first = details[0]
    loc = ".".join(str(part) for part in first.get("loc") or [])
    msg = str(first.get("msg") or "invalid value")
    if loc:
        return BadRequestError(f"{prefix}: invalid {loc}: {msg}", cause=exc)
    return BadRequestError(f"{prefix}: invalid arguments: {msg}", cause=exc)


def classify_exception(exc: Exception, *, default_code: str = "internal_error") -> Tuple[str, str, Any]:
    if isinstance(exc, AppError):
        return exc.code, exc.message, exc.detail
    if isinstance(exc, KeyError):
        return "not_found", str(exc), None
    if isinstance(exc, ValueError):
        return "bad_request", str(exc), None
    return default_code, str(exc), None


def http_status_from_exception(exc: Exception) -> int:
    if isinstance(exc, AppError):
        return exc.http_status
    if isinstance(exc, KeyError):
        return 404
    if isinstance(exc, ValueError):
        return 400
    return 500


def rpc_error_from_exception(exc: Exception, *, default_code: str = "internal_error") -> Dict[str, Any]:
    """Shape an exception as the ``err`` body of a bus reply."""
    code, message, detail = classify_exception(exc, default_code=default_code)
    data: Dict[str, Any] = {
        "statusCode": http_status_from_exception(exc),
        "message": message,
        "error": code,
    }
    if detail is not None:
        data["detail"] = detail
    return data
