from __future__ import annotations

from datetime import datetime


class BackendError(Exception):
    """Base error for failures reported by the backend collaborator."""

    code = "backend_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(message or self.code)


class TransientError(BackendError):
    code = "unavailable"


class PermissionDenied(BackendError):
    code = "forbidden"


class NotFound(BackendError):
    code = "not_found"


class Conflict(BackendError):
    code = "conflict"


class InvalidRequest(BackendError):
    code = "invalid_request"


_ERRORS_BY_CODE = {
    cls.code: cls for cls in (TransientError, PermissionDenied, NotFound, Conflict, InvalidRequest)
}


def error_for_code(code: str | None, message: str) -> BackendError:
    """Map a wire error code back to the matching exception instance."""

    cls = _ERRORS_BY_CODE.get(code or "")
    if cls is None:
        return BackendError(message, code=code or BackendError.code)
    return cls(message)


class RowError(ValueError):
    pass


class AccountRestricted(Exception):
    def __init__(self, *, banned_until: datetime | None):
        self.banned_until = banned_until
        if banned_until is None:
            message = "account is permanently suspended"
        else:
            message = f"account is restricted until {banned_until.isoformat()}"
        super().__init__(message)
