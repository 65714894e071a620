"""
Domain errors and their HTTP translation.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from casehub.logging_config import get_logger

logger = get_logger(__name__)


class CaseHubError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, context: dict | None = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class ValidationError(CaseHubError):
    status_code = 400
    code = "VALIDATION_ERROR"


class InsufficientFundsError(ValidationError):
    code = "INSUFFICIENT_FUNDS"


class NotFoundError(CaseHubError):
    status_code = 404
    code = "NOT_FOUND"


class InactiveResourceError(CaseHubError):
    status_code = 409
    code = "INACTIVE"


class ExternalServiceError(CaseHubError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, context: dict | None = None, timed_out: bool = False):
        super().__init__(message, context)
        self.timed_out = timed_out


class IntegrityFault(CaseHubError):
    """
    A balance or ledger invariant was violated inside a committed unit of work.
    Never corrected silently; requires operator attention.
    """

    code = "INTEGRITY_FAULT"


class IdempotentNoOp(Exception):
    """
    Raised when a ledger entry has already left PENDING. Not a failure.
    """

    def __init__(self, entry_id: int, status: str):
        self.entry_id = entry_id
        self.status = status
        super().__init__(f"ledger entry {entry_id} already {status}")


async def casehub_error_handler(request: Request, exc: CaseHubError):
    if isinstance(exc, IntegrityFault):
        logger.critical("Integrity fault path=%s error=%s context=%s", request.url.path, exc.message, exc.context)
    else:
        logger.warning(
            "Request failed path=%s code=%s error=%s",
            request.url.path,
            exc.code,
            exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(CaseHubError, casehub_error_handler)
