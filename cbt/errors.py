"""
Error taxonomy for the CBT engine.

Forbidden, NotFound and TestLocked are surfaced to the API caller.
AlreadySubmitted and EvaluationUnavailable are absorbed inside the engine.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class CBTError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class Forbidden(CBTError):
    status_code = 403


class NotFound(CBTError):
    status_code = 404


class TestLocked(CBTError):
    """Question set edit rejected because attempts already exist."""
    status_code = 409


class AlreadySubmitted(CBTError):
    status_code = 200


class EvaluationUnavailable(CBTError):
    """Essay evaluator failed after retries (or returned an unusable score)."""
    status_code = 503

    def __init__(self, detail: str, attempts: int = 0, last_exception: Exception = None):
        super().__init__(detail)
        self.attempts = attempts
        self.last_exception = last_exception


async def cbt_error_handler(request: Request, exc: CBTError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(CBTError, cbt_error_handler)
