"""HTTP middleware: request tracing, error translation and response timing."""

import time
import uuid
from typing import Callable, Dict, Tuple, Type

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    ActionError,
    GraphValidationError,
    InvalidStateError,
    NotFoundError,
    ScheduleError,
    StorageError,
    TransientError,
    TypeMismatchError,
    WorkflowEngineError,
    create_error_response,
)
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# First match wins; anything else is a server error
_STATUS_CODES: Tuple[Tuple[Tuple[Type[WorkflowEngineError], ...], int], ...] = (
    ((NotFoundError,), 404),
    ((InvalidStateError,), 409),
    ((GraphValidationError, TypeMismatchError, ScheduleError), 422),
    ((ActionError,), 502),
    ((StorageError, TransientError), 503),
)


def status_code_for(error: WorkflowEngineError) -> int:
    """HTTP status code of an engine error."""
    for error_types, status_code in _STATUS_CODES:
        if isinstance(error, error_types):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs it, and turns escaped errors into JSON."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        headers: Dict[str, str] = {REQUEST_ID_HEADER: request_id}
        set_logging_context(request_id=request_id, path=request.url.path)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            logger.warning(f"{request.method} {request.url.path} failed with {e.error_code}: {e.message}",
                           extra={"extra_fields": e.to_dict()})
            return JSONResponse(status_code=status_code_for(e), content=create_error_response(e), headers=headers)
        except Exception as e:
            logger.error(f"Unhandled error on {request.method} {request.url.path}: {e}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__},
                    "request_id": request_id
                },
                headers=headers
            )
        else:
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {time.perf_counter() - started:.3f}s"
            )
            response.headers.update(headers)
            return response
        finally:
            clear_logging_context()


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Adds X-Response-Time and warns about requests slower than the threshold."""

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        if elapsed > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {elapsed:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        return response
