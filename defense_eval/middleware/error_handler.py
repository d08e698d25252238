"""
Error Handler Setup

Registers FastAPI exception handlers that render every failure in the
standard envelope (see defense_eval.errors). Internal details are only
returned when running in development.
"""
import logging
import traceback

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from defense_eval.errors import ERROR_MAPPING, APIError, ErrorCode, error_payload, new_log_id

logger = logging.getLogger(__name__)

REDACTED_MESSAGE = "An internal error occurred. Please try again or contact support."


def _request_context(request: Request) -> dict:
    return {
        "method": request.method,
        "path": request.url.path,
        "client": request.client.host if request.client else None,
    }


def setup_error_handlers(app, debug: bool = False):
    """
    Setup error handlers for FastAPI application.

    Args:
        app: FastAPI application instance
        debug: Include internal error detail and tracebacks in responses
    """

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        content = exc.to_dict()
        if exc.status_code >= 500:
            logger.error(f"API error [{exc.code}]: {exc.message} | Context: {_request_context(request)}")
            if not debug and not exc.retryable:
                content["message"] = REDACTED_MESSAGE
        else:
            logger.warning(f"API error [{exc.code}]: {exc.message} | Context: {_request_context(request)}")
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        errors = [
            {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_payload(
                "Invalid input data",
                ErrorCode.VALIDATION_ERROR,
                details={"errors": errors},
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        logger.warning(f"HTTP exception on {request.url.path}: {exc.detail}")
        code = ERROR_MAPPING.get(
            exc.status_code,
            ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(str(exc.detail), code),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        log_id = new_log_id()
        logger.exception(f"Unhandled exception [{log_id}] | Context: {_request_context(request)}")

        details = {"log_id": log_id}
        if debug:
            details["type"] = type(exc).__name__
            details["traceback"] = traceback.format_exc()

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_payload(
                str(exc) if debug else REDACTED_MESSAGE,
                ErrorCode.INTERNAL_ERROR,
                details=details,
            ),
        )

    logger.info("Error handlers configured")
