"""FastAPI exception handlers for converting WebhookError to HTTP responses.

Every webhook failure leaves the API as the same JSON shape:

    {"error": "<stable message>", "code": "ERR_WEBHOOK_00x", "retryable": false}

The status code comes from the error's ErrorCode (see ERROR_HTTP_STATUS):
- 400 Bad Request: Malformed payload
- 401 Unauthorized: Signature missing or invalid
- 405 Method Not Allowed: Anything but POST on the webhook path
- 500 Internal Server Error: Business, store and unexpected failures (provider retries)
- 503 Service Unavailable: Processing timed out

Usage:
    from api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.status import HTTP_405_METHOD_NOT_ALLOWED

from billing.models.errors import InternalError, MethodNotAllowed, WebhookError

logger = logging.getLogger(__name__)


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    """Handle WebhookError exceptions and convert to JSON response.

    Args:
        request: The incoming request
        exc: The WebhookError exception

    Returns:
        JSONResponse with the error body and the code's HTTP status.
    """
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(mode="json"),
    )


async def method_not_allowed_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Render routing 405s in the webhook error shape; defer everything else."""
    if exc.status_code != HTTP_405_METHOD_NOT_ALLOWED:
        return await http_exception_handler(request, exc)

    response = await webhook_error_handler(request, MethodNotAllowed())
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions with the webhook error shape.

    Args:
        request: The incoming request
        exc: The uncaught exception

    Returns:
        JSONResponse with 500 status and a generic error message.
    """
    logger.exception("Unhandled exception on %s %s: %s", request.method, request.url.path, exc)

    # Internal details stay in the logs
    error = InternalError()
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_response().model_dump(mode="json"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(WebhookError, webhook_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, method_not_allowed_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
