"""Global exception handlers for API errors."""
from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.core.logging import get_logger
from app.models.video import ErrorResponse
from app.services.errors import DeliveryError, DownloaderError

logger = get_logger(__name__)

# Used when the client is gone; nobody reads the body anyway
HTTP_499_CLIENT_CLOSED_REQUEST = 499

STATUS_CODE_MAP = {
    "INVALID_URL": status.HTTP_400_BAD_REQUEST,
    "INVALID_FORMAT": status.HTTP_400_BAD_REQUEST,
    "RESOLVE_FAILED": status.HTTP_400_BAD_REQUEST,
    "FETCH_FAILED": status.HTTP_502_BAD_GATEWAY,
    "ASSEMBLE_FAILED": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "DELIVERY_FAILED": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "INTERNAL_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def downloader_error_handler(
    request: Request, exc: DownloaderError
) -> JSONResponse:
    """Handle all DownloaderError exceptions.

    Args:
        request: FastAPI request
        exc: Domain exception

    Returns:
        JSON response with error details
    """
    status_code = STATUS_CODE_MAP.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, DeliveryError) and exc.client_gone:
        status_code = HTTP_499_CLIENT_CLOSED_REQUEST

    # Log error (excluding bad input which is expected user error)
    if exc.code not in ("INVALID_URL", "INVALID_FORMAT"):
        logger.warning(f"Domain error: {exc.code} - {exc.message} ({exc.details or 'no details'})")

    error_response = ErrorResponse(error=exc.message, details=exc.details, code=exc.code)

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions.

    Args:
        request: FastAPI request
        exc: Unexpected exception

    Returns:
        JSON response with generic error
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    error_response = ErrorResponse(
        error="An unexpected error occurred. Please try again later.",
        code="INTERNAL_ERROR",
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response.model_dump(),
    )
