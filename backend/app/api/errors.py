"""Global exception handlers for API errors."""
from fastapi import Request, status
from fastapi.responses import JSONResponse

from app.core.logging import get_logger
from app.models.media import ErrorResponse
from app.services.errors import MediaServiceError

logger = get_logger(__name__)

STATUS_CODE_MAP = {
    "INVALID_URL": status.HTTP_400_BAD_REQUEST,
    "HOST_NOT_ALLOWED": status.HTTP_403_FORBIDDEN,
    "UNSUPPORTED_FORMAT": status.HTTP_400_BAD_REQUEST,
    "UNSUPPORTED_MEDIA_TYPE": status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    "PAYLOAD_TOO_LARGE": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    "SOURCE_UNAVAILABLE": status.HTTP_404_NOT_FOUND,
    "SOURCE_UNREACHABLE": status.HTTP_502_BAD_GATEWAY,
    "UPSTREAM_ERROR": status.HTTP_502_BAD_GATEWAY,
    "PROBE_FAILED": status.HTTP_502_BAD_GATEWAY,
    "SPAWN_FAILED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "DOWNLOADER_FAILED": status.HTTP_502_BAD_GATEWAY,
    "ENCODER_FAILED": status.HTTP_502_BAD_GATEWAY,
    "INTERNAL_ERROR": status.HTTP_500_INTERNAL_SERVER_ERROR,
}

# Expected user errors, not worth a warning
_QUIET_CODES = {"INVALID_URL", "HOST_NOT_ALLOWED", "UNSUPPORTED_FORMAT"}


async def media_service_error_handler(
    request: Request, exc: MediaServiceError
) -> JSONResponse:
    """Handle all MediaServiceError exceptions raised before streaming starts.

    Args:
        request: FastAPI request
        exc: Domain exception

    Returns:
        JSON response with error details
    """
    status_code = STATUS_CODE_MAP.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    if exc.code not in _QUIET_CODES:
        logger.warning(f"Domain error: {exc.code} - {exc.message}")

    error_response = ErrorResponse(code=exc.code, message=exc.message)

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
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response.model_dump(),
    )
