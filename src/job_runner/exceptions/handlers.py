from fastapi import status, Request
from fastapi.responses import JSONResponse
from job_runner.exceptions.exceptions import (
    JobDefinitionError,
    ResourceNotFoundError,
)
from job_runner.schema import ApiResponse
import logging

logger = logging.getLogger(__name__)


async def job_definition_error_handler(request: Request, exc: JobDefinitionError):
    logger.warning(f"Invalid job definitions: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ApiResponse(
            success=False,
            message="Invalid job definitions",
            error=str(exc)
        ).model_dump()
    )


async def resource_not_found_handler(request: Request, exc: ResourceNotFoundError):
    logger.warning(f"Resource not found: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ApiResponse(
            success=False,
            message="Resource not found",
            error=str(exc)
        ).model_dump()
    )


async def value_error_handler(request: Request, exc: ValueError):
    logger.warning(f"Validation error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ApiResponse(
            success=False,
            message="Invalid request",
            error=str(exc)
        ).model_dump()
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ApiResponse(
            success=False,
            message="Internal server error",
            error="An unexpected error occurred. Please try again."
        ).model_dump()
    )
