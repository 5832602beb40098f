"""
Standardized error handling utilities for API endpoints.
"""
from functools import wraps
from typing import Callable, Any, NoReturn
from uuid import UUID
from fastapi import HTTPException, status
import logging

from timecards.core.config import settings
from timecards.services.errors import (
    AuditPersistenceFailure,
    ConcurrentModification,
    EngineError,
    InvalidTransition,
    MissingBreakUnresolved,
    PermissionDenied,
    RecordNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

ENGINE_ERROR_STATUS = {
    RecordNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    MissingBreakUnresolved: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    AuditPersistenceFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}

GENERIC_RETRY_MESSAGE = "The change could not be saved. Please try again."


def is_production() -> bool:
    return settings.ENVIRONMENT.lower() in ["prod", "production"]


def parse_uuid(uuid_string: str, entity_name: str = "ID") -> UUID:
    """
    Parse a UUID string and raise a standardized error if invalid.

    Args:
        uuid_string: String to parse as UUID
        entity_name: Name of the entity (for error message)

    Returns:
        Parsed UUID

    Raises:
        HTTPException: If UUID is invalid
    """
    try:
        return UUID(uuid_string)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {entity_name.lower()}: '{uuid_string}'. Must be a valid UUID.",
        )


def raise_for_engine_error(error: EngineError) -> NoReturn:
    """
    Translate an engine error into an HTTPException.

    Transition and validation errors name the violated rule. Audit write
    failures are infrastructure problems and only say to try again.
    """
    status_code = ENGINE_ERROR_STATUS.get(type(error), status.HTTP_400_BAD_REQUEST)
    if isinstance(error, AuditPersistenceFailure):
        detail = {"code": error.code, "message": GENERIC_RETRY_MESSAGE}
    else:
        detail = error.to_dict()
    raise HTTPException(status_code=status_code, detail=detail)


def handle_endpoint_errors(
    operation_name: str = None,
    log_error: bool = True,
):
    """
    Decorator to standardize error handling across all endpoints.

    Catches unexpected exceptions, logs them, and returns appropriate HTTP responses.

    Args:
        operation_name: Name of the operation (for logging)
        log_error: Whether to log errors (default: True)

    Usage:
        @handle_endpoint_errors(operation_name="apply_action")
        async def apply_action_endpoint(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            op_name = operation_name or func.__name__
            try:
                return await func(*args, **kwargs)
            except HTTPException:
                raise
            except EngineError as e:
                if log_error:
                    logger.warning(f"{e.code} in {op_name}: {e.message}")
                raise_for_engine_error(e)
            except ValueError as e:
                if log_error:
                    logger.warning(f"Value error in {op_name}: {str(e)}")
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Invalid input: {str(e)}",
                )
            except Exception as e:
                error_detail = str(e)
                error_type = type(e).__name__

                if log_error:
                    logger.error(
                        f"Unexpected error in {op_name}",
                        exc_info=True,
                        extra={
                            "operation": op_name,
                            "error": error_detail,
                            "error_type": error_type
                        }
                    )

                if is_production():
                    detail_msg = "An unexpected error occurred while processing your request. Please try again later."
                else:
                    detail_msg = f"Error in {op_name}: {error_type}: {error_detail}"

                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail=detail_msg,
                )
        return wrapper
    return decorator
