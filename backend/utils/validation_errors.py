"""
Structured API Error Utilities

Provides standardized error responses for request validation and for
reconciliation failures, so the UI can tell bad input, missing records
and illegal state changes apart from connectivity issues.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error" | "not_found" | "invalid_transition",
    "parameter": "transaction_id",
    "message": "transaction_id is required"
}
"""

import uuid
from typing import Optional, Any

from fastapi import HTTPException, status

from reconciliation.errors import (
    InvalidTransitionError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        """
        Create a missing parameter error response.

        Args:
            parameter: Name of the missing parameter
            message: Optional custom message

        Returns:
            Structured error dict
        """
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)

        Returns:
            Structured error dict
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response


def raise_missing_parameter(parameter: str, message: Optional[str] = None):
    """
    Raise HTTPException with structured missing parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.missing_parameter(parameter, message)
    )


def raise_invalid_parameter(parameter: str, message: str, value: Optional[Any] = None):
    """
    Raise HTTPException with structured invalid parameter error.

    Raises:
        HTTPException with 422 status and structured error body
    """
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=ValidationErrorResponse.invalid_parameter(parameter, message, value)
    )


def status_code_for(error: ReconciliationError) -> int:
    if isinstance(error, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, InvalidTransitionError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def raise_reconciliation_error(error: ReconciliationError):
    """
    Raise HTTPException carrying a reconciliation error's structured body.

    Raises:
        HTTPException with 422 / 404 / 409 status depending on the error type
    """
    raise HTTPException(status_code=status_code_for(error), detail=error.to_dict()) from error


def validate_required_uuid(value: Optional[str], parameter: str) -> str:
    """
    Validate that a required UUID parameter is present and valid.

    Args:
        value: The value to validate
        parameter: Name of the parameter for error messages

    Returns:
        The validated value

    Raises:
        HTTPException with structured error if validation fails
    """
    if not value:
        raise_missing_parameter(parameter)

    try:
        uuid.UUID(value)
        return value
    except ValueError:
        raise_invalid_parameter(
            parameter,
            f"{parameter} must be a valid UUID format",
            value
        )


def validate_optional_uuid(value: Optional[str], parameter: str) -> Optional[str]:
    """
    Validate that an optional UUID parameter is valid if provided.

    Returns:
        The validated value or None
    """
    if not value:
        return None

    try:
        uuid.UUID(value)
        return value
    except ValueError:
        raise_invalid_parameter(
            parameter,
            f"{parameter} must be a valid UUID format",
            value
        )
