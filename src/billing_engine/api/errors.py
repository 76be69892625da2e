"""Translation of billing errors into HTTP responses."""

from fastapi import status

from billing_engine.errors import (
    AuthorizationError,
    BillingError,
    ConflictError,
    NotFoundError,
    ValidationError,
)

STATUS_BY_ERROR: list[tuple[type[BillingError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
]


def status_for(error: BillingError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


