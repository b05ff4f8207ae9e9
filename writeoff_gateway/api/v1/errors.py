"""Mapping of domain exceptions to HTTP responses"""

import logging

from fastapi import HTTPException

from writeoff_gateway.domain.exceptions import (
    AggregatorError,
    AuthorizationError,
    ClassificationValidationError,
    ClassifierError,
    DomainException,
    InvalidTransitionError,
    MissingAccessTokenError,
    PersistenceError,
    ProfileNotFoundError,
    SyncInProgressError,
    SyncLeaseLostError,
    TransactionNotFoundError,
)

STATUS_BY_EXCEPTION = {
    ProfileNotFoundError: (404, None),
    TransactionNotFoundError: (404, None),
    MissingAccessTokenError: (409, None),
    SyncInProgressError: (409, None),
    SyncLeaseLostError: (409, None),
    InvalidTransitionError: (409, None),
    AuthorizationError: (403, "Transaction not accessible"),
    AggregatorError: (503, "Aggregator service unavailable"),
    ClassifierError: (503, "Classifier service unavailable"),
    ClassificationValidationError: (502, "Classifier returned an invalid verdict"),
    PersistenceError: (503, "Storage unavailable, retry later"),
}


def to_http_exception(error: DomainException, request_id: str) -> HTTPException:
    """Log a domain failure and translate it for the client"""
    status_code, detail = STATUS_BY_EXCEPTION.get(type(error), (500, "Internal server error"))
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logging.log(level, f"{type(error).__name__}: {error}", extra={"request_id": request_id})
    return HTTPException(status_code=status_code, detail=detail or str(error))
