"""Transaction review endpoints - listing, re-analysis, manual decisions and resets"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from writeoff_gateway.api.dependencies import get_app_settings, get_classifier_client, get_request_id
from writeoff_gateway.api.v1.errors import to_http_exception
from writeoff_gateway.api.v1.schemas import (
    OverrideRequest,
    ReanalyzeRequest,
    ResetRequest,
    TransactionListResponse,
    TransactionSchema,
)
from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import DomainException
from writeoff_gateway.domain.review import ReviewState
from writeoff_gateway.infrastructure.clients.classifier import ClassifierClient
from writeoff_gateway.infrastructure.database.repositories import TransactionRepository
from writeoff_gateway.infrastructure.database.session import get_db
from writeoff_gateway.services.classification import ClassificationScheduler
from writeoff_gateway.services.review import override_classification, reset_transaction

router = APIRouter()


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    user_id: str = Query(..., min_length=1, description="User identifier"),
    state: Optional[ReviewState] = Query(None, description="Only transactions in this review state"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """
    Retrieve the user's transactions, newest first, with their review state.

    Returns:
        Transactions visible to the user, optionally filtered by review state
    """
    records = TransactionRepository(db, user_id).list_for_user(limit=limit, offset=offset, state=state)

    items = [TransactionSchema.from_record(r) for r in records]
    return TransactionListResponse(user_id=user_id, transactions=items, count=len(items))


@router.post("/transactions/{trans_id}/classify", response_model=TransactionSchema)
async def reanalyze_transaction(
    trans_id: str,
    request_body: ReanalyzeRequest,
    request: Request,
    db: Session = Depends(get_db),
    classifier: ClassifierClient = Depends(get_classifier_client),
    settings: Settings = Depends(get_app_settings),
):
    """Ask the classifier to look at one transaction again, optionally with new notes"""
    request_id = get_request_id(request)
    scheduler = ClassificationScheduler.from_settings(db, classifier, settings)
    try:
        record = await scheduler.classify_transaction(request_body.user_id, trans_id, notes=request_body.notes)
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e, request_id) from e
    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error") from e

    return TransactionSchema.from_record(record)


@router.post("/transactions/{trans_id}/override", response_model=TransactionSchema)
def override_transaction(
    trans_id: str,
    request_body: OverrideRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Record the user's business/personal decision; the transaction is never reclassified afterwards"""
    try:
        record = override_classification(
            db, request_body.user_id, trans_id, request_body.is_deductible, notes=request_body.notes
        )
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e, get_request_id(request)) from e

    logging.info(
        "Classification overridden by user",
        extra={"request_id": get_request_id(request), "trans_id": trans_id, "is_deductible": request_body.is_deductible},
    )
    return TransactionSchema.from_record(record)


@router.post("/transactions/{trans_id}/reset", response_model=TransactionSchema)
def reset_transaction_classification(
    trans_id: str,
    request_body: ResetRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """Clear the verdict so the next classification run picks the transaction up again"""
    try:
        record = reset_transaction(db, request_body.user_id, trans_id)
    except DomainException as e:
        db.rollback()
        raise to_http_exception(e, get_request_id(request)) from e

    return TransactionSchema.from_record(record)
