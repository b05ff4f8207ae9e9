"""POST /v1/sync - Pull the user's latest transactions from the aggregator"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from writeoff_gateway.api.dependencies import (
    get_aggregator_client,
    get_app_settings,
    get_classifier_client,
    get_request_id,
)
from writeoff_gateway.api.v1.errors import to_http_exception
from writeoff_gateway.api.v1.schemas import ClassificationCounts, SyncRequest, SyncResponse
from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import DomainException
from writeoff_gateway.infrastructure.clients.aggregator import AggregatorClient
from writeoff_gateway.infrastructure.clients.classifier import ClassifierClient
from writeoff_gateway.infrastructure.database.session import get_db
from writeoff_gateway.services.classification import ClassificationScheduler
from writeoff_gateway.services.sync import SyncCoordinator

router = APIRouter()


@router.post("/sync", response_model=SyncResponse)
async def run_sync(
    request_body: SyncRequest,
    request: Request,
    db: Session = Depends(get_db),
    aggregator: AggregatorClient = Depends(get_aggregator_client),
    classifier: ClassifierClient = Depends(get_classifier_client),
    settings: Settings = Depends(get_app_settings),
):
    """
    Sync the user's accounts and transactions.

    Flow:
    1. Refresh linked accounts from the aggregator
    2. Page through changes since the stored cursor, persisting each page before
       advancing the cursor
    3. Optionally classify expenses merged during this run

    A failed sync leaves the cursor at the last committed page and can be retried.
    """
    request_id = get_request_id(request)
    scheduler = ClassificationScheduler.from_settings(db, classifier, settings) if request_body.classify else None
    coordinator = SyncCoordinator.from_settings(db, aggregator, settings, scheduler=scheduler)

    try:
        result = await coordinator.sync(request_body.user_id, classify=request_body.classify)

    except DomainException as e:
        db.rollback()
        raise to_http_exception(e, request_id) from e

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error") from e

    return SyncResponse(
        accounts_processed=result.accounts_processed,
        transactions_saved=result.transactions_saved,
        transactions_removed=result.transactions_removed,
        pages=result.pages,
        classification=ClassificationCounts.from_result(result.classification) if result.classification else None,
    )
