"""POST /v1/classify - Classify the user's pending transactions"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from writeoff_gateway.api.dependencies import get_app_settings, get_classifier_client, get_request_id
from writeoff_gateway.api.v1.errors import to_http_exception
from writeoff_gateway.api.v1.schemas import ClassificationCounts, ClassifyRequest
from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import DomainException
from writeoff_gateway.infrastructure.clients.classifier import ClassifierClient
from writeoff_gateway.infrastructure.database.session import get_db
from writeoff_gateway.services.classification import ClassificationScheduler

router = APIRouter()


@router.post("/classify", response_model=ClassificationCounts)
async def classify_pending(
    request_body: ClassifyRequest,
    request: Request,
    db: Session = Depends(get_db),
    classifier: ClassifierClient = Depends(get_classifier_client),
    settings: Settings = Depends(get_app_settings),
):
    """
    Run the classifier over every expense that has no verdict yet.

    Per-transaction failures lower the counters but do not fail the request.
    """
    request_id = get_request_id(request)
    scheduler = ClassificationScheduler.from_settings(db, classifier, settings)

    try:
        result = await scheduler.classify_pending(request_body.user_id)

    except DomainException as e:
        db.rollback()
        raise to_http_exception(e, request_id) from e

    except Exception as e:
        db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error") from e

    return ClassificationCounts.from_result(result)
