"""Pydantic schemas for API request/response validation"""

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from writeoff_gateway.domain.models import ClassificationRunResult, TransactionRecord
from writeoff_gateway.domain.review import derive_review_state, review_tier


class SyncRequest(BaseModel):
    """Request body for POST /v1/sync"""

    user_id: str = Field(..., min_length=1, description="User identifier")
    classify: bool = Field(False, description="Classify newly merged expenses after the sync")


class ClassifyRequest(BaseModel):
    """Request body for POST /v1/classify"""

    user_id: str = Field(..., min_length=1, description="User identifier")


class ReanalyzeRequest(BaseModel):
    """Request body for POST /v1/transactions/{trans_id}/classify"""

    user_id: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=2000, description="Extra context for the classifier")


class OverrideRequest(BaseModel):
    """Request body for POST /v1/transactions/{trans_id}/override"""

    user_id: str = Field(..., min_length=1)
    is_deductible: bool = Field(..., description="True for a business expense, false for personal")
    notes: Optional[str] = Field(None, max_length=2000)


class ResetRequest(BaseModel):
    """Request body for POST /v1/transactions/{trans_id}/reset"""

    user_id: str = Field(..., min_length=1)


class ClassificationCounts(BaseModel):
    """Counters of one classification run"""

    analyzed: int
    total: int
    rejected: int = 0
    failed: int = 0
    unauthorized: int = 0
    skipped: int = 0

    @classmethod
    def from_result(cls, result: ClassificationRunResult) -> "ClassificationCounts":
        return cls(
            analyzed=result.analyzed,
            total=result.total,
            rejected=result.rejected,
            failed=result.failed,
            unauthorized=result.unauthorized,
            skipped=result.skipped,
        )


class SyncResponse(BaseModel):
    """Response for POST /v1/sync"""

    accounts_processed: int
    transactions_saved: int
    transactions_removed: int
    pages: int
    classification: Optional[ClassificationCounts] = None


class TransactionSchema(BaseModel):
    """Stored transaction with its derived review state"""

    trans_id: str
    account_id: str
    date: date
    amount: float
    type: Literal["income", "expense"]
    merchant_name: Optional[str] = None
    category: str
    is_deductible: Optional[bool] = None
    deduction_score: Optional[float] = None
    deduction_percent: Optional[float] = None
    deductible_reason: Optional[str] = None
    notes: Optional[str] = None
    review_state: str
    review_tier: str

    @classmethod
    def from_record(cls, record: TransactionRecord) -> "TransactionSchema":
        state = derive_review_state(record)
        return cls(
            trans_id=record.trans_id,
            account_id=record.account_id,
            date=record.date,
            amount=record.amount,
            type="income" if record.is_income else "expense",
            merchant_name=record.merchant_name,
            category=record.category,
            is_deductible=record.is_deductible,
            deduction_score=record.deduction_score,
            deduction_percent=record.deduction_percent,
            deductible_reason=record.deductible_reason,
            notes=record.notes,
            review_state=state.value,
            review_tier=review_tier(state).value,
        )


class TransactionListResponse(BaseModel):
    """Response for GET /v1/transactions"""

    user_id: str
    transactions: List[TransactionSchema]
    count: int
