"""Review state machine - derives a transaction's review status from its stored classification"""

from dataclasses import replace
from enum import Enum
from typing import Any, Dict, Optional

from writeoff_gateway.domain.exceptions import InvalidTransitionError
from writeoff_gateway.domain.models import TransactionRecord

CONFIDENT_THRESHOLD = 0.75

BUSINESS_OVERRIDE_REASON = "Classified as business expense by user"
PERSONAL_OVERRIDE_REASON = "Classified as personal expense by user"
OVERRIDE_REASONS = frozenset({BUSINESS_OVERRIDE_REASON, PERSONAL_OVERRIDE_REASON})

CLASSIFICATION_FIELDS = ("is_deductible", "deduction_score", "deduction_percent", "deductible_reason")


class ReviewState(str, Enum):
    UNCLASSIFIED = "unclassified"
    NEEDS_REVIEW = "needs_review"
    DEDUCTIBLE = "deductible"
    NON_DEDUCTIBLE = "non_deductible"


class ReviewTier(str, Enum):
    UNCLASSIFIED = "unclassified"
    NEEDS_REVIEW = "needs_review"
    CONFIDENT = "confident"


class Trigger(str, Enum):
    """What is asking to change a transaction's classification"""

    CLASSIFIER = "classifier"  # scheduled run over pending transactions
    REANALYSIS = "reanalysis"  # user asked the classifier to look again
    USER_OVERRIDE = "user_override"
    RESET = "reset"


def clamp(value: Optional[float], low: float, high: float) -> Optional[float]:
    if value is None:
        return None
    return max(low, min(high, float(value)))


def enforce_invariants(fields: Dict[str, Any], amount: float) -> Dict[str, Any]:
    """
    Bound classification fields before they are written.

    - deduction_score within [0, 1], deduction_percent within [0, 100]
    - income (amount < 0) is never deductible and deducts 0%
    """
    bounded = dict(fields)
    if "deduction_score" in bounded:
        bounded["deduction_score"] = clamp(bounded["deduction_score"], 0.0, 1.0)
    if "deduction_percent" in bounded:
        bounded["deduction_percent"] = clamp(bounded["deduction_percent"], 0.0, 100.0)

    if amount < 0:
        bounded["deduction_percent"] = 0.0
        if bounded.get("is_deductible") is True:
            bounded["is_deductible"] = False

    return bounded


def apply_invariants(record: TransactionRecord) -> TransactionRecord:
    """Return the record with clamped scores and income rules applied"""
    fields = {name: getattr(record, name) for name in CLASSIFICATION_FIELDS}
    return replace(record, **enforce_invariants(fields, record.amount))


def is_overridden(record: TransactionRecord) -> bool:
    """A user override is recognisable by its canonical reason text"""
    return record.deductible_reason in OVERRIDE_REASONS


def is_pending_classification(record: TransactionRecord) -> bool:
    """Canonical selection predicate: an expense that has never been given a reasoned verdict"""
    return record.amount >= 0 and record.deductible_reason is None


def derive_review_state(record: TransactionRecord) -> ReviewState:
    """
    Map stored classification fields to a review state.

    States:
    - user override:              confident (deductible / non-deductible)
    - no deductible_reason:       unclassified
    - score >= 0.75:              confident
    - any other reasoned verdict: needs review

    A reasoned verdict below 0.20 is never selected for classification again, so it
    goes to review rather than back to unclassified.
    """
    if is_overridden(record):
        return _confident(record)
    if not record.deductible_reason or not record.deductible_reason.strip():
        return ReviewState.UNCLASSIFIED

    score = record.deduction_score
    if score is not None and score >= CONFIDENT_THRESHOLD:
        return _confident(record)
    return ReviewState.NEEDS_REVIEW


def _confident(record: TransactionRecord) -> ReviewState:
    return ReviewState.DEDUCTIBLE if record.is_deductible is True else ReviewState.NON_DEDUCTIBLE


def review_tier(state: ReviewState) -> ReviewTier:
    if state in (ReviewState.DEDUCTIBLE, ReviewState.NON_DEDUCTIBLE):
        return ReviewTier.CONFIDENT
    return ReviewTier(state.value)


def check_transition(record: TransactionRecord, trigger: Trigger) -> None:
    """
    Raise InvalidTransitionError when the trigger may not change this record.

    - CLASSIFIER: only pending expenses (classified exactly once)
    - REANALYSIS: anything the user has not pinned with an override
    - USER_OVERRIDE, RESET: always
    """
    if trigger == Trigger.CLASSIFIER and not is_pending_classification(record):
        raise InvalidTransitionError(f"Transaction {record.trans_id} is not pending classification")

    if trigger == Trigger.REANALYSIS and is_overridden(record):
        raise InvalidTransitionError(
            f"Transaction {record.trans_id} was classified by the user; reset it before re-analysis"
        )


def classification_fields(
    is_deductible: bool,
    deduction_score: float,
    deduction_percent: float,
    deductible_reason: str,
    amount: float,
) -> Dict[str, Any]:
    """Fields to persist for a classifier verdict"""
    return enforce_invariants(
        {
            "is_deductible": is_deductible,
            "deduction_score": deduction_score,
            "deduction_percent": deduction_percent,
            "deductible_reason": deductible_reason,
        },
        amount,
    )


def user_override(record: TransactionRecord, is_deductible: bool, notes: Optional[str] = None) -> Dict[str, Any]:
    """
    Fields for a manual business/personal decision.

    Moves the record to the confident tier from any state and pins it: the canonical
    reason is non-null, so scheduled classification never selects it again.
    """
    check_transition(record, Trigger.USER_OVERRIDE)
    if is_deductible and record.is_income:
        raise InvalidTransitionError(f"Income transaction {record.trans_id} cannot be marked deductible")

    fields: Dict[str, Any] = {
        "is_deductible": is_deductible,
        "deductible_reason": BUSINESS_OVERRIDE_REASON if is_deductible else PERSONAL_OVERRIDE_REASON,
    }
    if notes:
        fields["notes"] = notes
    return enforce_invariants(fields, record.amount)


def reset_classification(record: TransactionRecord) -> Dict[str, Any]:
    """Fields that return a record to unclassified; notes and category are kept"""
    check_transition(record, Trigger.RESET)
    return enforce_invariants({name: None for name in CLASSIFICATION_FIELDS}, record.amount)
