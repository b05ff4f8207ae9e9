"""Merge engine - reconciles freshly synced transactions with stored ones"""

from dataclasses import replace
from typing import Dict, Iterable, List, Mapping, Optional

from writeoff_gateway.domain.models import RawTransaction, TransactionRecord, UNREFINED_CATEGORY
from writeoff_gateway.domain.review import apply_invariants


def build_candidate(raw: RawTransaction) -> TransactionRecord:
    """
    Derive the record a sync would store for a raw aggregator transaction.

    Fallbacks:
    - category: detailed provider category -> coarse category -> "Other"
    - merchant: merchant label -> raw description
    """
    return TransactionRecord(
        trans_id=raw.transaction_id,
        account_id=raw.account_id,
        date=raw.date,
        amount=raw.amount,
        merchant_name=raw.merchant_name or raw.name,
        category=raw.detailed_category or raw.coarse_category or UNREFINED_CATEGORY,
    )


def _has_text(value: Optional[str]) -> bool:
    return value is not None and value.strip() != ""


def merge_record(candidate: TransactionRecord, existing: Optional[TransactionRecord]) -> TransactionRecord:
    """
    Combine one candidate with the stored row for the same external id.

    Date, amount, merchant and account always take the candidate's value. Protected
    fields keep the stored value whenever it is set:
    - category unless it is the "Other" sentinel
    - is_deductible, deduction_score, deduction_percent when not null
    - deductible_reason, notes when not empty
    """
    if existing is None:
        return apply_invariants(candidate)

    merged = candidate
    if _has_text(existing.category) and existing.category != UNREFINED_CATEGORY:
        merged = replace(merged, category=existing.category)
    if existing.is_deductible is not None:
        merged = replace(merged, is_deductible=existing.is_deductible)
    if _has_text(existing.deductible_reason):
        merged = replace(merged, deductible_reason=existing.deductible_reason)
    if existing.deduction_score is not None:
        merged = replace(merged, deduction_score=existing.deduction_score)
    if existing.deduction_percent is not None:
        merged = replace(merged, deduction_percent=existing.deduction_percent)
    if _has_text(existing.notes):
        merged = replace(merged, notes=existing.notes)

    return apply_invariants(merged)


def merge(
    incoming: Iterable[TransactionRecord],
    existing_by_external_id: Mapping[str, TransactionRecord],
) -> List[TransactionRecord]:
    """
    Main entry point: produce the rows to upsert for a batch of candidates.

    Pure function. Applying the same batch twice yields the same rows, and a stored
    classification or user edit is never regressed by a later sync. A batch carrying
    the same external id more than once keeps the last occurrence.
    """
    latest: Dict[str, TransactionRecord] = {}
    for candidate in incoming:
        latest[candidate.trans_id] = candidate

    return [merge_record(candidate, existing_by_external_id.get(trans_id)) for trans_id, candidate in latest.items()]
