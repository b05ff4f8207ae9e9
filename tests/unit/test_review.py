"""Unit tests for the review state machine"""

from datetime import date

import pytest

from writeoff_gateway.domain.exceptions import InvalidTransitionError
from writeoff_gateway.domain.models import TransactionRecord
from writeoff_gateway.domain.review import (
    BUSINESS_OVERRIDE_REASON,
    PERSONAL_OVERRIDE_REASON,
    ReviewState,
    ReviewTier,
    Trigger,
    check_transition,
    classification_fields,
    derive_review_state,
    enforce_invariants,
    is_overridden,
    is_pending_classification,
    reset_classification,
    review_tier,
    user_override,
)


def record(**overrides) -> TransactionRecord:
    values = dict(trans_id="txn_1", account_id="acc_credit", date=date(2026, 9, 2), amount=45.0, merchant_name="Staples")
    values.update(overrides)
    return TransactionRecord(**values)


@pytest.mark.parametrize(
    "score,is_deductible,reason,expected",
    [
        (None, None, None, ReviewState.UNCLASSIFIED),
        (0.0, False, None, ReviewState.UNCLASSIFIED),
        (0.9, True, "", ReviewState.UNCLASSIFIED),
        (0.19, True, "Model verdict", ReviewState.NEEDS_REVIEW),
        (None, False, "Model verdict", ReviewState.NEEDS_REVIEW),
        (0.20, True, "Model verdict", ReviewState.NEEDS_REVIEW),
        (0.74, False, "Model verdict", ReviewState.NEEDS_REVIEW),
        (0.75, True, "Model verdict", ReviewState.DEDUCTIBLE),
        (0.75, False, "Model verdict", ReviewState.NON_DEDUCTIBLE),
        (1.0, None, "Model verdict", ReviewState.NON_DEDUCTIBLE),
    ],
)
def test_derive_review_state_thresholds(score, is_deductible, reason, expected):
    txn = record(deduction_score=score, is_deductible=is_deductible, deductible_reason=reason)

    assert derive_review_state(txn) == expected


def test_low_confidence_verdict_lands_in_needs_review():
    """Scenario: classifier returns 0.55 confidence"""
    txn = record(is_deductible=True, deduction_score=0.55, deduction_percent=50.0, deductible_reason="Possibly business")

    state = derive_review_state(txn)

    assert state == ReviewState.NEEDS_REVIEW
    assert review_tier(state) == ReviewTier.NEEDS_REVIEW


def test_override_is_confident_regardless_of_score():
    business = record(is_deductible=True, deduction_score=0.3, deductible_reason=BUSINESS_OVERRIDE_REASON)
    personal = record(is_deductible=False, deduction_score=None, deductible_reason=PERSONAL_OVERRIDE_REASON)

    assert derive_review_state(business) == ReviewState.DEDUCTIBLE
    assert derive_review_state(personal) == ReviewState.NON_DEDUCTIBLE
    assert review_tier(derive_review_state(personal)) == ReviewTier.CONFIDENT


def test_is_overridden_only_matches_canonical_reasons():
    assert is_overridden(record(deductible_reason=BUSINESS_OVERRIDE_REASON))
    assert not is_overridden(record(deductible_reason="Classified as business expense"))
    assert not is_overridden(record())


def test_pending_predicate():
    assert is_pending_classification(record())
    assert is_pending_classification(record(amount=0.0))
    assert not is_pending_classification(record(amount=-10.0))
    assert not is_pending_classification(record(deductible_reason="Supplies"))


def test_user_override_moves_any_state_to_confident():
    """Scenario: the user marks a needs-review expense as business"""
    txn = record(is_deductible=False, deduction_score=0.4, deduction_percent=20.0, deductible_reason="Unsure")

    fields = user_override(txn, is_deductible=True, notes="client lunch")

    assert fields["is_deductible"] is True
    assert fields["deductible_reason"] == BUSINESS_OVERRIDE_REASON
    assert fields["notes"] == "client lunch"
    updated = record(**{**txn.__dict__, **fields})
    assert derive_review_state(updated) == ReviewState.DEDUCTIBLE
    assert not is_pending_classification(updated)


def test_user_override_personal_without_notes_keeps_notes_untouched():
    fields = user_override(record(), is_deductible=False)

    assert fields["deductible_reason"] == PERSONAL_OVERRIDE_REASON
    assert "notes" not in fields


def test_income_cannot_be_overridden_as_deductible():
    with pytest.raises(InvalidTransitionError):
        user_override(record(amount=-1200.0), is_deductible=True)


def test_income_personal_override_zeroes_percent():
    fields = user_override(record(amount=-1200.0), is_deductible=False)

    assert fields["is_deductible"] is False
    assert fields["deduction_percent"] == 0.0


def test_reset_returns_to_unclassified_and_pending():
    txn = record(is_deductible=True, deduction_score=0.9, deduction_percent=100.0, deductible_reason=BUSINESS_OVERRIDE_REASON)

    fields = reset_classification(txn)

    assert fields == {"is_deductible": None, "deduction_score": None, "deduction_percent": None, "deductible_reason": None}
    updated = record(**{**txn.__dict__, **fields})
    assert derive_review_state(updated) == ReviewState.UNCLASSIFIED
    assert is_pending_classification(updated)


def test_reset_of_income_keeps_zero_percent():
    fields = reset_classification(record(amount=-50.0, deductible_reason="Refund"))

    assert fields["deduction_percent"] == 0.0
    assert fields["deductible_reason"] is None


def test_classifier_may_only_classify_pending_rows():
    check_transition(record(), Trigger.CLASSIFIER)

    with pytest.raises(InvalidTransitionError):
        check_transition(record(deductible_reason="Supplies"), Trigger.CLASSIFIER)
    with pytest.raises(InvalidTransitionError):
        check_transition(record(amount=-5.0), Trigger.CLASSIFIER)


def test_reanalysis_is_blocked_by_override_only():
    check_transition(record(deductible_reason="Model verdict", deduction_score=0.4), Trigger.REANALYSIS)

    with pytest.raises(InvalidTransitionError):
        check_transition(record(deductible_reason=PERSONAL_OVERRIDE_REASON), Trigger.REANALYSIS)


def test_classification_fields_clamp_and_apply_income_rules():
    expense = classification_fields(True, 1.3, 140.0, "Supplies", amount=45.0)
    income = classification_fields(True, 0.9, 100.0, "Client payment", amount=-1200.0)

    assert expense["deduction_score"] == 1.0
    assert expense["deduction_percent"] == 100.0
    assert income["is_deductible"] is False
    assert income["deduction_percent"] == 0.0


def test_enforce_invariants_only_touches_given_keys():
    assert enforce_invariants({"notes": "x"}, amount=10.0) == {"notes": "x"}
    assert enforce_invariants({"deduction_score": -0.5}, amount=10.0) == {"deduction_score": 0.0}
