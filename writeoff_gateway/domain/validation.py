"""Strict parsing of classifier verdicts"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError, field_validator

from writeoff_gateway.domain.exceptions import ClassificationValidationError
from writeoff_gateway.domain.review import OVERRIDE_REASONS


class ClassifierVerdict(BaseModel):
    """Deductibility verdict as the classifier must return it"""

    model_config = ConfigDict(extra="ignore", frozen=True)

    is_deductible: StrictBool
    deduction_score: float = Field(..., ge=0.0, le=1.0, allow_inf_nan=False)
    deduction_percent: float = Field(..., ge=0.0, le=100.0, allow_inf_nan=False)
    deductible_reason: str

    @field_validator("deduction_score", "deduction_percent", mode="before")
    @classmethod
    def _must_be_number(cls, value: Any) -> Any:
        # bool is an int subclass and numeric strings would coerce; both are rejected
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a number")
        return value

    @field_validator("deductible_reason", mode="before")
    @classmethod
    def _must_be_text(cls, value: Any) -> Any:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("must be a non-empty string")
        # Canonical override text would pin the row as a user decision
        if value.strip() in OVERRIDE_REASONS:
            raise ValueError("must not repeat a user override reason")
        return value.strip()


def parse_verdict(content: Any) -> ClassifierVerdict:
    """
    Parse the classifier's message content into a verdict.

    The whole content must be one JSON object; there is no extraction of JSON
    embedded in prose. Any schema violation rejects the verdict outright.

    Raises:
        ClassificationValidationError: On non-JSON content or any invalid field
    """
    try:
        payload = json.loads(content)
    except (TypeError, ValueError) as e:
        raise ClassificationValidationError(f"Classifier response is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ClassificationValidationError("Classifier response is not a JSON object")

    try:
        return ClassifierVerdict.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ClassificationValidationError(f"Invalid classifier verdict fields: {fields}") from e
