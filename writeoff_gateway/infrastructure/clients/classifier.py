"""Classifier HTTP client - asks a chat-completions model for a deductibility verdict"""

from typing import Any, Dict, Optional

import httpx

from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import ClassifierError
from writeoff_gateway.domain.models import ClassificationJob
from writeoff_gateway.domain.validation import ClassifierVerdict, parse_verdict
from writeoff_gateway.infrastructure.clients.retry import post_with_retry
from writeoff_gateway.infrastructure.observability.metrics import classifier_latency_histogram

SYSTEM_PROMPT = (
    "You are a tax expert specializing in business deductions. Provide accurate, conservative "
    "analysis. Respond with a single JSON object and nothing else."
)

VERDICT_INSTRUCTIONS = """\
Determine whether this transaction is tax deductible for this taxpayer. Consider:
1. Is it ordinary and necessary for their profession?
2. Is it directly related to business operations?
3. What percentage of the amount is deductible?

A negative amount is income or a refund: it is not deductible and deducts 0 percent.
Use conservative estimates and avoid over-claiming deductions.

Respond with exactly these keys:
{"is_deductible": true or false,
 "deduction_score": confidence in your verdict from 0.0 to 1.0,
 "deduction_percent": deductible share of the amount from 0 to 100,
 "deductible_reason": "short explanation grounded in tax rules"}"""


def build_prompt(job: ClassificationJob) -> str:
    """Transaction summary plus the owner's tax context"""
    txn = job.transaction
    profile = job.profile
    lines = [
        "Transaction:",
        f"- Merchant: {txn.merchant_name or 'Unknown'}",
        f"- Amount: ${txn.amount:.2f}",
        f"- Category: {txn.category}",
        f"- Date: {txn.date.isoformat()}",
    ]
    if txn.notes:
        lines.append(f"- Notes from the taxpayer: {txn.notes}")
    lines += [
        "",
        "Taxpayer profile:",
        f"- Profession: {profile.profession or 'Not provided'}",
        f"- Income: {profile.income_bracket or 'Not provided'}",
        f"- State: {profile.state or 'Not provided'}",
        f"- Filing status: {profile.filing_status or 'Not provided'}",
        "",
        VERDICT_INSTRUCTIONS,
    ]
    return "\n".join(lines)


class ClassifierClient:
    """Client for an OpenAI-compatible chat completions endpoint"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        temperature: float = 0.1,
        max_tokens: int = 300,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ClassifierClient":
        return cls(
            base_url=settings.classifier_base_url,
            api_key=settings.classifier_api_key,
            model=settings.classifier_model,
            temperature=settings.classifier_temperature,
            max_tokens=settings.classifier_max_tokens,
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            backoff_base=settings.http_backoff_base,
            transport=transport,
        )

    def _request_body(self, job: ClassificationJob) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(job)},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }

    async def classify(self, job: ClassificationJob) -> ClassifierVerdict:
        """
        Ask for a verdict on one transaction.

        Raises:
            ClassifierError: On timeout, HTTP errors, or a malformed API envelope
            ClassificationValidationError: When the model's answer fails the verdict schema
        """
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await post_with_retry(
                    client,
                    "/chat/completions",
                    self._request_body(job),
                    max_retries=self.max_retries,
                    backoff_base=self.backoff_base,
                    latency=classifier_latency_histogram,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                content = response.json()["choices"][0]["message"]["content"]

            except httpx.TimeoutException as e:
                raise ClassifierError(f"Classifier timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ClassifierError(f"Classifier error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ClassifierError(f"Classifier unreachable: {e}") from e
            except (KeyError, IndexError, TypeError, ValueError) as e:
                raise ClassifierError(f"Malformed classifier response envelope: {e}") from e

        return parse_verdict(content)
