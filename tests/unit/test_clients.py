"""Unit tests for the aggregator and classifier HTTP clients"""

import json
from datetime import date

import httpx
import pytest

from conftest import verdict_json
from writeoff_gateway.domain.exceptions import AggregatorError, ClassificationValidationError, ClassifierError
from writeoff_gateway.domain.models import ClassificationJob, TransactionRecord, UserProfile
from writeoff_gateway.infrastructure.clients.aggregator import AggregatorClient, parse_raw_transaction
from writeoff_gateway.infrastructure.clients.classifier import ClassifierClient, build_prompt


def aggregator(handler, max_retries=3) -> AggregatorClient:
    return AggregatorClient(
        base_url="http://aggregator.test",
        client_id="client-id",
        secret="secret",
        max_retries=max_retries,
        backoff_base=0.0,
        transport=httpx.MockTransport(handler),
    )


def classifier(handler, max_retries=3) -> ClassifierClient:
    return ClassifierClient(
        base_url="http://classifier.test/v1",
        api_key="sk-test",
        model="gpt-4.1-mini",
        max_retries=max_retries,
        backoff_base=0.0,
        transport=httpx.MockTransport(handler),
    )


def job(notes=None) -> ClassificationJob:
    return ClassificationJob(
        transaction=TransactionRecord(
            trans_id="txn_staples",
            account_id="acc_credit",
            date=date(2026, 9, 2),
            amount=45.0,
            merchant_name="Staples",
            category="OFFICE_SUPPLIES",
            notes=notes,
        ),
        profile=UserProfile(
            user_id="user_freelancer",
            access_token="access-test",
            cursor=None,
            profession="Freelance graphic designer",
            state="CA",
        ),
    )


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_parse_raw_transaction_category_sources():
    txn = parse_raw_transaction(
        {
            "transaction_id": "t1",
            "account_id": "a1",
            "date": "2026-09-11",
            "amount": 6.5,
            "name": "BLUE BOTTLE COFFEE",
            "merchant_name": None,
            "category": ["Food and Drink", "Coffee Shop"],
        }
    )

    assert txn.date == date(2026, 9, 11)
    assert txn.detailed_category is None
    assert txn.coarse_category == "Food and Drink"

    txn = parse_raw_transaction(
        {
            "transaction_id": "t2",
            "account_id": "a1",
            "date": "2026-09-02",
            "amount": 45,
            "personal_finance_category": {"primary": "GENERAL_MERCHANDISE", "detailed": "GENERAL_MERCHANDISE_OFFICE_SUPPLIES"},
        }
    )

    assert txn.amount == 45.0
    assert txn.detailed_category == "GENERAL_MERCHANDISE_OFFICE_SUPPLIES"
    assert txn.coarse_category == "GENERAL_MERCHANDISE"


async def test_sync_page_sends_credentials_and_cursor():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "added": [],
                "modified": [],
                "removed": [{"transaction_id": "txn_gone"}, "txn_also_gone"],
                "next_cursor": "page-4",
                "has_more": False,
            },
        )

    page = await aggregator(handler).sync_page("access-test", "page-3")

    assert seen == [{"client_id": "client-id", "secret": "secret", "access_token": "access-test", "cursor": "page-3"}]
    assert page.removed == ["txn_gone", "txn_also_gone"]
    assert page.next_cursor == "page-4"
    assert page.has_more is False


async def test_first_sync_omits_cursor():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"next_cursor": "page-1", "has_more": True})

    await aggregator(handler).sync_page("access-test", None)

    assert "cursor" not in seen[0]


async def test_transient_errors_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503)
        return httpx.Response(
            200,
            json={"accounts": [{"account_id": "acc_credit", "name": "Credit"}], "item": {"institution_id": "ins_1"}},
        )

    accounts = await aggregator(handler).get_accounts("access-test")

    assert len(attempts) == 3
    assert accounts[0].account_id == "acc_credit"
    assert accounts[0].institution_id == "ins_1"


async def test_client_errors_are_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(400, json={"error_code": "INVALID_ACCESS_TOKEN"})

    with pytest.raises(AggregatorError, match="400"):
        await aggregator(handler).get_accounts("bad-token")

    assert len(attempts) == 1


async def test_retries_are_bounded():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AggregatorError):
        await aggregator(handler, max_retries=2).sync_page("access-test", None)

    assert len(attempts) == 2


async def test_malformed_page_is_an_aggregator_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"added": [{"transaction_id": "t1"}], "next_cursor": "page-1"})

    with pytest.raises(AggregatorError, match="Invalid transaction data"):
        await aggregator(handler).sync_page("access-test", None)


async def test_classifier_sends_prompt_and_parses_verdict():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=completion(verdict_json(deduction_score=0.8, deduction_percent=75)))

    result = await classifier(handler).classify(job(notes="toner for client prints"))

    assert result.deduction_score == 0.8
    assert result.deduction_percent == 75.0
    request = seen[0]
    assert request.url.path == "/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4.1-mini"
    assert body["response_format"] == {"type": "json_object"}
    assert "toner for client prints" in body["messages"][1]["content"]


async def test_classifier_invalid_verdict_is_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=completion(verdict_json(deduction_percent=150)))

    with pytest.raises(ClassificationValidationError):
        await classifier(handler).classify(job())


async def test_classifier_outage_is_a_classifier_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    with pytest.raises(ClassifierError):
        await classifier(handler, max_retries=1).classify(job())


async def test_classifier_malformed_envelope_is_a_classifier_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(ClassifierError, match="envelope"):
        await classifier(handler).classify(job())


def test_prompt_includes_tax_context():
    prompt = build_prompt(job())

    assert "Merchant: Staples" in prompt
    assert "Amount: $45.00" in prompt
    assert "Profession: Freelance graphic designer" in prompt
    assert "Filing status: Not provided" in prompt
    assert "Notes from the taxpayer" not in prompt
