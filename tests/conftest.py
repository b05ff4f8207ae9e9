"""Pytest fixtures for testing"""

import json
from datetime import date, timedelta
from typing import Callable, Dict, Generator, List, Optional, Union

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from writeoff_gateway.api.main import create_app
from writeoff_gateway.config import Settings
from writeoff_gateway.domain.models import AggregatorAccount, ClassificationJob, RawTransaction, SyncPage
from writeoff_gateway.domain.validation import ClassifierVerdict, parse_verdict
from writeoff_gateway.infrastructure.database.models import Base, BankAccount, BankTransaction, Profile
from writeoff_gateway.infrastructure.database.session import get_db


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

USER_ID = "user_freelancer"
OTHER_USER_ID = "user_other"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url=TEST_DATABASE_URL,
        aggregator_base_url="http://aggregator.test",
        aggregator_client_id="client-id",
        aggregator_secret="secret",
        classifier_base_url="http://classifier.test/v1",
        classifier_api_key="sk-test",
        http_max_retries=1,
        http_backoff_base=0.0,
        classifier_concurrency=4,
        classifier_rate_per_second=1000.0,
        classifier_burst=100,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db: Session) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app(make_settings())

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


class Seeder:
    """Writes profiles, accounts and transactions straight into the test database"""

    def __init__(self, db: Session):
        self.db = db

    def profile(self, user_id: str = USER_ID, access_token: Optional[str] = "access-test", cursor: Optional[str] = None) -> Profile:
        profile = Profile(
            user_id=user_id,
            access_token=access_token,
            last_cursor=cursor,
            profession="Freelance graphic designer",
            income_bracket="$75k-$100k",
            state="CA",
            filing_status="single",
        )
        self.db.add(profile)
        self.db.commit()
        return profile

    def account(self, account_id: str = "acc_credit", user_id: str = USER_ID) -> BankAccount:
        account = BankAccount(account_id=account_id, user_id=user_id, name="Credit Card")
        self.db.add(account)
        self.db.commit()
        return account

    def transaction(
        self,
        trans_id: str,
        amount: float = 45.0,
        account_id: str = "acc_credit",
        merchant_name: str = "Staples",
        category: str = "OFFICE_SUPPLIES",
        days_ago: int = 1,
        **classification,
    ) -> BankTransaction:
        row = BankTransaction(
            trans_id=trans_id,
            account_id=account_id,
            date=date.today() - timedelta(days=days_ago),
            amount=amount,
            merchant_name=merchant_name,
            category=category,
            **classification,
        )
        self.db.add(row)
        self.db.commit()
        return row

    def stored(self, trans_id: str) -> BankTransaction:
        self.db.expire_all()
        return self.db.get(BankTransaction, trans_id)

    def cursor(self, user_id: str = USER_ID) -> Optional[str]:
        self.db.expire_all()
        return self.db.get(Profile, user_id).last_cursor


@pytest.fixture
def seed(db: Session) -> Seeder:
    return Seeder(db)


def raw_txn(
    transaction_id: str,
    amount: float = 45.0,
    account_id: str = "acc_credit",
    merchant_name: Optional[str] = "Staples",
    detailed: Optional[str] = "OFFICE_SUPPLIES",
    coarse: Optional[str] = "SHOPS",
    name: Optional[str] = "STAPLES #1123",
    day: date = date(2026, 9, 2),
) -> RawTransaction:
    return RawTransaction(
        transaction_id=transaction_id,
        account_id=account_id,
        date=day,
        amount=amount,
        name=name,
        merchant_name=merchant_name,
        detailed_category=detailed,
        coarse_category=coarse,
    )


class FakeAggregator:
    """Serves scripted pages; a page may be an exception to raise instead"""

    def __init__(self, pages: List[Union[SyncPage, Exception]], accounts: Optional[List[AggregatorAccount]] = None):
        self.pages = pages
        self.accounts = accounts if accounts is not None else [AggregatorAccount(account_id="acc_credit", name="Credit Card")]
        self.cursors_requested: List[Optional[str]] = []

    async def get_accounts(self, access_token: str) -> List[AggregatorAccount]:
        return self.accounts

    async def sync_page(self, access_token: str, cursor: Optional[str]) -> SyncPage:
        self.cursors_requested.append(cursor)
        index = int(cursor.removeprefix("page-")) if cursor else 0
        if index >= len(self.pages):
            return SyncPage(added=[], modified=[], removed=[], next_cursor=cursor or "page-0", has_more=False)
        page = self.pages[index]
        if isinstance(page, Exception):
            raise page
        return page


def page(added=(), modified=(), removed=(), index: int = 0, has_more: bool = False) -> SyncPage:
    return SyncPage(
        added=list(added),
        modified=list(modified),
        removed=list(removed),
        next_cursor=f"page-{index + 1}",
        has_more=has_more,
    )


def verdict_json(
    is_deductible=True,
    deduction_score=0.92,
    deduction_percent=100,
    deductible_reason="Ordinary business supply",
) -> str:
    return json.dumps(
        {
            "is_deductible": is_deductible,
            "deduction_score": deduction_score,
            "deduction_percent": deduction_percent,
            "deductible_reason": deductible_reason,
        }
    )


class FakeClassifier:
    """
    Answers with canned message content per transaction id, run through the real verdict parser.

    `responses` values may be JSON strings or exceptions. `on_classify` runs before answering.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Union[str, Exception]]] = None,
        default: Union[str, Exception, None] = None,
        on_classify: Optional[Callable[[ClassificationJob], None]] = None,
    ):
        self.responses = responses or {}
        self.default = default if default is not None else verdict_json()
        self.on_classify = on_classify
        self.calls: List[str] = []

    async def classify(self, job: ClassificationJob) -> ClassifierVerdict:
        self.calls.append(job.transaction.trans_id)
        if self.on_classify is not None:
            self.on_classify(job)
        answer = self.responses.get(job.transaction.trans_id, self.default)
        if isinstance(answer, Exception):
            raise answer
        return parse_verdict(answer)
