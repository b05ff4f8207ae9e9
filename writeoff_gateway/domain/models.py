"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

# Category sentinel meaning "never refined"
UNREFINED_CATEGORY = "Other"


@dataclass
class AggregatorAccount:
    """Bank account reported by the aggregator"""

    account_id: str
    name: Optional[str] = None
    mask: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    institution_id: Optional[str] = None


@dataclass
class RawTransaction:
    """Transaction as delivered by the aggregator, before any local reconciliation"""

    transaction_id: str
    account_id: str
    date: date
    amount: float  # positive = expense, negative = income/refund
    name: Optional[str] = None
    merchant_name: Optional[str] = None
    detailed_category: Optional[str] = None
    coarse_category: Optional[str] = None


@dataclass
class SyncPage:
    """One page of the aggregator's incremental change stream"""

    added: List[RawTransaction]
    modified: List[RawTransaction]
    removed: List[str]
    next_cursor: str
    has_more: bool


@dataclass
class TransactionRecord:
    """Locally persisted transaction, keyed by the aggregator's external id"""

    trans_id: str
    account_id: str
    date: date
    amount: float
    merchant_name: Optional[str] = None
    category: str = UNREFINED_CATEGORY
    is_deductible: Optional[bool] = None
    deduction_score: Optional[float] = None
    deduction_percent: Optional[float] = None
    deductible_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_income(self) -> bool:
        return self.amount < 0


@dataclass
class UserProfile:
    """Aggregator credential, sync cursor and tax context for one user"""

    user_id: str
    access_token: Optional[str]
    cursor: Optional[str]
    profession: Optional[str] = None
    income_bracket: Optional[str] = None
    state: Optional[str] = None
    filing_status: Optional[str] = None


@dataclass
class ClassificationJob:
    """A transaction submitted to the classifier together with the owner's tax context"""

    transaction: TransactionRecord
    profile: UserProfile


@dataclass
class ClassificationRunResult:
    """Outcome counters of one classification run"""

    analyzed: int = 0
    total: int = 0
    rejected: int = 0  # classifier answered, answer failed validation
    failed: int = 0  # classifier or storage unavailable
    unauthorized: int = 0  # scoped update matched no row
    skipped: int = 0  # classified by someone else mid-run


@dataclass
class SyncResult:
    """Outcome of one sync run"""

    accounts_processed: int
    transactions_saved: int
    transactions_removed: int
    pages: int
    cursor: Optional[str]
    merged_ids: List[str] = field(default_factory=list)
    classification: Optional[ClassificationRunResult] = None
