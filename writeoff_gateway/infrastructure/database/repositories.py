"""Data access layer for profiles, accounts and transactions

Repositories that touch accounts or transactions are scoped to one user: every read,
upsert and update is restricted to rows whose account belongs to that user.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from sqlalchemy import and_, case, func, not_, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from writeoff_gateway.domain.exceptions import PersistenceError, SyncLeaseLostError
from writeoff_gateway.domain.models import AggregatorAccount, TransactionRecord, UserProfile, UNREFINED_CATEGORY
from writeoff_gateway.domain.review import CONFIDENT_THRESHOLD, OVERRIDE_REASONS, ReviewState
from writeoff_gateway.infrastructure.database.models import BankAccount, BankTransaction, Profile

# Keeps IN (...) lists under driver bind-parameter limits
READ_CHUNK_SIZE = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _dialect_insert(db: Session):
    """Pick the INSERT construct that supports ON CONFLICT for the bound database"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise PersistenceError(f"Keyed upsert is not supported on {dialect}")


def review_state_condition(state: ReviewState) -> Any:
    """SQL form of derive_review_state, for filtering before LIMIT/OFFSET"""
    reason = BankTransaction.deductible_reason
    score = BankTransaction.deduction_score
    unclassified = or_(reason.is_(None), func.trim(reason) == "")
    overridden = reason.in_(OVERRIDE_REASONS)
    confident = or_(overridden, and_(not_(unclassified), score >= CONFIDENT_THRESHOLD))

    if state == ReviewState.UNCLASSIFIED:
        return unclassified
    if state == ReviewState.NEEDS_REVIEW:
        return and_(not_(unclassified), not_(overridden), or_(score.is_(None), score < CONFIDENT_THRESHOLD))
    if state == ReviewState.DEDUCTIBLE:
        return and_(confident, BankTransaction.is_deductible.is_(True))
    return and_(confident, or_(BankTransaction.is_deductible.is_(None), BankTransaction.is_deductible.is_(False)))


def to_record(row: BankTransaction) -> TransactionRecord:
    return TransactionRecord(
        trans_id=row.trans_id,
        account_id=row.account_id,
        date=row.date,
        amount=row.amount,
        merchant_name=row.merchant_name,
        category=row.category,
        is_deductible=row.is_deductible,
        deduction_score=row.deduction_score,
        deduction_percent=row.deduction_percent,
        deductible_reason=row.deductible_reason,
        notes=row.notes,
    )


class ProfileRepository:
    """Repository for user profiles, sync cursors and sync leases"""

    def __init__(self, db: Session):
        self.db = db

    def read_user_profile(self, user_id: str) -> Optional[UserProfile]:
        profile = self.db.get(Profile, user_id)
        if profile is None:
            return None
        return UserProfile(
            user_id=profile.user_id,
            access_token=profile.access_token,
            cursor=profile.last_cursor,
            profession=profile.profession,
            income_bracket=profile.income_bracket,
            state=profile.state,
            filing_status=profile.filing_status,
        )

    def write_cursor(self, user_id: str, cursor: str, owner: str) -> None:
        """
        Stage the cursor update for the lease holder; the caller commits.

        Raises:
            SyncLeaseLostError: `owner` no longer holds the user's sync lease
        """
        result = self.db.execute(
            update(Profile)
            .where(Profile.user_id == user_id, Profile.sync_lease_owner == owner)
            .values(last_cursor=cursor, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SyncLeaseLostError(f"Sync lease for user {user_id} lost before cursor write")

    def renew_sync_lease(self, user_id: str, owner: str, ttl_seconds: int) -> None:
        """
        Stage a lease extension for the current holder; the caller commits.

        Raises:
            SyncLeaseLostError: Another run took the lease over after it expired
        """
        result = self.db.execute(
            update(Profile)
            .where(Profile.user_id == user_id, Profile.sync_lease_owner == owner)
            .values(sync_lease_expires_at=utcnow() + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SyncLeaseLostError(f"Sync lease for user {user_id} taken over by another run")

    def acquire_sync_lease(self, user_id: str, owner: str, ttl_seconds: int) -> bool:
        """
        Take the user's sync lease if it is free, expired, or already ours.

        Conditional update, so two processes racing for the same user cannot both win.
        """
        now = utcnow()
        result = self.db.execute(
            update(Profile)
            .where(Profile.user_id == user_id)
            .where(
                or_(
                    Profile.sync_lease_expires_at.is_(None),
                    Profile.sync_lease_expires_at < now,
                    Profile.sync_lease_owner == owner,
                )
            )
            .values(sync_lease_owner=owner, sync_lease_expires_at=now + timedelta(seconds=ttl_seconds))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def release_sync_lease(self, user_id: str, owner: str) -> None:
        self.db.execute(
            update(Profile)
            .where(Profile.user_id == user_id, Profile.sync_lease_owner == owner)
            .values(sync_lease_owner=None, sync_lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()


class AccountRepository:
    """Repository for a user's linked bank accounts"""

    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id

    def upsert_accounts(self, accounts: List[AggregatorAccount]) -> int:
        """Insert or refresh accounts keyed by account_id; never reassigns another user's account"""
        if not accounts:
            return 0

        rows = [
            {
                "account_id": a.account_id,
                "user_id": self.user_id,
                "name": a.name,
                "mask": a.mask,
                "type": a.type,
                "subtype": a.subtype,
                "institution_id": a.institution_id,
            }
            for a in accounts
        ]
        table = BankAccount.__table__
        stmt = _dialect_insert(self.db)(table).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.account_id],
            set_={
                "name": stmt.excluded.name,
                "mask": stmt.excluded.mask,
                "type": stmt.excluded.type,
                "subtype": stmt.excluded.subtype,
                "institution_id": stmt.excluded.institution_id,
            },
            where=table.c.user_id == stmt.excluded.user_id,
        )
        self.db.execute(stmt)
        return len(rows)

    def owned_account_ids(self) -> Set[str]:
        return set(self.db.scalars(select(BankAccount.account_id).where(BankAccount.user_id == self.user_id)))


class TransactionRepository:
    """Repository for a user's transactions"""

    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id

    def _owned_accounts(self):
        return select(BankAccount.account_id).where(BankAccount.user_id == self.user_id)

    def read_existing_by_external_ids(self, trans_ids: Iterable[str]) -> Dict[str, TransactionRecord]:
        """Fetch stored rows (removed ones included) for a batch of external ids"""
        unique_ids = list(dict.fromkeys(trans_ids))
        existing: Dict[str, TransactionRecord] = {}
        for chunk in _chunks(unique_ids, READ_CHUNK_SIZE):
            rows = self.db.scalars(
                select(BankTransaction)
                .where(BankTransaction.trans_id.in_(chunk))
                .where(BankTransaction.account_id.in_(self._owned_accounts()))
            )
            for row in rows:
                existing[row.trans_id] = to_record(row)
        return existing

    def upsert_transactions(self, records: List[TransactionRecord]) -> int:
        """
        Insert or refresh merged rows keyed by trans_id.

        Rows for accounts the user does not own are dropped. On conflict the stored
        classification is kept whenever it is set: a classification written after the
        batch was read must not be regressed by this write. Income rows take the
        merged value, which already carries the income rules.
        """
        if not records:
            return 0

        owned = AccountRepository(self.db, self.user_id).owned_account_ids()
        writable = [r for r in records if r.account_id in owned]
        if len(writable) < len(records):
            logging.warning(
                "Dropping transactions for accounts not owned by user",
                extra={"user_id": self.user_id, "dropped": len(records) - len(writable)},
            )
        if not writable:
            return 0

        rows = [
            {
                "trans_id": r.trans_id,
                "account_id": r.account_id,
                "date": r.date,
                "amount": r.amount,
                "merchant_name": r.merchant_name,
                "category": r.category or UNREFINED_CATEGORY,
                "is_deductible": r.is_deductible,
                "deduction_score": r.deduction_score,
                "deduction_percent": r.deduction_percent,
                "deductible_reason": r.deductible_reason,
                "notes": r.notes,
                "removed_at": None,
            }
            for r in writable
        ]
        table = BankTransaction.__table__
        stmt = _dialect_insert(self.db)(table).values(rows)
        new = stmt.excluded

        def keep_stored(column: str, blank_is_unset: bool = False) -> Any:
            stored = table.c[column]
            if blank_is_unset:
                stored = func.nullif(stored, "")
            return func.coalesce(stored, new[column])

        def income_takes_merged(column: str) -> Any:
            return case((new.amount < 0, new[column]), else_=keep_stored(column))

        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.trans_id],
            set_={
                "account_id": new.account_id,
                "date": new.date,
                "amount": new.amount,
                "merchant_name": new.merchant_name,
                "category": case((table.c.category != UNREFINED_CATEGORY, table.c.category), else_=new.category),
                "is_deductible": income_takes_merged("is_deductible"),
                "deduction_score": keep_stored("deduction_score"),
                "deduction_percent": income_takes_merged("deduction_percent"),
                "deductible_reason": keep_stored("deductible_reason", blank_is_unset=True),
                "notes": keep_stored("notes", blank_is_unset=True),
                "removed_at": None,
                "updated_at": utcnow(),
            },
            where=table.c.account_id.in_(self._owned_accounts()),
        )
        # Conflicts with rows on another user's account are skipped and not counted
        return self.db.execute(stmt).rowcount

    def mark_removed(self, trans_ids: Iterable[str]) -> int:
        """Soft-delete rows the aggregator reported as removed"""
        unique_ids = list(dict.fromkeys(trans_ids))
        removed = 0
        now = utcnow()
        for chunk in _chunks(unique_ids, READ_CHUNK_SIZE):
            result = self.db.execute(
                update(BankTransaction)
                .where(BankTransaction.trans_id.in_(chunk))
                .where(BankTransaction.account_id.in_(self._owned_accounts()))
                .where(BankTransaction.removed_at.is_(None))
                .values(removed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            removed += result.rowcount
        return removed

    def update_classification(
        self,
        trans_id: str,
        account_id: str,
        fields: Dict[str, Any],
        only_if_pending: bool = False,
    ) -> int:
        """
        Write classification fields to one row scoped by (trans_id, account_id).

        Returns the number of rows affected; zero means the row is not visible to this
        user (or, with only_if_pending, was classified in the meantime).
        """
        stmt = (
            update(BankTransaction)
            .where(BankTransaction.trans_id == trans_id)
            .where(BankTransaction.account_id == account_id)
            .where(BankTransaction.account_id.in_(self._owned_accounts()))
            .where(BankTransaction.removed_at.is_(None))
        )
        if only_if_pending:
            stmt = stmt.where(BankTransaction.deductible_reason.is_(None))

        result = self.db.execute(
            stmt.values(**fields, updated_at=utcnow()).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def select_pending(self, trans_ids: Optional[Iterable[str]] = None) -> List[TransactionRecord]:
        """Expenses never given a reasoned verdict, newest first"""
        query = (
            select(BankTransaction)
            .where(BankTransaction.account_id.in_(self._owned_accounts()))
            .where(BankTransaction.removed_at.is_(None))
            .where(BankTransaction.amount >= 0)
            .where(BankTransaction.deductible_reason.is_(None))
            .order_by(BankTransaction.date.desc(), BankTransaction.trans_id)
        )
        if trans_ids is not None:
            unique_ids = list(dict.fromkeys(trans_ids))
            if not unique_ids:
                return []
            pending: List[TransactionRecord] = []
            for chunk in _chunks(unique_ids, READ_CHUNK_SIZE):
                pending.extend(to_record(row) for row in self.db.scalars(query.where(BankTransaction.trans_id.in_(chunk))))
            return pending

        return [to_record(row) for row in self.db.scalars(query)]

    def get(self, trans_id: str) -> Optional[TransactionRecord]:
        row = self.db.scalars(
            select(BankTransaction)
            .where(BankTransaction.trans_id == trans_id)
            .where(BankTransaction.account_id.in_(self._owned_accounts()))
            .where(BankTransaction.removed_at.is_(None))
        ).first()
        return to_record(row) if row is not None else None

    def list_for_user(self, limit: int = 100, offset: int = 0, state: Optional[ReviewState] = None) -> List[TransactionRecord]:
        """Visible transactions newest first; `state` filters in SQL so limit/offset page the filtered set"""
        query = (
            select(BankTransaction)
            .where(BankTransaction.account_id.in_(self._owned_accounts()))
            .where(BankTransaction.removed_at.is_(None))
        )
        if state is not None:
            query = query.where(review_state_condition(state))
        rows = self.db.scalars(
            query.order_by(BankTransaction.date.desc(), BankTransaction.trans_id).limit(limit).offset(offset)
        )
        return [to_record(row) for row in rows]
