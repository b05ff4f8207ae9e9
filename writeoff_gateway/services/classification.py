"""Classification scheduler - drives pending transactions through the external classifier"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import (
    AuthorizationError,
    ClassificationValidationError,
    ClassifierError,
    PersistenceError,
    ProfileNotFoundError,
    TransactionNotFoundError,
)
from writeoff_gateway.domain.models import ClassificationJob, ClassificationRunResult, TransactionRecord, UserProfile
from writeoff_gateway.domain.review import (
    Trigger,
    check_transition,
    classification_fields,
    derive_review_state,
    is_pending_classification,
)
from writeoff_gateway.infrastructure.clients.classifier import ClassifierClient
from writeoff_gateway.infrastructure.database.repositories import ProfileRepository, TransactionRepository
from writeoff_gateway.infrastructure.observability.logging import log_classification
from writeoff_gateway.infrastructure.observability.metrics import record_classification
from writeoff_gateway.utils.rate_limit import TokenBucket

ANALYZED = "analyzed"
REJECTED = "rejected"
FAILED = "failed"
UNAUTHORIZED = "unauthorized"
SKIPPED = "skipped"


class ClassificationScheduler:
    """
    Classifies a user's pending transactions with bounded concurrency.

    Each transaction is isolated: a rejected verdict, classifier outage or storage
    failure leaves that transaction pending for a later run and does not stop the
    others.
    """

    def __init__(
        self,
        db: Session,
        classifier: ClassifierClient,
        concurrency: int = 4,
        rate_limiter: Optional[TokenBucket] = None,
    ):
        self.db = db
        self.classifier = classifier
        self.concurrency = max(1, concurrency)
        self.rate_limiter = rate_limiter or TokenBucket(rate_per_second=5.0, burst=5)

    @classmethod
    def from_settings(cls, db: Session, classifier: ClassifierClient, settings: Settings) -> "ClassificationScheduler":
        return cls(
            db,
            classifier,
            concurrency=settings.classifier_concurrency,
            rate_limiter=TokenBucket(settings.classifier_rate_per_second, settings.classifier_burst),
        )

    def _read_profile(self, user_id: str) -> UserProfile:
        profile = ProfileRepository(self.db).read_user_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}")
        return profile

    async def classify_pending(
        self,
        user_id: str,
        external_ids: Optional[Iterable[str]] = None,
    ) -> ClassificationRunResult:
        """
        Main entry point: classify every eligible transaction of a user.

        Eligible means an expense (amount >= 0) without a deductible_reason. When
        `external_ids` is given, only those transactions are considered, still subject
        to the same predicate.

        Returns counters; `analyzed` counts persisted verdicts out of `total` selected.
        """
        profile = self._read_profile(user_id)
        repo = TransactionRepository(self.db, user_id)

        jobs: List[ClassificationJob] = []
        seen = set()
        for txn in repo.select_pending(external_ids):
            if txn.trans_id in seen or not is_pending_classification(txn):
                continue
            seen.add(txn.trans_id)
            jobs.append(ClassificationJob(transaction=txn, profile=profile))

        result = ClassificationRunResult(total=len(jobs))
        if not jobs:
            return result

        queue: asyncio.Queue = asyncio.Queue()
        for job in jobs:
            queue.put_nowait(job)

        workers = [self._worker(queue, repo, result) for _ in range(min(self.concurrency, len(jobs)))]
        await asyncio.gather(*workers)

        logging.info(
            "Classification run completed",
            extra={"user_id": user_id, "analyzed": result.analyzed, "total": result.total},
        )
        return result

    async def _worker(self, queue: asyncio.Queue, repo: TransactionRepository, result: ClassificationRunResult) -> None:
        while True:
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            outcome = await self._classify_job(job, repo)
            setattr(result, outcome, getattr(result, outcome) + 1)
            queue.task_done()

    async def _classify_job(self, job: ClassificationJob, repo: TransactionRepository) -> str:
        txn = job.transaction
        user_id = job.profile.user_id
        try:
            await self.rate_limiter.acquire()
            verdict = await self.classifier.classify(job)
            fields = classification_fields(
                is_deductible=verdict.is_deductible,
                deduction_score=verdict.deduction_score,
                deduction_percent=verdict.deduction_percent,
                deductible_reason=verdict.deductible_reason,
                amount=txn.amount,
            )
            written = self._persist(repo, txn, fields, only_if_pending=True)

        except ClassificationValidationError as e:
            return self._report(user_id, txn, REJECTED, error=str(e))
        except ClassifierError as e:
            return self._report(user_id, txn, FAILED, error=str(e))
        except AuthorizationError as e:
            return self._report(user_id, txn, UNAUTHORIZED, error=str(e))
        except PersistenceError as e:
            return self._report(user_id, txn, FAILED, error=str(e))
        except Exception as e:
            # One failed job never stops the remaining workers
            self.db.rollback()
            logging.exception("Unexpected classification failure", extra={"user_id": user_id, "trans_id": txn.trans_id})
            return self._report(user_id, txn, FAILED, error=f"{type(e).__name__}: {e}")

        if not written:
            return self._report(user_id, txn, SKIPPED)

        state = derive_review_state(replace(txn, **fields))
        return self._report(user_id, txn, ANALYZED, review_state=state.value)

    def _report(
        self,
        user_id: str,
        txn: TransactionRecord,
        outcome: str,
        review_state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> str:
        record_classification(outcome)
        log_classification(user_id, txn.trans_id, outcome, review_state=review_state, error=error)
        return outcome

    def _persist(
        self,
        repo: TransactionRepository,
        txn: TransactionRecord,
        fields: Dict[str, Any],
        only_if_pending: bool,
    ) -> bool:
        """
        Write fields scoped to (trans_id, account_id) and commit.

        Returns False when the row was classified by someone else since selection.

        Raises:
            AuthorizationError: The scoped update matched no row the user owns
            PersistenceError: Storage failure; nothing was written
        """
        try:
            rows = repo.update_classification(txn.trans_id, txn.account_id, fields, only_if_pending=only_if_pending)
            if rows == 1:
                self.db.commit()
                return True

            self.db.rollback()
            current = repo.get(txn.trans_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store classification for {txn.trans_id}: {e}") from e

        if (
            only_if_pending
            and current is not None
            and current.account_id == txn.account_id
            and not is_pending_classification(current)
        ):
            return False
        raise AuthorizationError(f"Update of {txn.trans_id} on account {txn.account_id} matched {rows} rows")

    async def classify_transaction(self, user_id: str, trans_id: str, notes: Optional[str] = None) -> TransactionRecord:
        """
        Re-analyse one transaction on explicit user request.

        Optional notes replace the stored notes and are shown to the classifier.
        Transactions pinned by a user override must be reset first.

        Raises:
            TransactionNotFoundError, InvalidTransitionError, ClassifierError,
            ClassificationValidationError, AuthorizationError, PersistenceError
        """
        profile = self._read_profile(user_id)
        repo = TransactionRepository(self.db, user_id)

        txn = repo.get(trans_id)
        if txn is None:
            raise TransactionNotFoundError(f"Transaction {trans_id} not found")
        check_transition(txn, Trigger.REANALYSIS)
        if notes:
            txn = replace(txn, notes=notes)

        await self.rate_limiter.acquire()
        verdict = await self.classifier.classify(ClassificationJob(transaction=txn, profile=profile))
        fields = classification_fields(
            is_deductible=verdict.is_deductible,
            deduction_score=verdict.deduction_score,
            deduction_percent=verdict.deduction_percent,
            deductible_reason=verdict.deductible_reason,
            amount=txn.amount,
        )
        if notes:
            fields["notes"] = notes

        self._persist(repo, txn, fields, only_if_pending=False)
        updated = replace(txn, **fields)
        self._report(user_id, updated, ANALYZED, review_state=derive_review_state(updated).value)
        return updated
