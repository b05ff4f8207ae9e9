"""Sync coordinator - pulls the aggregator's change stream into local storage"""

import logging
import time
import uuid
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from writeoff_gateway.config import Settings
from writeoff_gateway.domain.exceptions import (
    AggregatorError,
    MissingAccessTokenError,
    PersistenceError,
    ProfileNotFoundError,
    SyncInProgressError,
    SyncLeaseLostError,
)
from writeoff_gateway.domain.merge import build_candidate, merge
from writeoff_gateway.domain.models import SyncPage, SyncResult
from writeoff_gateway.infrastructure.clients.aggregator import AggregatorClient
from writeoff_gateway.infrastructure.database.repositories import (
    AccountRepository,
    ProfileRepository,
    TransactionRepository,
)
from writeoff_gateway.infrastructure.observability.logging import log_sync_complete, log_sync_page
from writeoff_gateway.infrastructure.observability.metrics import (
    aggregator_failures_counter,
    record_sync_outcome,
    sync_pages_committed_counter,
    transactions_removed_counter,
    transactions_upserted_counter,
)
from writeoff_gateway.services.classification import ClassificationScheduler


class SyncCoordinator:
    """
    Runs one user's incremental sync.

    Flow:
    1. Take the user's sync lease (one run per user at a time)
    2. Refresh linked accounts
    3. Page through changes from the stored cursor; each page is merged, upserted
       and committed before the cursor moves to that page's token
    4. Optionally classify the rows merged during the run

    The cursor always marks committed progress, so a failed run is safe to repeat.
    """

    def __init__(
        self,
        db: Session,
        aggregator: AggregatorClient,
        scheduler: Optional[ClassificationScheduler] = None,
        max_pages: int = 50,
        lease_seconds: int = 300,
    ):
        self.db = db
        self.aggregator = aggregator
        self.scheduler = scheduler
        self.max_pages = max_pages
        self.lease_seconds = lease_seconds

    @classmethod
    def from_settings(
        cls,
        db: Session,
        aggregator: AggregatorClient,
        settings: Settings,
        scheduler: Optional[ClassificationScheduler] = None,
    ) -> "SyncCoordinator":
        return cls(
            db,
            aggregator,
            scheduler=scheduler,
            max_pages=settings.sync_max_pages,
            lease_seconds=settings.sync_lease_seconds,
        )

    async def sync(self, user_id: str, classify: bool = False) -> SyncResult:
        """
        Main entry point: sync one user and report what was processed.

        Raises:
            ProfileNotFoundError: No profile for the user
            SyncInProgressError: Another run holds the user's lease
            MissingAccessTokenError: No linked bank
            AggregatorError: Aggregator failed; cursor left at the last committed page
            PersistenceError: Storage failed; the in-flight page was rolled back
            SyncLeaseLostError: The lease expired and another run took over; this run stopped
                without writing its in-flight page
        """
        start_time = time.time()
        profiles = ProfileRepository(self.db)
        if profiles.read_user_profile(user_id) is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}")

        owner = uuid.uuid4().hex
        if not profiles.acquire_sync_lease(user_id, owner, self.lease_seconds):
            record_sync_outcome("locked")
            raise SyncInProgressError(f"Sync already running for user {user_id}")

        try:
            result = await self._run(user_id, owner)
        except AggregatorError:
            aggregator_failures_counter.inc()
            record_sync_outcome("aggregator_error")
            raise
        except PersistenceError:
            record_sync_outcome("persistence_error")
            raise
        except SyncLeaseLostError:
            record_sync_outcome("lease_lost")
            raise
        finally:
            profiles.release_sync_lease(user_id, owner)

        record_sync_outcome("completed")
        duration_ms = (time.time() - start_time) * 1000
        log_sync_complete(user_id, result.accounts_processed, result.transactions_saved, result.pages, duration_ms)

        if classify and self.scheduler is not None and result.merged_ids:
            result.classification = await self.scheduler.classify_pending(user_id, result.merged_ids)

        return result

    async def _run(self, user_id: str, owner: str) -> SyncResult:
        # Re-read under the lease: a run that just finished may have moved the cursor
        profile = ProfileRepository(self.db).read_user_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No profile for user {user_id}")
        if not profile.access_token:
            raise MissingAccessTokenError(f"User {user_id} has no linked bank")

        accounts = await self.aggregator.get_accounts(profile.access_token)
        try:
            AccountRepository(self.db, user_id).upsert_accounts(accounts)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store accounts for user {user_id}: {e}") from e

        cursor = profile.cursor
        pages = saved = removed = 0
        merged_ids: List[str] = []

        while pages < self.max_pages:
            page = await self.aggregator.sync_page(profile.access_token, cursor)
            upserted, page_removed, page_ids = self._commit_page(user_id, page, owner)

            cursor = page.next_cursor
            pages += 1
            saved += upserted
            removed += page_removed
            merged_ids.extend(page_ids)
            log_sync_page(user_id, pages, upserted, page_removed, cursor_advanced=True)

            if not page.has_more:
                break
        else:
            logging.warning(
                "Sync page budget exhausted; remaining changes resume on next run",
                extra={"user_id": user_id, "pages": pages},
            )

        return SyncResult(
            accounts_processed=len(accounts),
            transactions_saved=saved,
            transactions_removed=removed,
            pages=pages,
            cursor=cursor,
            merged_ids=merged_ids,
        )

    def _commit_page(self, user_id: str, page: SyncPage, owner: str) -> Tuple[int, int, List[str]]:
        """
        Merge and persist one page, then advance the cursor to its token.

        The page transaction first extends this run's lease; if another run took the
        lease over, nothing from the page is written. The cursor write is guarded by
        the lease owner too.

        Synchronous on purpose: with no await between the upsert and the cursor
        write, a cancelled run cannot interleave with a half-written page.

        Returns (rows upserted, rows removed, ids of merged expenses)
        """
        profiles = ProfileRepository(self.db)
        repo = TransactionRepository(self.db, user_id)
        try:
            profiles.renew_sync_lease(user_id, owner, self.lease_seconds)
            candidates = [build_candidate(raw) for raw in page.added + page.modified]
            existing = repo.read_existing_by_external_ids(c.trans_id for c in candidates)
            merged = merge(candidates, existing)
            upserted = repo.upsert_transactions(merged)
            page_removed = repo.mark_removed(page.removed) if page.removed else 0
            self.db.commit()
        except SyncLeaseLostError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to persist sync page for user {user_id}: {e}") from e

        try:
            profiles.write_cursor(user_id, page.next_cursor, owner)
            self.db.commit()
        except SyncLeaseLostError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Page persisted but cursor not advanced for user {user_id}: {e}") from e

        sync_pages_committed_counter.inc()
        transactions_upserted_counter.inc(upserted)
        transactions_removed_counter.inc(page_removed)
        return upserted, page_removed, [r.trans_id for r in merged if not r.is_income]
