"""User-driven review actions: manual business/personal decisions and classification resets"""

from dataclasses import replace
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from writeoff_gateway.domain.exceptions import AuthorizationError, PersistenceError, TransactionNotFoundError
from writeoff_gateway.domain.models import TransactionRecord
from writeoff_gateway.domain.review import reset_classification, user_override
from writeoff_gateway.infrastructure.database.repositories import TransactionRepository


def _load(repo: TransactionRepository, trans_id: str) -> TransactionRecord:
    txn = repo.get(trans_id)
    if txn is None:
        raise TransactionNotFoundError(f"Transaction {trans_id} not found")
    return txn


def _write(db: Session, repo: TransactionRepository, txn: TransactionRecord, fields: Dict[str, Any]) -> TransactionRecord:
    try:
        rows = repo.update_classification(txn.trans_id, txn.account_id, fields)
        if rows != 1:
            db.rollback()
            raise AuthorizationError(f"Update of {txn.trans_id} on account {txn.account_id} matched {rows} rows")
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise PersistenceError(f"Failed to update {txn.trans_id}: {e}") from e
    return replace(txn, **fields)


def override_classification(
    db: Session,
    user_id: str,
    trans_id: str,
    is_deductible: bool,
    notes: Optional[str] = None,
) -> TransactionRecord:
    """Pin a transaction as business (deductible) or personal by the user's decision"""
    repo = TransactionRepository(db, user_id)
    txn = _load(repo, trans_id)
    return _write(db, repo, txn, user_override(txn, is_deductible, notes))


def reset_transaction(db: Session, user_id: str, trans_id: str) -> TransactionRecord:
    """Clear a transaction's verdict so the next classification run picks it up again"""
    repo = TransactionRepository(db, user_id)
    txn = _load(repo, trans_id)
    return _write(db, repo, txn, reset_classification(txn))
