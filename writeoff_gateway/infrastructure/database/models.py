"""SQLAlchemy ORM models for profiles, linked accounts and synced transactions"""

from sqlalchemy import Column, Boolean, Float, DateTime, Date, ForeignKey, Text
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from writeoff_gateway.domain.models import UNREFINED_CATEGORY

Base = declarative_base()


class Profile(Base):
    """Per-user aggregator credential, sync cursor, tax context and sync lease"""

    __tablename__ = "user_profile"

    user_id = Column(Text, primary_key=True)
    access_token = Column(Text, nullable=True)
    last_cursor = Column(Text, nullable=True)
    profession = Column(Text, nullable=True)
    income_bracket = Column(Text, nullable=True)
    state = Column(Text, nullable=True)
    filing_status = Column(Text, nullable=True)
    sync_lease_owner = Column(Text, nullable=True)
    sync_lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    accounts = relationship("BankAccount", back_populates="profile")


class BankAccount(Base):
    """Bank account linked through the aggregator"""

    __tablename__ = "bank_account"

    account_id = Column(Text, primary_key=True)
    user_id = Column(Text, ForeignKey("user_profile.user_id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(Text, nullable=True)
    mask = Column(Text, nullable=True)
    type = Column(Text, nullable=True)
    subtype = Column(Text, nullable=True)
    institution_id = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    profile = relationship("Profile", back_populates="accounts")
    transactions = relationship("BankTransaction", back_populates="account")


class BankTransaction(Base):
    """Synced transaction with its deductibility classification"""

    __tablename__ = "bank_transaction"

    trans_id = Column(Text, primary_key=True)  # aggregator's external id, the upsert key
    account_id = Column(Text, ForeignKey("bank_account.account_id", ondelete="CASCADE"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    amount = Column(Float, nullable=False)
    merchant_name = Column(Text, nullable=True)
    category = Column(Text, nullable=False, default=UNREFINED_CATEGORY)
    is_deductible = Column(Boolean, nullable=True)
    deduction_score = Column(Float, nullable=True)
    deduction_percent = Column(Float, nullable=True)
    deductible_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    removed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=func.now())

    account = relationship("BankAccount", back_populates="transactions")
