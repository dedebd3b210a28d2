"""
DealPact Escrow Bot - Database Schema
=====================================

Off-chain projection of escrow deals held on the ledger, plus the human-facing
metadata the ledger does not carry:
- Deals between a seller and a buyer, keyed by a short DP-XXXX code
- Append-only dispute evidence
- User wallet bindings
- The revocable arbiter (moderator) roster
- Append-only admin audit log

All timestamps are naive UTC (see utils.datetime_helpers.get_naive_utc_now).
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from sqlalchemy import (
    Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DealStatus(Enum):
    """Deal lifecycle states"""
    PENDING_DEPOSIT = "pending_deposit"
    FUNDED = "funded"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class LedgerStatus(Enum):
    """Status codes reported by the escrow contract"""
    PENDING = 0
    FUNDED = 1
    COMPLETED = 2
    REFUNDED = 3
    DISPUTED = 4
    CANCELLED = 5


class PartyRole(Enum):
    """Role of an actor at the time of an action"""
    SELLER = "seller"
    BUYER = "buyer"
    ARBITER = "arbiter"


class CompletionSource(Enum):
    """How a deal reached COMPLETED"""
    BUYER_RELEASE = "buyer_release"
    BUYER_OVERRIDE = "buyer_override"  # buyer released while disputed
    ARBITER_RELEASE = "arbiter_release"
    LEDGER = "ledger"  # observed on-chain by reconciliation


class DisputeResolution(Enum):
    RELEASE = "release"
    REFUND = "refund"


class LedgerAction(Enum):
    """Ledger writes that may be requested by a transition"""
    MARK_DISPUTED = "mark_disputed"
    RELEASE = "release"
    REFUND = "refund"


class AdminActionType(Enum):
    """Privileged actions recorded in the audit log"""
    ADD_ARBITER = "add_mod"
    REMOVE_ARBITER = "remove_mod"
    ASSIGN = "assign"
    UNASSIGN = "unassign"
    MESSAGE = "msg"
    BROADCAST = "broadcast"
    RESOLVE = "resolve"
    CANCEL_DISPUTE = "cancel_dispute"


DEAL_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in DealStatus)


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Telegram identity bound to a payout wallet"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_users_telegram_id", "telegram_id", unique=True),
    )

    def __repr__(self):
        return f"<User(telegram_id={self.telegram_id}, username={self.username})>"


class Deal(Base):
    """Escrow deal - off-chain projection of the on-chain escrow plus metadata"""
    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(16), unique=True, nullable=False, index=True)  # DP-XXXX

    # Participants
    seller_telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    seller_username: Mapped[str] = mapped_column(String(32), nullable=False)
    buyer_username: Mapped[str] = mapped_column(String(32), nullable=False, index=True)  # handle typed by seller
    buyer_telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)  # set on first buyer action

    # Terms
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    # Status and lifecycle
    status: Mapped[str] = mapped_column(String(20), default=DealStatus.PENDING_DEPOSIT.value, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    funded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Ledger binding (immutable once set)
    contract_deal_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    release_tx_hash: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    ledger_action_pending: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # unconfirmed ledger write
    ledger_action_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Dispute history (never cleared, only superseded)
    disputed_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    disputed_by_telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    assigned_to_telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True, index=True)
    assigned_to_username: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    assigned_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    resolved_by_telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    dispute_cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    dispute_cancelled_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Completion bookkeeping (advisory - the ledger moves the funds)
    completion_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    fee_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)
    seller_payout: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 6), nullable=True)

    # Reviews - written BY the named party, each settable once
    seller_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    seller_review: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    seller_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    buyer_rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    buyer_review: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    buyer_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    # Release window reminder (prevents re-notification every tick)
    release_reminder_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        CheckConstraint(f"status IN ({DEAL_STATUS_VALUES})", name="ck_deal_status_valid"),
        CheckConstraint("amount > 0", name="ck_deal_amount_positive"),
        CheckConstraint("seller_rating IS NULL OR (seller_rating BETWEEN 1 AND 5)", name="ck_deal_seller_rating_range"),
        CheckConstraint("buyer_rating IS NULL OR (buyer_rating BETWEEN 1 AND 5)", name="ck_deal_buyer_rating_range"),
        Index("ix_deals_status_contract", "status", "contract_deal_id"),
        Index("ix_deals_created", "created_at"),
    )

    @property
    def is_bound(self) -> bool:
        return bool(self.contract_deal_id)

    @property
    def deal_status(self) -> DealStatus:
        return DealStatus(self.status)

    def __repr__(self):
        return f"<Deal(deal_id={self.deal_id}, status={self.status}, amount={self.amount})>"


class Evidence(Base):
    """Append-only evidence attached to a disputed deal"""
    __tablename__ = "evidence"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    deal_id: Mapped[str] = mapped_column(String(16), ForeignKey("deals.deal_id"), nullable=False)
    submitted_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    submitter_telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    role: Mapped[str] = mapped_column(String(10), nullable=False)  # seller|buyer|arbiter
    content: Mapped[str] = mapped_column(Text, nullable=False)
    file_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # Telegram file reference
    file_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint("role IN ('seller', 'buyer', 'arbiter')", name="ck_evidence_role_valid"),
        Index("ix_evidence_deal_created", "deal_id", "created_at"),
    )

    def __repr__(self):
        return f"<Evidence(deal_id={self.deal_id}, role={self.role}, submitted_by={self.submitted_by})>"


class Arbiter(Base):
    """Revocable arbiter (moderator) roster entry - superusers are configured, not stored"""
    __tablename__ = "arbiters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    username: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    added_by: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_arbiters_telegram_id", "telegram_id", unique=True),
        Index("ix_arbiters_active", "is_active"),
    )

    def __repr__(self):
        return f"<Arbiter(telegram_id={self.telegram_id}, username={self.username}, active={self.is_active})>"


class AdminLog(Base):
    """Append-only audit trail of privileged actions"""
    __tablename__ = "admin_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    deal_id: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)
    admin_telegram_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    admin_username: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    target_user: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_admin_logs_created", "created_at"),
    )

    def __repr__(self):
        return f"<AdminLog(action={self.action}, deal_id={self.deal_id}, admin={self.admin_telegram_id})>"
