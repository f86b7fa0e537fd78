"""Escrow trade models."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    JSON,
    Numeric,
    String,
)
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TokenAmount


class EscrowStatus(str, PyEnum):
    """Lifecycle state of an escrow trade."""

    DRAFT = "draft"
    AWAITING_DETAILS = "awaiting_details"
    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSITED = "deposited"
    IN_FIAT_TRANSFER = "in_fiat_transfer"
    READY_TO_RELEASE = "ready_to_release"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset({EscrowStatus.COMPLETED, EscrowStatus.REFUNDED})
NEGOTIATION_STATUSES = frozenset({EscrowStatus.DRAFT, EscrowStatus.AWAITING_DETAILS})
SETTLEMENT_ELIGIBLE_STATUSES = frozenset(
    {
        EscrowStatus.DEPOSITED,
        EscrowStatus.IN_FIAT_TRANSFER,
        EscrowStatus.READY_TO_RELEASE,
        EscrowStatus.DISPUTED,
    }
)


class TradeDetailsStep(str, PyEnum):
    """Sub-state of the negotiation phase, in the order the steps are collected."""

    ROLE_SELECTION = "role_selection"
    CHAIN_SELECTION = "chain_selection"
    TOKEN_SELECTION = "token_selection"
    AMOUNT_ENTRY = "amount_entry"
    BUYER_ADDRESS = "buyer_address"
    SELLER_ADDRESS = "seller_address"
    DEAL_SUMMARY = "deal_summary"


class SettlementDirection(str, PyEnum):
    """Which way funds leave the vault."""

    RELEASE = "release"
    REFUND = "refund"


class EscrowTrade(Base):
    """A single buyer/seller trade running in an assigned group room."""

    __tablename__ = "escrow_trades"
    __table_args__ = (
        CheckConstraint("accumulated_deposit_amount >= 0", name="ck_trade_balance_non_negative"),
        CheckConstraint(
            "buyer_id IS NULL OR seller_id IS NULL OR buyer_id <> seller_id",
            name="ck_trade_no_self_dealing",
        ),
        Index("ix_trade_status", "status"),
        Index("ix_trade_group", "group_id"),
    )

    # --- identity ----------------------------------------------------------
    trade_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    group_id: Mapped[str] = mapped_column(String(64), nullable=False)
    creator_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    creator_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    buyer_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seller_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    seller_username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    allowed_user_ids: Mapped[list] = mapped_column(MutableList.as_mutable(JSON), default=list, nullable=False)
    allowed_usernames: Mapped[list] = mapped_column(MutableList.as_mutable(JSON), default=list, nullable=False)
    joined_user_ids: Mapped[list] = mapped_column(MutableList.as_mutable(JSON), default=list, nullable=False)

    # --- negotiation -------------------------------------------------------
    status: Mapped[EscrowStatus] = mapped_column(
        SqlEnum(EscrowStatus), default=EscrowStatus.DRAFT, nullable=False
    )
    trade_details_step: Mapped[TradeDetailsStep | None] = mapped_column(SqlEnum(TradeDetailsStep), nullable=True)
    chain: Mapped[str | None] = mapped_column(String(16), nullable=True)
    token: Mapped[str | None] = mapped_column(String(16), nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 4), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    seller_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    contract_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    buyer_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seller_approved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # --- fees --------------------------------------------------------------
    fee_rate: Mapped[Decimal] = mapped_column(Numeric(8, 4), nullable=False)
    network_fee: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    has_bio_tag: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # --- ledger ------------------------------------------------------------
    deposit_amount: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"), nullable=False)
    confirmed_amount: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"), nullable=False)
    accumulated_deposit_amount: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"), nullable=False)
    # Integers above 2**63 do not fit SQL BIGINT, so minor units are stored as text.
    accumulated_deposit_amount_wei: Mapped[str] = mapped_column(String(80), default="0", nullable=False)
    total_deposited_amount: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"), nullable=False)
    total_settled_amount: Mapped[Decimal] = mapped_column(TokenAmount, default=Decimal("0"), nullable=False)
    transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    partial_transaction_hashes: Mapped[list] = mapped_column(
        MutableList.as_mutable(JSON), default=list, nullable=False
    )
    deposit_from_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_checked_block: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # --- consent -----------------------------------------------------------
    buyer_confirmed_release: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seller_confirmed_release: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_confirmed_release: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    buyer_confirmed_refund: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seller_confirmed_refund: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    admin_confirmed_refund: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pending_release_amount: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    pending_refund_amount: Mapped[Decimal | None] = mapped_column(TokenAmount, nullable=True)
    release_prompt_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    refund_prompt_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    settlement_in_flight: Mapped[SettlementDirection | None] = mapped_column(
        SqlEnum(SettlementDirection), nullable=True
    )

    # --- settlement history ------------------------------------------------
    release_transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    refund_transaction_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    release_transaction_hashes: Mapped[list] = mapped_column(
        MutableList.as_mutable(JSON), default=list, nullable=False
    )
    refund_transaction_hashes: Mapped[list] = mapped_column(
        MutableList.as_mutable(JSON), default=list, nullable=False
    )

    # --- lifecycle ---------------------------------------------------------
    buyer_sent_fiat: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    seller_received_fiat: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    events = relationship("EscrowEvent", back_populates="trade", cascade="all, delete-orphan")


class EscrowEvent(Base):
    """Timeline event for an escrow trade."""

    __tablename__ = "escrow_events"

    trade_pk: Mapped[int] = mapped_column(ForeignKey("escrow_trades.id", ondelete="CASCADE"), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    data_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    trade = relationship("EscrowTrade", back_populates="events")


class TradeCounter(Base):
    """Monotonic sequence backing human-readable trade ids."""

    __tablename__ = "trade_counters"

    name: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
