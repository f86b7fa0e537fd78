"""Group room pool and vault contract registry."""
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum as SqlEnum, Index, JSON, Numeric, String, UniqueConstraint
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RoomStatus(str, PyEnum):
    """Availability of a group room."""

    AVAILABLE = "available"
    ASSIGNED = "assigned"
    COMPLETED = "completed"


class GroupRoom(Base):
    """A physical chat room that hosts one trade at a time."""

    __tablename__ = "group_rooms"
    __table_args__ = (Index("ix_group_rooms_status", "status"),)

    group_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[RoomStatus] = mapped_column(SqlEnum(RoomStatus), default=RoomStatus.AVAILABLE, nullable=False)
    assigned_trade_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fee_percent: Mapped[Decimal | None] = mapped_column(Numeric(8, 4), nullable=True)
    # {"USDT": {"address": "0x..", "network": "BSC"}, "USDT_TRON": {...}}
    contracts: Mapped[dict] = mapped_column(MutableDict.as_mutable(JSON), default=dict, nullable=False)


class VaultContract(Base):
    """Globally deployed vault used when a room has no contract of its own."""

    __tablename__ = "vault_contracts"
    __table_args__ = (
        UniqueConstraint("address", name="uq_vault_contracts_address"),
        Index("ix_vault_contracts_token_network", "token", "network"),
    )

    name: Mapped[str] = mapped_column(String(64), default="EscrowVault", nullable=False)
    token: Mapped[str] = mapped_column(String(16), nullable=False)
    network: Mapped[str] = mapped_column(String(16), nullable=False)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="deployed", nullable=False)
