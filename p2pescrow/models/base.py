"""Declarative base model for SQLAlchemy."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from p2pescrow.utils.time import utcnow

# Token quantities: 18 decimals covers every supported ERC-20 and TRC-20.
TokenAmount = Numeric(38, 18)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {Decimal: TokenAmount}

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
