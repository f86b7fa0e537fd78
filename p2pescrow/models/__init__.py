"""ORM models package."""
from .audit import AuditLog
from .base import Base
from .escrow import (
    NEGOTIATION_STATUSES,
    SETTLEMENT_ELIGIBLE_STATUSES,
    TERMINAL_STATUSES,
    EscrowEvent,
    EscrowStatus,
    EscrowTrade,
    SettlementDirection,
    TradeCounter,
    TradeDetailsStep,
)
from .room import GroupRoom, RoomStatus, VaultContract

__all__ = [
    "AuditLog",
    "Base",
    "EscrowEvent",
    "EscrowStatus",
    "EscrowTrade",
    "GroupRoom",
    "NEGOTIATION_STATUSES",
    "RoomStatus",
    "SETTLEMENT_ELIGIBLE_STATUSES",
    "SettlementDirection",
    "TERMINAL_STATUSES",
    "TradeCounter",
    "TradeDetailsStep",
    "VaultContract",
]
