"""Schema package exports."""
from .room import RoomContract, RoomCreate, RoomRead, VaultContractCreate, VaultContractRead
from .trade import (
    ActionResult,
    ActorIn,
    ActorPayload,
    ConsentRead,
    DepositCheckRead,
    SettlementRead,
    TradeCreate,
    TradeRead,
)

__all__ = [
    "ActionResult",
    "ActorIn",
    "ActorPayload",
    "ConsentRead",
    "DepositCheckRead",
    "RoomContract",
    "RoomCreate",
    "RoomRead",
    "SettlementRead",
    "TradeCreate",
    "TradeRead",
    "VaultContractCreate",
    "VaultContractRead",
]
