"""Room pool schemas."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from p2pescrow.models.room import RoomStatus


class RoomContract(BaseModel):
    address: str = Field(min_length=1, max_length=128)
    network: str = Field(default="BSC", max_length=16)


class RoomCreate(BaseModel):
    group_id: str = Field(min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=255)
    fee_percent: Decimal | None = Field(default=None, ge=Decimal("0"), lt=Decimal("100"))
    contracts: dict[str, RoomContract] = Field(default_factory=dict)


class RoomRead(BaseModel):
    id: int
    group_id: str
    title: str | None
    status: RoomStatus
    assigned_trade_id: str | None
    assigned_at: datetime | None
    completed_at: datetime | None
    fee_percent: Decimal | None
    contracts: dict

    model_config = ConfigDict(from_attributes=True)


class VaultContractCreate(BaseModel):
    name: str = "EscrowVault"
    token: str = Field(min_length=1, max_length=16)
    network: str = Field(default="BSC", max_length=16)
    address: str = Field(min_length=1, max_length=128)


class VaultContractRead(BaseModel):
    id: int
    name: str
    token: str
    network: str
    address: str
    status: str

    model_config = ConfigDict(from_attributes=True)
