"""Trade request and response schemas."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from p2pescrow.models.escrow import EscrowStatus, SettlementDirection, TradeDetailsStep


class ActorIn(BaseModel):
    """Chat identity of the user who pressed a button or sent a message."""

    user_id: int
    username: str | None = Field(default=None, max_length=64)


class ActorPayload(BaseModel):
    actor: ActorIn


class TradeCreate(BaseModel):
    creator: ActorIn
    counterparty_id: int | None = None
    counterparty_username: str | None = Field(default=None, max_length=64)
    creator_has_bio_tag: bool = False
    counterparty_has_bio_tag: bool = False

    @model_validator(mode="after")
    def _require_counterparty(self) -> "TradeCreate":
        if self.counterparty_id is None and not self.counterparty_username:
            raise ValueError("counterparty_id or counterparty_username is required")
        return self


class RoleClaim(ActorPayload):
    role: Literal["buyer", "seller"]


class ChainSelect(ActorPayload):
    chain: str = Field(min_length=1, max_length=16)


class TokenSelect(ActorPayload):
    token: str = Field(min_length=1, max_length=16)


class AmountEntry(ActorPayload):
    quantity: Decimal
    rate: Decimal | None = None
    payment_method: str | None = Field(default=None, max_length=64)


class AddressEntry(ActorPayload):
    address: str = Field(min_length=1, max_length=128)


class FiatReceived(ActorPayload):
    outcome: Literal["full", "partial", "none"]


class ManualDeposit(ActorPayload):
    tx_hash: str = Field(min_length=1, max_length=128)
    amount: Decimal


class SettlementOpen(ActorPayload):
    amount: Decimal | None = None
    prompt_id: str | None = Field(default=None, max_length=64)


class ConsentAction(ActorPayload):
    prompt_id: str = Field(min_length=1, max_length=64)


class CallbackAction(ActorPayload):
    callback_data: str = Field(min_length=1, max_length=128)
    prompt_id: str | None = Field(default=None, max_length=64)
    trade_id: str | None = None
    group_id: str | None = None


class TradeRead(BaseModel):
    trade_id: str
    group_id: str
    status: EscrowStatus
    trade_details_step: TradeDetailsStep | None
    creator_id: int
    buyer_id: int | None
    buyer_username: str | None
    seller_id: int | None
    seller_username: str | None
    chain: str | None
    token: str | None
    quantity: Decimal | None
    rate: Decimal | None
    payment_method: str | None
    buyer_address: str | None
    seller_address: str | None
    contract_address: str | None
    fee_rate: Decimal
    network_fee: Decimal
    accumulated_deposit_amount: Decimal
    accumulated_deposit_amount_wei: str
    total_deposited_amount: Decimal
    total_settled_amount: Decimal
    transaction_hash: str | None
    partial_transaction_hashes: list[str]
    buyer_confirmed_release: bool
    seller_confirmed_release: bool
    admin_confirmed_release: bool
    buyer_confirmed_refund: bool
    seller_confirmed_refund: bool
    admin_confirmed_refund: bool
    pending_release_amount: Decimal | None
    pending_refund_amount: Decimal | None
    release_prompt_id: str | None
    refund_prompt_id: str | None
    release_transaction_hashes: list[str]
    refund_transaction_hashes: list[str]
    buyer_sent_fiat: bool
    seller_received_fiat: bool | None
    completed_at: datetime | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DepositCheckRead(BaseModel):
    trade: TradeRead
    new_deposits: int
    balance: Decimal
    remaining: Decimal
    fully_funded: bool


class RemainderRead(BaseModel):
    trade: TradeRead
    remaining: Decimal


class SettlementRead(BaseModel):
    trade: TradeRead
    direction: SettlementDirection
    gross_amount: Decimal
    net_amount: Decimal
    transaction_hash: str
    is_full: bool
    remaining: Decimal


class ConsentRead(BaseModel):
    trade: TradeRead
    quorum_reached: bool
    settlement: SettlementRead | None = None


class ActionResult(BaseModel):
    action: str
    trade: TradeRead | None = None
    detail: dict[str, Any] = Field(default_factory=dict)
