"""Trade endpoints called by the chat front-end for every user action.

Handlers are plain functions, so FastAPI runs them in its worker threads next
to the blocking session. Async collaborators are reached through
``anyio.from_thread``.
"""
from functools import partial

import anyio.from_thread
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from p2pescrow.db import get_db
from p2pescrow.models.escrow import EscrowTrade, SettlementDirection
from p2pescrow.schemas.trade import (
    ActionResult,
    ActorPayload,
    AddressEntry,
    AmountEntry,
    CallbackAction,
    ChainSelect,
    ConsentAction,
    ConsentRead,
    DepositCheckRead,
    FiatReceived,
    ManualDeposit,
    RemainderRead,
    RoleClaim,
    SettlementOpen,
    SettlementRead,
    TokenSelect,
    TradeCreate,
    TradeRead,
)
from p2pescrow.security import ApiScope, require_scope, resolve_actor
from p2pescrow.services import actions, consent, deposits, escrow, settlement
from p2pescrow.services.collaborators import (
    DepositSource,
    Notifier,
    TransferClient,
    get_deposit_source,
    get_notifier,
    get_transfer_client,
    notify_safely,
)
from p2pescrow.services.deposits import DepositCheck
from p2pescrow.services.settlement import SettlementOutcome
from p2pescrow.services.timers import TradeTimers, get_timers

router = APIRouter(prefix="/trades", tags=["trades"])
actions_router = APIRouter(prefix="/actions", tags=["actions"])

_bot_scope = require_scope({ApiScope.bot})


def _notify(notifier: Notifier, trade: EscrowTrade, event: str, payload: dict | None = None) -> None:
    anyio.from_thread.run(notify_safely, notifier, trade, event, payload)


def _deposit_read(result: DepositCheck) -> DepositCheckRead:
    return DepositCheckRead(
        trade=TradeRead.model_validate(result.trade),
        new_deposits=result.new_deposits,
        balance=result.balance,
        remaining=result.remaining,
        fully_funded=result.fully_funded,
    )


def _announce_deposit(notifier: Notifier, result: DepositCheck) -> None:
    if result.new_deposits:
        event = "partial_deposit" if result.partial else "deposit_confirmed"
        _notify(notifier, result.trade, event, {"balance": str(result.balance), "remaining": str(result.remaining)})


def _settlement_read(outcome: SettlementOutcome) -> SettlementRead:
    return SettlementRead(
        trade=TradeRead.model_validate(outcome.trade),
        direction=outcome.direction,
        gross_amount=outcome.gross_amount,
        net_amount=outcome.net_amount,
        transaction_hash=outcome.transaction_hash,
        is_full=outcome.is_full,
        remaining=outcome.remaining,
    )


@router.post("", response_model=TradeRead, status_code=status.HTTP_201_CREATED)
def create_trade(
    payload: TradeCreate,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    timers: TradeTimers = Depends(get_timers),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.create_trade(db, payload, timers=timers)
    _notify(notifier, trade, "trade_created", {"group_id": trade.group_id})
    return trade


@router.get("/{trade_id}", response_model=TradeRead)
def read_trade(
    trade_id: str,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
) -> EscrowTrade:
    return escrow.get_trade_or_404(db, trade_id)


@router.delete("/{trade_id}", status_code=status.HTTP_204_NO_CONTENT)
def reset_trade(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    timers: TradeTimers = Depends(get_timers),
    notifier: Notifier = Depends(get_notifier),
) -> Response:
    trade = escrow.cancel_trade(db, trade_id, resolve_actor(payload.actor, scope), timers=timers)
    _notify(notifier, trade, "trade_reset")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{trade_id}/close", response_model=TradeRead)
def close_trade(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    timers: TradeTimers = Depends(get_timers),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.close_trade(db, trade_id, resolve_actor(payload.actor, scope), timers=timers)
    _notify(notifier, trade, "trade_closed")
    return trade


# --- negotiation -------------------------------------------------------------


@router.post("/{trade_id}/join", response_model=TradeRead)
def join_trade(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    timers: TradeTimers = Depends(get_timers),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.join_room(db, trade_id, resolve_actor(payload.actor, scope), timers=timers)
    _notify(notifier, trade, "participant_joined", {"user_id": payload.actor.user_id})
    return trade


@router.post("/{trade_id}/roles", response_model=TradeRead)
def claim_role(
    trade_id: str,
    payload: RoleClaim,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.claim_role(db, trade_id, resolve_actor(payload.actor, scope), payload.role)
    _notify(notifier, trade, "role_claimed", {"role": payload.role})
    return trade


@router.post("/{trade_id}/chain", response_model=TradeRead)
def select_chain(
    trade_id: str,
    payload: ChainSelect,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.select_chain(db, trade_id, resolve_actor(payload.actor, scope), payload.chain)
    _notify(notifier, trade, "chain_selected", {"chain": trade.chain})
    return trade


@router.post("/{trade_id}/token", response_model=TradeRead)
def select_token(
    trade_id: str,
    payload: TokenSelect,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.select_token(db, trade_id, resolve_actor(payload.actor, scope), payload.token)
    _notify(notifier, trade, "token_selected", {"token": trade.token})
    return trade


@router.post("/{trade_id}/amount", response_model=TradeRead)
def enter_amount(
    trade_id: str,
    payload: AmountEntry,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.enter_amount(
        db,
        trade_id,
        resolve_actor(payload.actor, scope),
        payload.quantity,
        rate=payload.rate,
        payment_method=payload.payment_method,
    )
    _notify(notifier, trade, "amount_entered", {"quantity": str(trade.quantity)})
    return trade


@router.post("/{trade_id}/address", response_model=TradeRead)
def enter_address(
    trade_id: str,
    payload: AddressEntry,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.enter_address(db, trade_id, resolve_actor(payload.actor, scope), payload.address)
    _notify(notifier, trade, "address_entered")
    return trade


@router.post("/{trade_id}/approve-summary", response_model=TradeRead)
def approve_summary(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.approve_deal_summary(db, trade_id, resolve_actor(payload.actor, scope))
    _notify(notifier, trade, "summary_approved")
    if trade.contract_address:
        _notify(notifier, trade, "awaiting_deposit", {"contract_address": trade.contract_address})
    return trade


# --- funding -----------------------------------------------------------------


@router.post("/{trade_id}/deposits/check", response_model=DepositCheckRead)
def check_deposits(
    trade_id: str,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    source: DepositSource = Depends(get_deposit_source),
    notifier: Notifier = Depends(get_notifier),
) -> DepositCheckRead:
    result = anyio.from_thread.run(deposits.check_deposits, db, trade_id, source)
    _announce_deposit(notifier, result)
    return _deposit_read(result)


@router.post("/{trade_id}/deposits/manual", response_model=DepositCheckRead)
def record_manual_deposit(
    trade_id: str,
    payload: ManualDeposit,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> DepositCheckRead:
    result = deposits.record_manual_deposit(
        db, trade_id, resolve_actor(payload.actor, scope), payload.tx_hash, payload.amount
    )
    _announce_deposit(notifier, result)
    return _deposit_read(result)


@router.post("/{trade_id}/partial/continue", response_model=TradeRead)
def continue_partial(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.continue_with_partial(db, trade_id, resolve_actor(payload.actor, scope))
    _notify(notifier, trade, "partial_accepted")
    return trade


@router.post("/{trade_id}/partial/remainder", response_model=RemainderRead)
def request_remainder(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> RemainderRead:
    trade, remaining = escrow.request_remainder(db, trade_id, resolve_actor(payload.actor, scope))
    _notify(notifier, trade, "remainder_requested", {"remaining": str(remaining)})
    return RemainderRead(trade=TradeRead.model_validate(trade), remaining=remaining)


@router.post("/{trade_id}/fiat/sent", response_model=TradeRead)
def fiat_sent(
    trade_id: str,
    payload: ActorPayload,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.confirm_fiat_sent(db, trade_id, resolve_actor(payload.actor, scope))
    _notify(notifier, trade, "fiat_sent")
    return trade


@router.post("/{trade_id}/fiat/received", response_model=TradeRead)
def fiat_received(
    trade_id: str,
    payload: FiatReceived,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = escrow.report_fiat_received(db, trade_id, resolve_actor(payload.actor, scope), payload.outcome)
    event = "fiat_received" if payload.outcome == "full" else "dispute_opened"
    _notify(notifier, trade, event, {"outcome": payload.outcome})
    return trade


# --- settlement --------------------------------------------------------------


@router.post("/{trade_id}/{direction}", response_model=TradeRead)
def open_settlement(
    trade_id: str,
    direction: SettlementDirection,
    payload: SettlementOpen,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = consent.open_request(
        db,
        trade_id,
        direction,
        resolve_actor(payload.actor, scope),
        amount=payload.amount,
        prompt_id=payload.prompt_id,
    )
    _notify(notifier, trade, f"{direction.value}_requested", {"prompt_id": consent.active_prompt(trade, direction)})
    return trade


@router.post("/{trade_id}/{direction}/confirm", response_model=ConsentRead)
def confirm_settlement(
    trade_id: str,
    direction: SettlementDirection,
    payload: ConsentAction,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    transfer_client: TransferClient = Depends(get_transfer_client),
    notifier: Notifier = Depends(get_notifier),
    timers: TradeTimers = Depends(get_timers),
) -> ConsentRead:
    decision = consent.confirm(db, trade_id, direction, resolve_actor(payload.actor, scope), payload.prompt_id)
    if not decision.quorum_reached:
        _notify(notifier, decision.trade, f"{direction.value}_confirmed", {"role": decision.role})
        return ConsentRead(trade=TradeRead.model_validate(decision.trade), quorum_reached=False)

    outcome = anyio.from_thread.run(
        partial(
            settlement.execute,
            db,
            trade_id,
            direction,
            payload.prompt_id,
            transfer_client=transfer_client,
            notifier=notifier,
            timers=timers,
        )
    )
    return ConsentRead(
        trade=TradeRead.model_validate(outcome.trade),
        quorum_reached=True,
        settlement=_settlement_read(outcome),
    )


@router.post("/{trade_id}/{direction}/decline", response_model=TradeRead)
def decline_settlement(
    trade_id: str,
    direction: SettlementDirection,
    payload: ConsentAction,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    notifier: Notifier = Depends(get_notifier),
) -> EscrowTrade:
    trade = consent.decline(db, trade_id, direction, resolve_actor(payload.actor, scope), payload.prompt_id)
    _notify(notifier, trade, f"{direction.value}_declined")
    return trade


# --- button callbacks --------------------------------------------------------


@actions_router.post("", response_model=ActionResult)
def handle_action(
    payload: CallbackAction,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(_bot_scope),
    transfer_client: TransferClient = Depends(get_transfer_client),
    notifier: Notifier = Depends(get_notifier),
    timers: TradeTimers = Depends(get_timers),
) -> ActionResult:
    action = actions.decode_action(payload.callback_data)
    ctx = actions.ActionContext(
        db=db,
        actor=resolve_actor(payload.actor, scope),
        transfer_client=transfer_client,
        notifier=notifier,
        timers=timers,
        prompt_id=payload.prompt_id,
        trade_id=payload.trade_id,
        group_id=payload.group_id,
    )
    outcome = anyio.from_thread.run(actions.dispatch, action, ctx)
    return ActionResult(
        action=outcome.action,
        trade=TradeRead.model_validate(outcome.trade) if outcome.trade is not None else None,
        detail=outcome.detail,
    )


__all__ = ["actions_router", "router"]
