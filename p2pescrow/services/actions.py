"""Button callbacks from the chat front-end.

Callback strings are decoded once into one of the action dataclasses below
and then dispatched by type. Handlers never look at the raw string again.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from p2pescrow.models.escrow import TERMINAL_STATUSES, EscrowTrade, SettlementDirection
from p2pescrow.services import consent, escrow, settlement
from p2pescrow.services.collaborators import Notifier, TransferClient, notify_safely
from p2pescrow.services.escrow import Actor
from p2pescrow.utils.errors import TradeNotFoundError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimRole:
    role: str


@dataclass(frozen=True)
class SelectChain:
    chain: str


@dataclass(frozen=True)
class SelectToken:
    token: str


@dataclass(frozen=True)
class ApproveDealSummary:
    pass


@dataclass(frozen=True)
class ContinuePartial:
    trade_id: str


@dataclass(frozen=True)
class PayRemainder:
    trade_id: str


@dataclass(frozen=True)
class FiatSent:
    trade_id: str


@dataclass(frozen=True)
class FiatReceived:
    trade_id: str
    outcome: str


@dataclass(frozen=True)
class ConfirmSettlement:
    trade_id: str
    direction: SettlementDirection


@dataclass(frozen=True)
class DeclineSettlement:
    trade_id: str
    direction: SettlementDirection


@dataclass(frozen=True)
class CloseTrade:
    trade_id: str


Action = Union[
    ClaimRole,
    SelectChain,
    SelectToken,
    ApproveDealSummary,
    ContinuePartial,
    PayRemainder,
    FiatSent,
    FiatReceived,
    ConfirmSettlement,
    DeclineSettlement,
    CloseTrade,
]

_RELEASE = SettlementDirection.RELEASE
_REFUND = SettlementDirection.REFUND

# First match wins, so longer prefixes come before the ones they contain.
_PATTERNS: list[tuple[re.Pattern[str], Callable[[re.Match[str]], Action]]] = [
    (re.compile(r"^select_role_(buyer|seller)$"), lambda m: ClaimRole(role=m.group(1))),
    (re.compile(r"^step[24]_select_chain_([A-Za-z0-9-]+)$"), lambda m: SelectChain(chain=m.group(1))),
    (re.compile(r"^step[34]_select_coin_([A-Za-z0-9]+)$"), lambda m: SelectToken(token=m.group(1))),
    (re.compile(r"^approve_deal_summary$"), lambda m: ApproveDealSummary()),
    (re.compile(r"^partial_continue_(\S+)$"), lambda m: ContinuePartial(trade_id=m.group(1))),
    (re.compile(r"^partial_pay_remaining_(\S+)$"), lambda m: PayRemainder(trade_id=m.group(1))),
    (re.compile(r"^fiat_sent_buyer_(\S+)$"), lambda m: FiatSent(trade_id=m.group(1))),
    (
        re.compile(r"^fiat_received_seller_partial_(\S+)$"),
        lambda m: FiatReceived(trade_id=m.group(1), outcome="partial"),
    ),
    (
        re.compile(r"^fiat_received_seller_(yes|no)_(\S+)$"),
        lambda m: FiatReceived(trade_id=m.group(2), outcome="full" if m.group(1) == "yes" else "none"),
    ),
    (
        re.compile(r"^(?:admin_)?(release|refund)_confirm_yes_(\S+)$"),
        lambda m: ConfirmSettlement(trade_id=m.group(2), direction=SettlementDirection(m.group(1))),
    ),
    (
        re.compile(r"^(?:admin_)?(release|refund)_confirm_no_(\S+)$"),
        lambda m: DeclineSettlement(trade_id=m.group(2), direction=SettlementDirection(m.group(1))),
    ),
    (re.compile(r"^close_trade_(\S+)$"), lambda m: CloseTrade(trade_id=m.group(1))),
]


def decode_action(callback_data: str) -> Action:
    """Parse a callback string into an action; unknown strings are a validation error."""

    data = (callback_data or "").strip()
    for pattern, build in _PATTERNS:
        match = pattern.match(data)
        if match:
            return build(match)
    raise ValidationError("Unknown action.", details={"callback_data": data})


def action_name(action: Action) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", type(action).__name__).lower()


@dataclass
class ActionContext:
    db: Session
    actor: Actor
    transfer_client: TransferClient
    notifier: Notifier | None = None
    timers: Any | None = None
    prompt_id: str | None = None
    trade_id: str | None = None
    group_id: str | None = None


@dataclass(frozen=True)
class ActionOutcome:
    action: str
    trade: EscrowTrade | None
    detail: dict[str, Any]


def _resolve_trade_id(action: Action, ctx: ActionContext) -> str:
    embedded = getattr(action, "trade_id", None)
    if embedded:
        return embedded
    if ctx.trade_id:
        return ctx.trade_id
    if ctx.group_id:
        trade = ctx.db.scalars(
            select(EscrowTrade)
            .where(EscrowTrade.group_id == ctx.group_id, EscrowTrade.status.not_in(list(TERMINAL_STATUSES)))
            .order_by(EscrowTrade.id.desc())
        ).first()
        if trade is not None:
            return trade.trade_id
    raise TradeNotFoundError("No active trade found for this action.")


async def _announce(
    ctx: ActionContext, outcome: ActionOutcome, event: str, payload: dict[str, Any] | None = None
) -> ActionOutcome:
    if outcome.trade is not None:
        await notify_safely(ctx.notifier, outcome.trade, event, payload)
    return outcome


async def _confirm(action: ConfirmSettlement, trade_id: str, ctx: ActionContext) -> ActionOutcome:
    decision = consent.confirm(ctx.db, trade_id, action.direction, ctx.actor, ctx.prompt_id)
    detail: dict[str, Any] = {"quorum_reached": decision.quorum_reached, "role": decision.role}
    if not decision.quorum_reached:
        pending = ActionOutcome("confirm_settlement", decision.trade, detail)
        return await _announce(ctx, pending, f"{action.direction.value}_confirmed", {"role": decision.role})

    outcome = await settlement.execute(
        ctx.db,
        trade_id,
        action.direction,
        ctx.prompt_id,
        transfer_client=ctx.transfer_client,
        notifier=ctx.notifier,
        timers=ctx.timers,
    )
    detail.update(
        {
            "transaction_hash": outcome.transaction_hash,
            "net_amount": str(outcome.net_amount),
            "is_full": outcome.is_full,
            "remaining": str(outcome.remaining),
        }
    )
    return ActionOutcome("confirm_settlement", outcome.trade, detail)


async def dispatch(action: Action, ctx: ActionContext) -> ActionOutcome:
    """Run the state machine operation for ``action`` and notify the room."""

    trade_id = _resolve_trade_id(action, ctx)
    db, actor = ctx.db, ctx.actor
    name = action_name(action)

    if isinstance(action, ClaimRole):
        trade = escrow.claim_role(db, trade_id, actor, action.role)
        return await _announce(ctx, ActionOutcome(name, trade, {}), "role_claimed", {"role": action.role})
    if isinstance(action, SelectChain):
        trade = escrow.select_chain(db, trade_id, actor, action.chain)
        return await _announce(ctx, ActionOutcome(name, trade, {}), "chain_selected", {"chain": trade.chain})
    if isinstance(action, SelectToken):
        trade = escrow.select_token(db, trade_id, actor, action.token)
        return await _announce(ctx, ActionOutcome(name, trade, {}), "token_selected", {"token": trade.token})
    if isinstance(action, ApproveDealSummary):
        trade = escrow.approve_deal_summary(db, trade_id, actor)
        outcome = await _announce(ctx, ActionOutcome(name, trade, {}), "summary_approved")
        if trade.contract_address:
            await _announce(ctx, outcome, "awaiting_deposit", {"contract_address": trade.contract_address})
        return outcome
    if isinstance(action, ContinuePartial):
        trade = escrow.continue_with_partial(db, trade_id, actor)
        return await _announce(ctx, ActionOutcome(name, trade, {}), "partial_accepted")
    if isinstance(action, PayRemainder):
        trade, remaining = escrow.request_remainder(db, trade_id, actor)
        detail = {"remaining": str(remaining)}
        return await _announce(ctx, ActionOutcome(name, trade, detail), "remainder_requested", detail)
    if isinstance(action, FiatSent):
        trade = escrow.confirm_fiat_sent(db, trade_id, actor)
        return await _announce(ctx, ActionOutcome(name, trade, {}), "fiat_sent")
    if isinstance(action, FiatReceived):
        trade = escrow.report_fiat_received(db, trade_id, actor, action.outcome)
        detail = {"outcome": action.outcome}
        event = "fiat_received" if action.outcome == "full" else "dispute_opened"
        return await _announce(ctx, ActionOutcome(name, trade, detail), event, detail)
    if isinstance(action, ConfirmSettlement):
        return await _confirm(action, trade_id, ctx)
    if isinstance(action, DeclineSettlement):
        trade = consent.decline(db, trade_id, action.direction, actor, ctx.prompt_id)
        outcome = ActionOutcome(name, trade, {"direction": action.direction.value})
        return await _announce(ctx, outcome, f"{action.direction.value}_declined")
    if isinstance(action, CloseTrade):
        trade = escrow.close_trade(db, trade_id, actor, timers=ctx.timers)
        return await _announce(ctx, ActionOutcome(name, trade, {}), "trade_closed")
    raise TypeError(f"Unhandled action {action!r}")


__all__ = [
    "Action",
    "ActionContext",
    "ActionOutcome",
    "ApproveDealSummary",
    "ClaimRole",
    "CloseTrade",
    "ConfirmSettlement",
    "ContinuePartial",
    "DeclineSettlement",
    "FiatReceived",
    "FiatSent",
    "PayRemainder",
    "SelectChain",
    "SelectToken",
    "action_name",
    "decode_action",
    "dispatch",
]
