"""Release/refund consent: per-direction approval flags, prompt staleness and the settlement latch."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from p2pescrow.models.escrow import (
    SETTLEMENT_ELIGIBLE_STATUSES,
    TERMINAL_STATUSES,
    EscrowTrade,
    SettlementDirection,
)
from p2pescrow.services import ledger
from p2pescrow.services.escrow import ADMIN, BUYER, SELLER, Actor, get_trade_or_404, record_transition, role_of
from p2pescrow.utils.errors import (
    AlreadySettledError,
    InvalidStateError,
    NotParticipantError,
    PromptExpiredError,
    SettlementInProgressError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsentDecision:
    trade: EscrowTrade
    direction: SettlementDirection
    role: str
    quorum_reached: bool


def quorum_reached(buyer: bool, seller: bool, admin: bool) -> bool:
    """Both parties, or an admin alone."""

    return bool((buyer and seller) or admin)


def flags(trade: EscrowTrade, direction: SettlementDirection) -> tuple[bool, bool, bool]:
    suffix = direction.value
    return (
        bool(getattr(trade, f"buyer_confirmed_{suffix}")),
        bool(getattr(trade, f"seller_confirmed_{suffix}")),
        bool(getattr(trade, f"admin_confirmed_{suffix}")),
    )


def trade_quorum_reached(trade: EscrowTrade, direction: SettlementDirection) -> bool:
    return quorum_reached(*flags(trade, direction))


def active_prompt(trade: EscrowTrade, direction: SettlementDirection) -> str | None:
    return getattr(trade, f"{direction.value}_prompt_id")


def pending_amount(trade: EscrowTrade, direction: SettlementDirection) -> Decimal | None:
    return getattr(trade, f"pending_{direction.value}_amount")


def round_hash(trade: EscrowTrade, direction: SettlementDirection) -> str | None:
    return getattr(trade, f"{direction.value}_transaction_hash")


def reset_flags(trade: EscrowTrade, direction: SettlementDirection, *, clear_request: bool = True) -> None:
    """Drop every approval for ``direction``; optionally forget its amount and prompt too."""

    suffix = direction.value
    setattr(trade, f"buyer_confirmed_{suffix}", False)
    setattr(trade, f"seller_confirmed_{suffix}", False)
    setattr(trade, f"admin_confirmed_{suffix}", False)
    if clear_request:
        setattr(trade, f"pending_{suffix}_amount", None)
        setattr(trade, f"{suffix}_prompt_id", None)


def ensure_prompt_current(trade: EscrowTrade, direction: SettlementDirection, prompt_id: str | None) -> None:
    current = active_prompt(trade, direction)
    if current is None or prompt_id != current:
        raise PromptExpiredError(details={"direction": direction.value})


def _require_role(trade: EscrowTrade, actor: Actor) -> str:
    role = role_of(trade, actor)
    if role is None:
        raise NotParticipantError()
    return role


def _ensure_open(trade: EscrowTrade) -> None:
    if trade.status in TERMINAL_STATUSES:
        raise AlreadySettledError()
    if trade.status not in SETTLEMENT_ELIGIBLE_STATUSES:
        raise InvalidStateError(
            "Funds must be deposited before a release or refund.",
            details={"status": trade.status.value},
        )
    if trade.settlement_in_flight is not None:
        raise SettlementInProgressError()


def open_request(
    db: Session,
    trade_id: str,
    direction: SettlementDirection,
    actor: Actor,
    *,
    amount: Decimal | None = None,
    prompt_id: str | None = None,
) -> EscrowTrade:
    """Start a new consent round for ``direction``.

    ``amount`` turns the round into a partial settlement. It is validated
    against the balance now and again by the orchestrator before transfer.
    """

    trade = get_trade_or_404(db, trade_id)
    role = _require_role(trade, actor)
    _ensure_open(trade)
    if ledger.current_balance(trade) <= 0:
        raise InvalidStateError("There is no balance left to settle.")

    pending = None
    if amount is not None:
        plan = ledger.plan_settlement(trade, amount)
        pending = None if plan.is_full else plan.amount

    suffix = direction.value
    reset_flags(trade, direction)
    setattr(trade, f"pending_{suffix}_amount", pending)
    setattr(trade, f"{suffix}_prompt_id", prompt_id or uuid4().hex)
    setattr(trade, f"{suffix}_transaction_hash", None)
    record_transition(
        db,
        trade,
        actor=actor.label,
        action=f"{suffix.upper()}_REQUESTED",
        data={"role": role, "amount": str(pending) if pending is not None else None},
    )
    db.commit()
    db.refresh(trade)
    logger.info(
        "Settlement consent requested",
        extra={"trade_id": trade.trade_id, "direction": suffix, "partial": pending is not None},
    )
    return trade


def confirm(
    db: Session,
    trade_id: str,
    direction: SettlementDirection,
    actor: Actor,
    prompt_id: str | None,
) -> ConsentDecision:
    """Record one approval click and report whether the quorum is now met."""

    trade = get_trade_or_404(db, trade_id)
    if trade.status in TERMINAL_STATUSES or round_hash(trade, direction):
        raise AlreadySettledError()
    ensure_prompt_current(trade, direction, prompt_id)
    role = _require_role(trade, actor)
    _ensure_open(trade)

    suffix = direction.value
    if role == ADMIN:
        trade_flag = f"admin_confirmed_{suffix}"
    elif role == BUYER:
        trade_flag = f"buyer_confirmed_{suffix}"
    else:
        trade_flag = f"seller_confirmed_{suffix}"
    setattr(trade, trade_flag, True)

    reached = trade_quorum_reached(trade, direction)
    record_transition(
        db,
        trade,
        actor=actor.label,
        action=f"{suffix.upper()}_CONFIRMED",
        data={"role": role, "quorum_reached": reached},
    )
    db.commit()
    db.refresh(trade)
    return ConsentDecision(trade=trade, direction=direction, role=role, quorum_reached=reached)


def decline(
    db: Session,
    trade_id: str,
    direction: SettlementDirection,
    actor: Actor,
    prompt_id: str | None,
) -> EscrowTrade:
    """Abandon the current round; the trade stays where it was."""

    trade = get_trade_or_404(db, trade_id)
    if trade.status in TERMINAL_STATUSES:
        raise AlreadySettledError()
    ensure_prompt_current(trade, direction, prompt_id)
    role = _require_role(trade, actor)
    if trade.settlement_in_flight is not None:
        raise SettlementInProgressError()

    reset_flags(trade, direction)
    record_transition(db, trade, actor=actor.label, action=f"{direction.value.upper()}_DECLINED", data={"role": role})
    db.commit()
    db.refresh(trade)
    logger.info("Settlement consent declined", extra={"trade_id": trade.trade_id, "direction": direction.value})
    return trade


def acquire_latch(db: Session, trade: EscrowTrade, direction: SettlementDirection) -> bool:
    """Claim the trade for one settlement; ``False`` when another one holds it."""

    result = db.execute(
        update(EscrowTrade)
        .where(EscrowTrade.id == trade.id, EscrowTrade.settlement_in_flight.is_(None))
        .values(settlement_in_flight=direction)
    )
    db.commit()
    return result.rowcount == 1


def release_latch(db: Session, trade: EscrowTrade) -> None:
    db.execute(
        update(EscrowTrade)
        .where(EscrowTrade.id == trade.id)
        .values(settlement_in_flight=None)
    )
    db.commit()


__all__ = [
    "ConsentDecision",
    "acquire_latch",
    "active_prompt",
    "confirm",
    "decline",
    "ensure_prompt_current",
    "flags",
    "open_request",
    "pending_amount",
    "quorum_reached",
    "release_latch",
    "reset_flags",
    "round_hash",
    "trade_quorum_reached",
]
