"""Settlement orchestrator: turns a reached consent quorum into one vault transfer.

Order of operations, which is what keeps the ledger consistent on failure:

1. latch the trade (conditional UPDATE) and reload it from the database;
2. re-check terminal status, round hash, prompt and quorum on the fresh row;
3. plan the amount against the balance and compute the net payout;
4. call the transfer client exactly once, without retry;
5. only after a transfer hash comes back, lock and re-read the row, then
   update the ledger and the status against that fresh balance.

Any failure before step 5 leaves the trade as it was apart from the latch,
which is always released.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from p2pescrow.models.escrow import (
    SETTLEMENT_ELIGIBLE_STATUSES,
    TERMINAL_STATUSES,
    EscrowStatus,
    EscrowTrade,
    SettlementDirection,
)
from p2pescrow.services import consent, ledger
from p2pescrow.services.collaborators import (
    Notifier,
    TransferClient,
    VaultBalanceTooLow,
    notify_safely,
)
from p2pescrow.services.escrow import get_trade_or_404, record_transition, reload
from p2pescrow.services.rooms import mark_room_completed
from p2pescrow.utils.errors import (
    AlreadySettledError,
    ConfigurationError,
    EscrowError,
    InsufficientVaultBalanceError,
    InvalidStateError,
    QuorumNotReachedError,
    SettlementInProgressError,
    TransferFailedError,
)
from p2pescrow.utils.time import utcnow

if TYPE_CHECKING:  # pragma: no cover - hints only
    from p2pescrow.services.timers import TradeTimers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementOutcome:
    trade: EscrowTrade
    direction: SettlementDirection
    gross_amount: Decimal
    net_amount: Decimal
    transaction_hash: str
    is_full: bool
    remaining: Decimal


def destination_for(trade: EscrowTrade, direction: SettlementDirection) -> str | None:
    """Release pays the buyer; refund returns funds to the seller who deposited them."""

    if direction == SettlementDirection.RELEASE:
        return trade.buyer_address
    return trade.seller_address


def _revalidate(trade: EscrowTrade, direction: SettlementDirection, prompt_id: str | None) -> None:
    if trade.status in TERMINAL_STATUSES or consent.round_hash(trade, direction):
        raise AlreadySettledError()
    consent.ensure_prompt_current(trade, direction, prompt_id)
    if trade.status not in SETTLEMENT_ELIGIBLE_STATUSES:
        raise InvalidStateError(details={"status": trade.status.value})
    if not consent.trade_quorum_reached(trade, direction):
        raise QuorumNotReachedError()


async def _transfer(
    client: TransferClient,
    trade: EscrowTrade,
    destination: str,
    net: Decimal,
) -> str:
    decimals = ledger.token_decimals(trade.token, trade.chain)
    try:
        result = await client.transfer(
            token=trade.token or "",
            chain=trade.chain or "",
            vault_address=trade.contract_address or "",
            destination=destination,
            amount=net,
            amount_minor_override=ledger.to_minor_units(net, decimals),
        )
    except VaultBalanceTooLow as exc:
        raise InsufficientVaultBalanceError(available=exc.available, needed=exc.needed) from exc
    except EscrowError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Transfer client raised", extra={"trade_id": trade.trade_id})
        raise TransferFailedError() from exc

    if not result.success or not result.transaction_hash:
        raise TransferFailedError(details={"reason": result.error} if result.error else None)
    return result.transaction_hash


def _finalize(
    db: Session,
    trade_id: str,
    direction: SettlementDirection,
    planned: ledger.SettlementPlan,
    net: Decimal,
    tx_hash: str,
) -> tuple[EscrowTrade, ledger.SettlementPlan, Decimal]:
    # Deposits may have landed while the transfer was out; settle the sent
    # amount against the locked current row so they stay on the balance.
    trade = reload(db, trade_id, for_update=True)
    plan = ledger.plan_settlement(trade, planned.amount)
    if plan.is_full != planned.is_full:
        logger.info(
            "Balance moved during transfer, settlement downgraded to partial",
            extra={"trade_id": trade_id, "planned": str(planned.balance), "current": str(plan.balance)},
        )
    remaining = ledger.apply_settlement(trade, plan)
    suffix = direction.value
    getattr(trade, f"{suffix}_transaction_hashes").append(tx_hash)
    setattr(trade, f"{suffix}_transaction_hash", tx_hash)

    for each in SettlementDirection:
        consent.reset_flags(trade, each)
    if plan.is_full:
        trade.status = (
            EscrowStatus.COMPLETED if direction == SettlementDirection.RELEASE else EscrowStatus.REFUNDED
        )
        trade.completed_at = utcnow()
    trade.settlement_in_flight = None

    record_transition(
        db,
        trade,
        actor="system:settlement",
        action="RELEASED" if direction == SettlementDirection.RELEASE else "REFUNDED",
        data={
            "gross": str(plan.amount),
            "net": str(net),
            "full": plan.is_full,
            "remaining": str(remaining),
            "tx_hash": tx_hash,
        },
        idempotency_key=tx_hash,
    )
    if plan.is_full:
        mark_room_completed(db, trade.group_id, trade.trade_id)
    db.commit()
    db.refresh(trade)
    return trade, plan, remaining


async def execute(
    db: Session,
    trade_id: str,
    direction: SettlementDirection,
    prompt_id: str | None,
    *,
    transfer_client: TransferClient,
    notifier: Notifier | None = None,
    timers: TradeTimers | None = None,
) -> SettlementOutcome:
    """Run one settlement for the active consent round of ``direction``."""

    trade = get_trade_or_404(db, trade_id)
    if trade.status in TERMINAL_STATUSES:
        raise AlreadySettledError()
    if not consent.acquire_latch(db, trade, direction):
        logger.warning(
            "Settlement refused, another one is in flight",
            extra={"trade_id": trade_id, "direction": direction.value},
        )
        raise SettlementInProgressError()

    finalized = False
    try:
        trade = reload(db, trade_id)
        _revalidate(trade, direction, prompt_id)

        plan = ledger.plan_settlement(trade, consent.pending_amount(trade, direction))
        net = ledger.compute_net_payout(plan.amount, trade.fee_rate, trade.network_fee)
        destination = destination_for(trade, direction)
        if not destination or not trade.contract_address:
            raise ConfigurationError("Payout address or vault is missing for this trade.")

        logger.info(
            "Settlement transfer starting",
            extra={
                "trade_id": trade_id,
                "direction": direction.value,
                "gross": str(plan.amount),
                "net": str(net),
                "full": plan.is_full,
            },
        )
        tx_hash = await _transfer(transfer_client, trade, destination, net)
        trade, plan, remaining = _finalize(db, trade_id, direction, plan, net, tx_hash)
        finalized = True
    except EscrowError as exc:
        logger.warning(
            "Settlement not executed",
            extra={"trade_id": trade_id, "direction": direction.value, "code": exc.code},
        )
        if isinstance(exc, TransferFailedError):
            await notify_safely(notifier, trade, "settlement_failed", {"direction": direction.value, "code": exc.code})
        raise
    finally:
        if not finalized:
            consent.release_latch(db, trade)

    logger.info(
        "Settlement completed",
        extra={"trade_id": trade_id, "direction": direction.value, "tx_hash": tx_hash, "full": plan.is_full},
    )
    await notify_safely(
        notifier,
        trade,
        "settlement_completed",
        {"direction": direction.value, "net": str(net), "tx_hash": tx_hash, "remaining": str(remaining)},
    )
    if plan.is_full and timers is not None:
        timers.schedule_room_recycle(trade.trade_id, trade.group_id)

    return SettlementOutcome(
        trade=trade,
        direction=direction,
        gross_amount=plan.amount,
        net_amount=net,
        transaction_hash=tx_hash,
        is_full=plan.is_full,
        remaining=remaining,
    )


__all__ = ["SettlementOutcome", "destination_for", "execute"]
