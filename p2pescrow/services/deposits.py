"""Deposit detection glue between the chain scanner and the amount ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from p2pescrow.models.escrow import EscrowStatus, EscrowTrade
from p2pescrow.services import ledger
from p2pescrow.services.collaborators import DepositSource
from p2pescrow.services.escrow import Actor, apply_funding, record_transition, reload
from p2pescrow.utils.errors import (
    ConfigurationError,
    InvalidStateError,
    NotParticipantError,
    SettlementInProgressError,
)

logger = logging.getLogger(__name__)

_FUNDABLE_STATUSES = (EscrowStatus.AWAITING_DEPOSIT, EscrowStatus.DEPOSITED)


@dataclass(frozen=True)
class DepositCheck:
    trade: EscrowTrade
    new_deposits: int
    balance: Decimal
    remaining: Decimal
    fully_funded: bool

    @property
    def partial(self) -> bool:
        """Funds arrived but fall short of the agreed quantity."""

        return self.balance > 0 and not self.fully_funded


def _ensure_fundable(trade: EscrowTrade) -> None:
    if trade.status not in _FUNDABLE_STATUSES:
        raise InvalidStateError(
            "This trade is not waiting for a deposit.", details={"status": trade.status.value}
        )
    if not trade.contract_address:
        raise ConfigurationError("No vault is assigned to this trade.")
    if trade.settlement_in_flight is not None:
        # Deposits wait until the settlement latch clears.
        raise SettlementInProgressError(
            "A settlement is in flight; check deposits again once it finishes.",
            details={"direction": trade.settlement_in_flight.value},
        )


def _summarise(trade: EscrowTrade, new_deposits: int) -> DepositCheck:
    return DepositCheck(
        trade=trade,
        new_deposits=new_deposits,
        balance=ledger.current_balance(trade),
        remaining=ledger.remaining_to_fund(trade),
        fully_funded=ledger.is_fully_funded(trade),
    )


async def check_deposits(db: Session, trade_id: str, source: DepositSource) -> DepositCheck:
    """Pull new vault transfers for the trade and fold them into its balance."""

    trade = reload(db, trade_id, for_update=True)
    _ensure_fundable(trade)

    scan = await source.fetch_transfers(
        token=trade.token or "",
        chain=trade.chain or "",
        vault_address=trade.contract_address or "",
        since_block=trade.last_checked_block or 0,
    )

    vault = (trade.contract_address or "").lower()
    new_deposits = 0
    for observed in scan.transfers:
        if observed.to_address.lower() != vault:
            continue
        if not observed.tx_hash:
            logger.warning("Transfer without hash skipped", extra={"trade_id": trade.trade_id})
            continue
        if not ledger.record_deposit(trade, observed.tx_hash, observed.value, observed.value_minor):
            continue
        new_deposits += 1
        if not trade.deposit_from_address:
            trade.deposit_from_address = observed.from_address
        record_transition(
            db,
            trade,
            actor="system:deposits",
            action="DEPOSIT_RECORDED",
            data={
                "tx_hash": observed.tx_hash,
                "amount": str(observed.value),
                "from_address": observed.from_address,
            },
            idempotency_key=observed.tx_hash,
        )

    trade.last_checked_block = max(trade.last_checked_block or 0, scan.last_block)
    if apply_funding(trade):
        record_transition(db, trade, actor="system:deposits", action="DEPOSITED")
    db.commit()
    db.refresh(trade)

    result = _summarise(trade, new_deposits)
    logger.info(
        "Deposit check finished",
        extra={
            "trade_id": trade.trade_id,
            "new_deposits": new_deposits,
            "balance": str(result.balance),
            "fully_funded": result.fully_funded,
        },
    )
    return result


def record_manual_deposit(
    db: Session, trade_id: str, actor: Actor, tx_hash: str, amount: Decimal
) -> DepositCheck:
    """Admin-verified deposit for chains the scanner cannot see; decimal ledger only."""

    if not actor.is_admin:
        raise NotParticipantError("Only an admin can verify a deposit manually.")
    trade = reload(db, trade_id, for_update=True)
    _ensure_fundable(trade)

    recorded = ledger.record_deposit(trade, tx_hash, amount, track_minor_units=False)
    if recorded:
        record_transition(
            db,
            trade,
            actor=actor.label,
            action="DEPOSIT_VERIFIED_MANUALLY",
            data={"tx_hash": tx_hash, "amount": str(amount)},
            idempotency_key=tx_hash,
        )
        if apply_funding(trade):
            record_transition(db, trade, actor=actor.label, action="DEPOSITED")
        db.commit()
        db.refresh(trade)
    return _summarise(trade, 1 if recorded else 0)


__all__ = ["DepositCheck", "check_deposits", "record_manual_deposit"]
