"""Amount ledger for the vault balance attributable to a trade.

The balance is held twice on :class:`EscrowTrade`: as ``Decimal`` token units
(``deposit_amount``, ``confirmed_amount`` and ``accumulated_deposit_amount``,
always equal) and as integer minor units in ``accumulated_deposit_amount_wei``.
When the minor-unit mirror is non-zero it is authoritative and the decimal
fields are re-derived from it after every mutation. Trades funded through paths
that never reported minor units keep a zero mirror and use decimal math alone.

Nothing in this module touches the database session; callers commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation, localcontext
from typing import Any

from p2pescrow.config import get_settings
from p2pescrow.models.escrow import EscrowTrade
from p2pescrow.services.fees import normalize_chain
from p2pescrow.utils.errors import (
    AmountTooSmallError,
    ExceedsBalanceError,
    NonPositiveAmountError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _to_decimal(value: Any) -> Decimal:
    """Convert an amount to ``Decimal`` without going through binary floats."""

    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError(f"Invalid token amount: {value!r}") from exc


def epsilon() -> Decimal:
    return Decimal(get_settings().SETTLEMENT_EPSILON)


def token_decimals(token: str | None, chain: str | None) -> int:
    settings = get_settings()
    key = f"{(token or '').upper()}_{normalize_chain(chain)}"
    return settings.TOKEN_DECIMALS.get(key, settings.DEFAULT_TOKEN_DECIMALS)


def to_minor_units(amount: Decimal, decimals: int) -> int:
    """Floor ``amount`` to integer minor units."""

    with localcontext() as ctx:
        ctx.prec = 80
        scaled = _to_decimal(amount).scaleb(decimals)
        return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def from_minor_units(minor: int, decimals: int) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(int(minor)).scaleb(-decimals)


def balance_minor(trade: EscrowTrade) -> int:
    raw = trade.accumulated_deposit_amount_wei or "0"
    return int(raw)


def current_balance(trade: EscrowTrade) -> Decimal:
    """Funds confirmed in the vault for this trade and not yet settled."""

    wei = balance_minor(trade)
    if wei > 0:
        return from_minor_units(wei, token_decimals(trade.token, trade.chain))
    return _to_decimal(trade.accumulated_deposit_amount or ZERO)


def _set_balance(trade: EscrowTrade, amount: Decimal, wei: int | None) -> None:
    trade.deposit_amount = amount
    trade.confirmed_amount = amount
    trade.accumulated_deposit_amount = amount
    if wei is not None:
        trade.accumulated_deposit_amount_wei = str(wei)


def known_hashes(trade: EscrowTrade) -> set[str]:
    hashes = {h.lower() for h in (trade.partial_transaction_hashes or []) if h}
    if trade.transaction_hash:
        hashes.add(trade.transaction_hash.lower())
    return hashes


def record_deposit(
    trade: EscrowTrade,
    tx_hash: str,
    amount: Decimal,
    amount_minor: int | None = None,
    *,
    track_minor_units: bool = True,
) -> bool:
    """Add one on-chain deposit to the balance.

    Returns ``False`` without touching the trade when ``tx_hash`` was already
    recorded as the primary or a partial deposit hash. Manual verifications pass
    ``track_minor_units=False`` so an empty trade stays on decimal math.
    """

    if not tx_hash:
        raise ValidationError("A deposit needs a transaction hash.")
    if tx_hash.lower() in known_hashes(trade):
        logger.info(
            "Duplicate deposit hash ignored",
            extra={"trade_id": trade.trade_id, "tx_hash": tx_hash},
        )
        return False

    amount = _to_decimal(amount)
    if amount <= ZERO:
        raise NonPositiveAmountError()

    balance = current_balance(trade)
    wei = balance_minor(trade)
    mirror_active = wei > 0 or (balance == ZERO and track_minor_units)
    new_wei = 0
    if mirror_active:
        decimals = token_decimals(trade.token, trade.chain)
        minor = amount_minor if amount_minor is not None else to_minor_units(amount, decimals)
        new_wei = wei + int(minor)

    if mirror_active and new_wei > 0:
        _set_balance(trade, from_minor_units(new_wei, token_decimals(trade.token, trade.chain)), new_wei)
    else:
        _set_balance(trade, balance + amount, None)

    trade.total_deposited_amount = _to_decimal(trade.total_deposited_amount or ZERO) + amount
    if not trade.transaction_hash:
        trade.transaction_hash = tx_hash
    else:
        trade.partial_transaction_hashes.append(tx_hash)
    return True


def is_fully_funded(trade: EscrowTrade) -> bool:
    """Whether the confirmed balance reached the agreed quantity (within epsilon)."""

    if trade.quantity is None:
        return False
    return current_balance(trade) >= _to_decimal(trade.quantity) - epsilon()


def remaining_to_fund(trade: EscrowTrade) -> Decimal:
    if trade.quantity is None:
        return ZERO
    return max(_to_decimal(trade.quantity) - current_balance(trade), ZERO)


def compute_net_payout(gross: Decimal, fee_rate_percent: Decimal, network_fee: Decimal) -> Decimal:
    """``gross - gross * fee% - network_fee``; no gross-up is applied."""

    gross = _to_decimal(gross)
    service = gross * _to_decimal(fee_rate_percent) / Decimal("100")
    net = gross - service - _to_decimal(network_fee)
    if net <= ZERO:
        raise AmountTooSmallError(
            details={"gross": str(gross), "service_fee": str(service), "network_fee": str(network_fee)}
        )
    return net


@dataclass(frozen=True)
class SettlementPlan:
    """A validated request to move ``amount`` out of the trade balance."""

    amount: Decimal
    amount_minor: int | None
    is_full: bool
    balance: Decimal


def plan_settlement(trade: EscrowTrade, requested: Decimal | None = None) -> SettlementPlan:
    """Validate a settlement amount against the balance without mutating anything.

    ``requested=None`` means the whole balance. Partial amounts are converted to
    minor units proportionally so the remainder stays exact at the integer level.
    """

    balance = current_balance(trade)
    eps = epsilon()
    amount = balance if requested is None else _to_decimal(requested)

    if amount <= ZERO:
        raise NonPositiveAmountError(details={"available": str(balance)})
    if amount > balance + eps:
        raise ExceedsBalanceError(
            f"Amount exceeds available balance ({balance}).",
            details={"available": str(balance), "requested": str(amount)},
        )

    is_full = abs(amount - balance) < eps
    if is_full:
        amount = balance

    wei = balance_minor(trade)
    amount_minor: int | None = None
    if wei > 0:
        if is_full:
            amount_minor = wei
        else:
            decimals = token_decimals(trade.token, trade.chain)
            amount_wei = to_minor_units(amount, decimals)
            balance_wei = to_minor_units(balance, decimals)
            amount_minor = wei * amount_wei // balance_wei if balance_wei else amount_wei

    return SettlementPlan(amount=amount, amount_minor=amount_minor, is_full=is_full, balance=balance)


def apply_settlement(trade: EscrowTrade, plan: SettlementPlan) -> Decimal:
    """Deduct a planned settlement from the balance and return the remainder."""

    if plan.is_full:
        _set_balance(trade, ZERO, 0)
        remaining = ZERO
    elif plan.amount_minor is not None:
        remaining_wei = max(balance_minor(trade) - plan.amount_minor, 0)
        remaining = from_minor_units(remaining_wei, token_decimals(trade.token, trade.chain))
        _set_balance(trade, remaining, remaining_wei)
    else:
        remaining = max(current_balance(trade) - plan.amount, ZERO)
        _set_balance(trade, remaining, None)

    trade.total_settled_amount = _to_decimal(trade.total_settled_amount or ZERO) + plan.amount
    return remaining


def settle(trade: EscrowTrade, requested: Decimal | None = None) -> SettlementPlan:
    plan = plan_settlement(trade, requested)
    apply_settlement(trade, plan)
    return plan


__all__ = [
    "SettlementPlan",
    "apply_settlement",
    "balance_minor",
    "compute_net_payout",
    "current_balance",
    "epsilon",
    "from_minor_units",
    "is_fully_funded",
    "known_hashes",
    "plan_settlement",
    "record_deposit",
    "remaining_to_fund",
    "settle",
    "to_minor_units",
    "token_decimals",
]
