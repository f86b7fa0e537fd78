"""Escrow state machine: trade creation, negotiation steps and funding progression.

Every transition re-reads the trade, checks the actor and the recorded step or
status, mutates, then writes an ``EscrowEvent`` and an ``AuditLog`` row in the
same commit. A button press that targets a step the trade already left is
refused with ``WrongStepError`` rather than applied twice.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from p2pescrow.config import DEFAULT_CHAIN, get_settings
from p2pescrow.models.escrow import (
    TERMINAL_STATUSES,
    EscrowEvent,
    EscrowStatus,
    EscrowTrade,
    TradeCounter,
    TradeDetailsStep,
)
from p2pescrow.schemas.trade import TradeCreate
from p2pescrow.services import fees, ledger
from p2pescrow.services.rooms import acquire_room, release_room, resolve_vault_address
from p2pescrow.utils.audit import log_audit
from p2pescrow.utils.errors import (
    ConfigurationError,
    InvalidStateError,
    NonPositiveAmountError,
    NotParticipantError,
    RoleConflictError,
    SelfDealingError,
    TradeNotFoundError,
    ValidationError,
    WrongStepError,
)
from p2pescrow.utils.time import utcnow

if TYPE_CHECKING:  # pragma: no cover - hints only
    from p2pescrow.services.timers import TradeTimers

logger = logging.getLogger(__name__)

BUYER = "buyer"
SELLER = "seller"
ADMIN = "admin"

_ADDRESS_PATTERNS = {
    "BSC": re.compile(r"^0x[0-9a-fA-F]{40}$"),
    "ETH": re.compile(r"^0x[0-9a-fA-F]{40}$"),
    "POLYGON": re.compile(r"^0x[0-9a-fA-F]{40}$"),
    "TRON": re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$"),
}

# Statuses in which no funds can have reached the vault yet.
_PRE_FUNDING_STATUSES = frozenset(
    {EscrowStatus.DRAFT, EscrowStatus.AWAITING_DETAILS, EscrowStatus.AWAITING_DEPOSIT}
)


@dataclass(frozen=True)
class Actor:
    """The chat user behind a request. ``is_admin`` is decided at the API edge."""

    user_id: int
    username: str | None = None
    is_admin: bool = False

    @property
    def label(self) -> str:
        return f"{'admin' if self.is_admin else 'user'}:{self.user_id}"


def normalize_username(username: str | None) -> str | None:
    if not username:
        return None
    return username.strip().lstrip("@").lower() or None


def party_role(trade: EscrowTrade, actor: Actor) -> str | None:
    """Return ``buyer`` or ``seller`` for a party of the trade, else ``None``."""

    if trade.buyer_id is not None and actor.user_id == trade.buyer_id:
        return BUYER
    if trade.seller_id is not None and actor.user_id == trade.seller_id:
        return SELLER
    return None


def role_of(trade: EscrowTrade, actor: Actor) -> str | None:
    """Like :func:`party_role`, falling back to ``admin`` for admins who are not parties."""

    role = party_role(trade, actor)
    if role is None and actor.is_admin:
        return ADMIN
    return role


def is_invited(trade: EscrowTrade, actor: Actor) -> bool:
    if actor.user_id in (trade.allowed_user_ids or []):
        return True
    username = normalize_username(actor.username)
    return bool(username) and username in (trade.allowed_usernames or [])


def get_trade_or_404(db: Session, trade_id: str) -> EscrowTrade:
    trade = db.scalars(select(EscrowTrade).where(EscrowTrade.trade_id == trade_id)).first()
    if trade is None:
        raise TradeNotFoundError(details={"trade_id": trade_id})
    return trade


def reload(db: Session, trade_id: str, *, for_update: bool = False) -> EscrowTrade:
    """Fetch the trade again, overwriting any state cached in the session.

    ``for_update`` holds a row lock until the caller commits.
    """

    stmt = (
        select(EscrowTrade)
        .where(EscrowTrade.trade_id == trade_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    trade = db.scalars(stmt).first()
    if trade is None:
        raise TradeNotFoundError(details={"trade_id": trade_id})
    return trade


def record_transition(
    db: Session,
    trade: EscrowTrade,
    *,
    actor: str,
    action: str,
    data: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> None:
    """Append a timeline event and an audit row; the caller commits."""

    payload = {"status": trade.status.value, **(data or {})}
    db.add(
        EscrowEvent(
            trade_pk=trade.id,
            kind=action,
            idempotency_key=idempotency_key,
            data_json=payload,
            at=utcnow(),
        )
    )
    log_audit(
        db,
        actor=actor,
        action=action,
        entity="EscrowTrade",
        entity_id=trade.id,
        data={"trade_id": trade.trade_id, **payload},
    )


def _next_trade_id(db: Session) -> str:
    counter = db.scalars(
        select(TradeCounter).where(TradeCounter.name == "trade").with_for_update()
    ).first()
    if counter is None:
        counter = TradeCounter(name="trade", seq=0)
        db.add(counter)
    counter.seq += 1
    db.flush()
    return f"{get_settings().TRADE_ID_PREFIX}{counter.seq}"


def _require_step(trade: EscrowTrade, step: TradeDetailsStep) -> None:
    if trade.status != EscrowStatus.AWAITING_DETAILS or trade.trade_details_step != step:
        current = trade.trade_details_step.value if trade.trade_details_step else trade.status.value
        raise WrongStepError(details={"expected": step.value, "current": current})


def _require_party(trade: EscrowTrade, actor: Actor, *roles: str) -> str:
    role = party_role(trade, actor)
    if role is None or role not in roles:
        allowed = " or ".join(roles)
        raise NotParticipantError(f"Only the {allowed} can do this.")
    return role


def _require_status(trade: EscrowTrade, *statuses: EscrowStatus) -> None:
    if trade.status not in statuses:
        raise InvalidStateError(
            details={"status": trade.status.value, "allowed": [s.value for s in statuses]}
        )


# --- creation & joining ------------------------------------------------------


def create_trade(db: Session, payload: TradeCreate, *, timers: TradeTimers | None = None) -> EscrowTrade:
    """Open a draft trade in a free room with the fee rate locked in."""

    creator = payload.creator
    creator_username = normalize_username(creator.username)
    counterparty_username = normalize_username(payload.counterparty_username)
    if payload.counterparty_id is not None and payload.counterparty_id == creator.user_id:
        raise SelfDealingError()
    if counterparty_username and counterparty_username == creator_username:
        raise SelfDealingError()

    trade_id = _next_trade_id(db)
    room = acquire_room(db, trade_id)

    if room.fee_percent is not None:
        fee_rate = Decimal(room.fee_percent)
    else:
        fee_rate = fees.service_fee(payload.creator_has_bio_tag, payload.counterparty_has_bio_tag)
    has_bio_tag = (
        payload.creator_has_bio_tag
        or payload.counterparty_has_bio_tag
        or fees.has_bio_tag_for_fee_rate(fee_rate)
    )

    allowed_ids = [creator.user_id]
    if payload.counterparty_id is not None:
        allowed_ids.append(payload.counterparty_id)
    allowed_usernames = [name for name in (creator_username, counterparty_username) if name]

    trade = EscrowTrade(
        trade_id=trade_id,
        group_id=room.group_id,
        creator_id=creator.user_id,
        creator_username=creator.username,
        allowed_user_ids=allowed_ids,
        allowed_usernames=allowed_usernames,
        joined_user_ids=[],
        status=EscrowStatus.DRAFT,
        fee_rate=fee_rate,
        network_fee=fees.network_fee(DEFAULT_CHAIN, has_bio_tag),
        has_bio_tag=has_bio_tag,
    )
    db.add(trade)
    db.flush()
    record_transition(
        db,
        trade,
        actor=f"user:{creator.user_id}",
        action="TRADE_CREATED",
        data={"group_id": room.group_id, "fee_rate": str(fee_rate), "network_fee": str(trade.network_fee)},
    )
    db.commit()
    db.refresh(trade)
    logger.info("Trade created", extra={"trade_id": trade.trade_id, "group_id": trade.group_id})

    if timers is not None:
        timers.schedule_invite_timeout(trade.trade_id)
    return trade


def join_room(
    db: Session, trade_id: str, actor: Actor, *, timers: TradeTimers | None = None
) -> EscrowTrade:
    trade = get_trade_or_404(db, trade_id)
    if not is_invited(trade, actor):
        if actor.is_admin:
            return trade
        raise NotParticipantError("You were not invited to this trade.")
    if trade.status != EscrowStatus.DRAFT:
        return trade

    if actor.user_id not in trade.allowed_user_ids:
        trade.allowed_user_ids.append(actor.user_id)
    if actor.user_id not in trade.joined_user_ids:
        trade.joined_user_ids.append(actor.user_id)

    both_joined = len(set(trade.joined_user_ids)) >= 2
    if both_joined:
        trade.status = EscrowStatus.AWAITING_DETAILS
        trade.trade_details_step = TradeDetailsStep.ROLE_SELECTION
    record_transition(db, trade, actor=actor.label, action="PARTICIPANT_JOINED", data={"user_id": actor.user_id})
    db.commit()
    db.refresh(trade)

    if both_joined and timers is not None:
        timers.cancel_invite_timeout(trade.trade_id)
    return trade


# --- negotiation -------------------------------------------------------------


def claim_role(db: Session, trade_id: str, actor: Actor, role: str) -> EscrowTrade:
    trade = get_trade_or_404(db, trade_id)
    _require_step(trade, TradeDetailsStep.ROLE_SELECTION)
    if not is_invited(trade, actor):
        raise NotParticipantError("Only invited participants can pick a role.")
    if role not in (BUYER, SELLER):
        raise ValidationError(f"Unknown role {role!r}.")

    other = SELLER if role == BUYER else BUYER
    holder_id = trade.buyer_id if role == BUYER else trade.seller_id
    other_id = trade.seller_id if role == BUYER else trade.buyer_id

    if holder_id == actor.user_id:
        return trade
    if other_id == actor.user_id:
        raise RoleConflictError(f"You are already the {other}.")
    if holder_id is not None:
        raise RoleConflictError(f"The {role} role is already taken.")

    if role == BUYER:
        trade.buyer_id = actor.user_id
        trade.buyer_username = actor.username
    else:
        trade.seller_id = actor.user_id
        trade.seller_username = actor.username

    if trade.buyer_id is not None and trade.seller_id is not None:
        trade.trade_details_step = TradeDetailsStep.CHAIN_SELECTION
    record_transition(db, trade, actor=actor.label, action="ROLE_CLAIMED", data={"role": role})
    db.commit()
    db.refresh(trade)
    logger.info("Role claimed", extra={"trade_id": trade.trade_id, "role": role})
    return trade


def select_chain(db: Session, trade_id: str, actor: Actor, chain: str) -> EscrowTrade:
    trade = get_trade_or_404(db, trade_id)
    _require_step(trade, TradeDetailsStep.CHAIN_SELECTION)
    _require_party(trade, actor, BUYER, SELLER)

    canonical = fees.normalize_chain(chain)
    if canonical not in get_settings().SUPPORTED_TOKENS:
        raise ValidationError(f"Chain {chain} is not supported.")
    trade.chain = canonical
    trade.network_fee = fees.network_fee(canonical, trade.has_bio_tag)
    trade.trade_details_step = TradeDetailsStep.TOKEN_SELECTION
    record_transition(
        db, trade, actor=actor.label, action="CHAIN_SELECTED",
        data={"chain": canonical, "network_fee": str(trade.network_fee)},
    )
    db.commit()
    db.refresh(trade)
    return trade


def select_token(db: Session, trade_id: str, actor: Actor, token: str) -> EscrowTrade:
    trade = get_trade_or_404(db, trade_id)
    _require_step(trade, TradeDetailsStep.TOKEN_SELECTION)
    _require_party(trade, actor, BUYER, SELLER)

    symbol = token.strip().upper()
    supported = get_settings().SUPPORTED_TOKENS.get(fees.normalize_chain(trade.chain), [])
    if symbol not in supported:
        raise ValidationError(
            f"{symbol} is not available on {trade.chain}.", details={"supported": supported}
        )
    trade.token = symbol
    trade.network_fee = fees.network_fee(trade.chain, trade.has_bio_tag)
    trade.trade_details_step = TradeDetailsStep.AMOUNT_ENTRY
    record_transition(
        db, trade, actor=actor.label, action="TOKEN_SELECTED",
        data={"token": symbol, "network_fee": str(trade.network_fee)},
    )
    db.commit()
    db.refresh(trade)
    return trade


def enter_amount(
    db: Session,
    trade_id: str,
    actor: Actor,
    quantity: Decimal,
    *,
    rate: Decimal | None = None,
    payment_method: str | None = None,
) -> EscrowTrade:
    trade = get_trade_or_404(db, trade_id)
    _require_step(trade, TradeDetailsStep.AMOUNT_ENTRY)
    _require_party(trade, actor, BUYER, SELLER)

    quantity = Decimal(str(quantity))
    if quantity <= 0:
        raise NonPositiveAmountError()
    if rate is not None and Decimal(str(rate)) <= 0:
        raise ValidationError("Rate must be greater than 0.")

    trade.quantity = quantity
    trade.rate = rate
    trade.payment_method = payment_method
    trade.trade_details_step = TradeDetailsStep.BUYER_ADDRESS
    record_transition(
        db, trade, actor=actor.label, action="AMOUNT_ENTERED",
        data={"quantity": str(quantity), "rate": str(rate) if rate is not None else None},
    )
    db.commit()
    db.refresh(trade)
    return trade


def _validate_address(chain: str | None, address: str) -> str:
    cleaned = address.strip()
    pattern = _ADDRESS_PATTERNS.get(fees.normalize_chain(chain))
    if not cleaned or (pattern is not None and not pattern.match(cleaned)):
        raise ValidationError(f"That is not a valid {chain} address.")
    return cleaned


def enter_address(db: Session, trade_id: str, actor: Actor, address: str) -> EscrowTrade:
    """Store the payout address for whichever party the current step asks for."""

    trade = get_trade_or_404(db, trade_id)
    if trade.trade_details_step == TradeDetailsStep.SELLER_ADDRESS:
        step, role = TradeDetailsStep.SELLER_ADDRESS, SELLER
    else:
        step, role = TradeDetailsStep.BUYER_ADDRESS, BUYER
    _require_step(trade, step)
    _require_party(trade, actor, role)

    cleaned = _validate_address(trade.chain, address)
    if role == BUYER:
        trade.buyer_address = cleaned
        trade.trade_details_step = TradeDetailsStep.SELLER_ADDRESS
    else:
        trade.seller_address = cleaned
        trade.trade_details_step = TradeDetailsStep.DEAL_SUMMARY
        trade.buyer_approved = False
        trade.seller_approved = False
    record_transition(
        db, trade, actor=actor.label, action="ADDRESS_ENTERED",
        data={"role": role, "address": cleaned},
    )
    db.commit()
    db.refresh(trade)
    return trade


def approve_deal_summary(db: Session, trade_id: str, actor: Actor) -> EscrowTrade:
    """Record one party's approval; on the second, resolve the vault and await the deposit."""

    trade = get_trade_or_404(db, trade_id)
    _require_step(trade, TradeDetailsStep.DEAL_SUMMARY)
    role = _require_party(trade, actor, BUYER, SELLER)

    if role == BUYER:
        trade.buyer_approved = True
    else:
        trade.seller_approved = True
    record_transition(db, trade, actor=actor.label, action="DEAL_SUMMARY_APPROVED", data={"role": role})

    if not (trade.buyer_approved and trade.seller_approved):
        db.commit()
        db.refresh(trade)
        return trade

    if trade.buyer_id is None or trade.seller_id is None:
        db.commit()
        raise InvalidStateError("Both roles must be assigned before the deposit step.")

    vault = resolve_vault_address(db, trade)
    if vault is None:
        record_transition(
            db, trade, actor="system", action="VAULT_MISSING",
            data={"token": trade.token, "chain": trade.chain},
        )
        db.commit()
        logger.error(
            "No vault configured for trade",
            extra={"trade_id": trade.trade_id, "token": trade.token, "chain": trade.chain},
        )
        raise ConfigurationError(
            f"No escrow vault is configured for {trade.token} on {trade.chain}. An admin must reset this trade.",
            details={"token": trade.token, "chain": trade.chain},
        )

    trade.contract_address = vault
    trade.status = EscrowStatus.AWAITING_DEPOSIT
    trade.trade_details_step = None
    record_transition(db, trade, actor=actor.label, action="AWAITING_DEPOSIT", data={"contract_address": vault})
    db.commit()
    db.refresh(trade)
    logger.info("Trade awaiting deposit", extra={"trade_id": trade.trade_id})
    return trade


# --- funding -----------------------------------------------------------------


def apply_funding(trade: EscrowTrade) -> bool:
    """Move an awaiting trade to ``deposited`` once the agreed quantity is in the vault."""

    if trade.status == EscrowStatus.AWAITING_DEPOSIT and ledger.is_fully_funded(trade):
        trade.status = EscrowStatus.DEPOSITED
        return True
    return False


def continue_with_partial(db: Session, trade_id: str, actor: Actor) -> EscrowTrade:
    """Seller accepts a short deposit as the trade amount."""

    trade = get_trade_or_404(db, trade_id)
    _require_party(trade, actor, SELLER)
    if trade.status == EscrowStatus.DEPOSITED:
        return trade
    _require_status(trade, EscrowStatus.AWAITING_DEPOSIT)
    balance = ledger.current_balance(trade)
    if balance <= 0:
        raise InvalidStateError("No deposit has been received yet.")

    trade.status = EscrowStatus.DEPOSITED
    record_transition(db, trade, actor=actor.label, action="PARTIAL_ACCEPTED", data={"balance": str(balance)})
    db.commit()
    db.refresh(trade)
    return trade


def request_remainder(db: Session, trade_id: str, actor: Actor) -> tuple[EscrowTrade, Decimal]:
    """Seller asks the buyer to top up; the trade keeps waiting for the deposit."""

    trade = get_trade_or_404(db, trade_id)
    _require_party(trade, actor, SELLER)
    _require_status(trade, EscrowStatus.AWAITING_DEPOSIT)
    remaining = ledger.remaining_to_fund(trade)
    record_transition(db, trade, actor=actor.label, action="REMAINDER_REQUESTED", data={"remaining": str(remaining)})
    db.commit()
    db.refresh(trade)
    return trade, remaining


# --- fiat leg ----------------------------------------------------------------


def confirm_fiat_sent(db: Session, trade_id: str, actor: Actor) -> EscrowTrade:
    trade = get_trade_or_404(db, trade_id)
    _require_party(trade, actor, BUYER)
    if trade.status == EscrowStatus.IN_FIAT_TRANSFER and trade.buyer_sent_fiat:
        return trade
    _require_status(trade, EscrowStatus.DEPOSITED)

    trade.status = EscrowStatus.IN_FIAT_TRANSFER
    trade.buyer_sent_fiat = True
    record_transition(db, trade, actor=actor.label, action="FIAT_SENT")
    db.commit()
    db.refresh(trade)
    return trade


def report_fiat_received(db: Session, trade_id: str, actor: Actor, outcome: str) -> EscrowTrade:
    """Seller reports ``full``, ``partial`` or ``none``; anything short of full opens a dispute."""

    trade = get_trade_or_404(db, trade_id)
    _require_party(trade, actor, SELLER)
    _require_status(trade, EscrowStatus.IN_FIAT_TRANSFER)
    if outcome not in ("full", "partial", "none"):
        raise ValidationError(f"Unknown fiat outcome {outcome!r}.")

    if outcome == "full":
        trade.status = EscrowStatus.READY_TO_RELEASE
        trade.seller_received_fiat = True
    else:
        trade.status = EscrowStatus.DISPUTED
        trade.seller_received_fiat = False
    record_transition(db, trade, actor=actor.label, action="FIAT_RECEIVED_REPORTED", data={"outcome": outcome})
    db.commit()
    db.refresh(trade)
    logger.info("Fiat receipt reported", extra={"trade_id": trade.trade_id, "outcome": outcome})
    return trade


# --- teardown ----------------------------------------------------------------


def has_funds_history(trade: EscrowTrade) -> bool:
    return bool(trade.transaction_hash) or ledger.current_balance(trade) > 0


def cancel_trade(
    db: Session, trade_id: str, actor: Actor, *, timers: TradeTimers | None = None
) -> EscrowTrade:
    """Admin reset: delete a trade that never received funds and free its room.

    Returns the deleted, now detached, trade.
    """

    if not actor.is_admin:
        raise NotParticipantError("Only an admin can reset a trade.")
    trade = get_trade_or_404(db, trade_id)
    if trade.status not in _PRE_FUNDING_STATUSES or has_funds_history(trade):
        raise InvalidStateError("This trade has received funds; settle it with a refund instead.")

    log_audit(
        db,
        actor=actor.label,
        action="TRADE_RESET",
        entity="EscrowTrade",
        entity_id=trade.id,
        data={"trade_id": trade.trade_id, "status": trade.status.value},
    )
    release_room(db, trade.group_id, trade.trade_id)
    db.delete(trade)
    db.commit()
    logger.info("Trade reset by admin", extra={"trade_id": trade_id})

    if timers is not None:
        timers.cancel(trade_id)
    return trade


def close_trade(
    db: Session, trade_id: str, actor: Actor, *, timers: TradeTimers | None = None
) -> EscrowTrade:
    """Free the room of a finished trade without waiting for the recycle timer."""

    trade = get_trade_or_404(db, trade_id)
    if role_of(trade, actor) is None:
        raise NotParticipantError()
    if trade.status not in TERMINAL_STATUSES:
        raise InvalidStateError("Only completed or refunded trades can be closed.")

    release_room(db, trade.group_id, trade.trade_id)
    record_transition(db, trade, actor=actor.label, action="TRADE_CLOSED")
    db.commit()
    db.refresh(trade)

    if timers is not None:
        timers.cancel(trade.trade_id)
    return trade


__all__ = [
    "ADMIN",
    "Actor",
    "BUYER",
    "SELLER",
    "apply_funding",
    "approve_deal_summary",
    "cancel_trade",
    "claim_role",
    "close_trade",
    "confirm_fiat_sent",
    "continue_with_partial",
    "create_trade",
    "enter_address",
    "enter_amount",
    "get_trade_or_404",
    "has_funds_history",
    "is_invited",
    "join_room",
    "normalize_username",
    "party_role",
    "record_transition",
    "reload",
    "report_fiat_received",
    "request_remainder",
    "role_of",
    "select_chain",
    "select_token",
]
