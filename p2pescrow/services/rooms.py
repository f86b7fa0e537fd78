"""Group room pool and vault contract resolution."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from p2pescrow.models.escrow import EscrowTrade
from p2pescrow.models.room import GroupRoom, RoomStatus, VaultContract
from p2pescrow.schemas.room import RoomCreate, VaultContractCreate
from p2pescrow.services.fees import normalize_chain
from p2pescrow.utils.audit import log_audit
from p2pescrow.utils.errors import InvalidStateError, NoRoomAvailableError, RoomNotFoundError
from p2pescrow.utils.time import utcnow

logger = logging.getLogger(__name__)


def add_room(db: Session, payload: RoomCreate, *, actor: str) -> GroupRoom:
    """Register a room in the pool, or update its fee and contracts if it exists."""

    room = db.scalars(select(GroupRoom).where(GroupRoom.group_id == payload.group_id)).first()
    contracts = {
        key.upper(): {"address": entry.address, "network": normalize_chain(entry.network)}
        for key, entry in payload.contracts.items()
    }
    if room is None:
        room = GroupRoom(group_id=payload.group_id, status=RoomStatus.AVAILABLE, contracts={})
        db.add(room)
    room.title = payload.title
    room.fee_percent = payload.fee_percent
    room.contracts = contracts
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="ROOM_REGISTERED",
        entity="GroupRoom",
        entity_id=room.id,
        data={"group_id": room.group_id, "fee_percent": str(room.fee_percent), "contracts": sorted(contracts)},
    )
    db.commit()
    db.refresh(room)
    logger.info("Room registered", extra={"group_id": room.group_id})
    return room


def remove_room(db: Session, group_id: str, *, actor: str) -> None:
    """Take a room out of the pool; refused while a trade is running in it."""

    room = _room_for(db, group_id)
    if room is None:
        raise RoomNotFoundError(details={"group_id": group_id})
    if room.status == RoomStatus.ASSIGNED:
        raise InvalidStateError(
            "The room hosts an active trade.",
            details={"group_id": group_id, "assigned_trade_id": room.assigned_trade_id},
        )

    log_audit(
        db,
        actor=actor,
        action="ROOM_REMOVED",
        entity="GroupRoom",
        entity_id=room.id,
        data={"group_id": room.group_id, "status": room.status.value},
    )
    db.delete(room)
    db.commit()
    logger.info("Room removed", extra={"group_id": group_id})


def list_rooms(db: Session, status: RoomStatus | None = None) -> list[GroupRoom]:
    stmt = select(GroupRoom).order_by(GroupRoom.id)
    if status is not None:
        stmt = stmt.where(GroupRoom.status == status)
    return list(db.scalars(stmt).all())


def register_vault(db: Session, payload: VaultContractCreate, *, actor: str) -> VaultContract:
    """Add a globally deployed vault to the fallback registry."""

    contract = VaultContract(
        name=payload.name,
        token=payload.token.upper(),
        network=normalize_chain(payload.network),
        address=payload.address,
        status="deployed",
    )
    db.add(contract)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action="VAULT_REGISTERED",
        entity="VaultContract",
        entity_id=contract.id,
        data={"token": contract.token, "network": contract.network, "address": contract.address},
    )
    db.commit()
    db.refresh(contract)
    return contract


def acquire_room(db: Session, trade_id: str) -> GroupRoom:
    """Assign the oldest available room to ``trade_id``.

    The caller commits; the room row stays locked until then on backends that
    support ``SKIP LOCKED``.
    """

    stmt = (
        select(GroupRoom)
        .where(GroupRoom.status == RoomStatus.AVAILABLE)
        .order_by(GroupRoom.id)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    room = db.scalars(stmt).first()
    if room is None:
        logger.warning("Room pool exhausted", extra={"trade_id": trade_id})
        raise NoRoomAvailableError()
    room.status = RoomStatus.ASSIGNED
    room.assigned_trade_id = trade_id
    room.assigned_at = utcnow()
    room.completed_at = None
    return room


def _room_for(db: Session, group_id: str) -> GroupRoom | None:
    return db.scalars(select(GroupRoom).where(GroupRoom.group_id == group_id)).first()


def mark_room_completed(db: Session, group_id: str, trade_id: str) -> GroupRoom | None:
    """Flag a room whose trade reached a terminal state; it is recycled later."""

    room = _room_for(db, group_id)
    if room is None or room.assigned_trade_id != trade_id:
        return None
    room.status = RoomStatus.COMPLETED
    room.completed_at = utcnow()
    return room


def release_room(db: Session, group_id: str, trade_id: str | None = None) -> GroupRoom | None:
    """Return a room to the pool.

    When ``trade_id`` is given the room is only released if it is still
    assigned to that trade, so a late timer cannot free a room in use again.
    """

    room = _room_for(db, group_id)
    if room is None:
        return None
    if trade_id is not None and room.assigned_trade_id != trade_id:
        logger.info(
            "Room no longer held by trade, not released",
            extra={"group_id": group_id, "trade_id": trade_id, "assigned": room.assigned_trade_id},
        )
        return None
    room.status = RoomStatus.AVAILABLE
    room.assigned_trade_id = None
    room.assigned_at = None
    if room.completed_at is None:
        room.completed_at = utcnow()
    logger.info("Room released", extra={"group_id": group_id, "trade_id": trade_id})
    return room


def resolve_vault_address(db: Session, trade: EscrowTrade) -> str | None:
    """Find the vault for the trade's token and chain.

    Lookup order: room contract under ``TOKEN_CHAIN``, room contract under
    ``TOKEN`` when its network matches, then the global vault registry.
    """

    token = (trade.token or "").upper()
    network = normalize_chain(trade.chain)
    room = _room_for(db, trade.group_id)
    if room is not None and room.contracts:
        entry = room.contracts.get(f"{token}_{network}")
        if entry is None:
            candidate = room.contracts.get(token)
            if candidate and normalize_chain(candidate.get("network")) == network:
                entry = candidate
        if entry and entry.get("address"):
            return entry["address"]

    contract = db.scalars(
        select(VaultContract)
        .where(
            VaultContract.name == "EscrowVault",
            VaultContract.token == token,
            VaultContract.network == network,
            VaultContract.status == "deployed",
        )
        .order_by(VaultContract.id.desc())
    ).first()
    if contract is not None:
        return contract.address
    return None


__all__ = [
    "acquire_room",
    "add_room",
    "list_rooms",
    "mark_room_completed",
    "register_vault",
    "remove_room",
    "release_room",
    "resolve_vault_address",
]
