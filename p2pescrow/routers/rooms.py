"""Admin endpoints to manage the room pool and the vault registry."""
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from p2pescrow.db import get_db
from p2pescrow.models.room import GroupRoom, RoomStatus, VaultContract
from p2pescrow.schemas.room import RoomCreate, RoomRead, VaultContractCreate, VaultContractRead
from p2pescrow.security import ApiScope, require_scope
from p2pescrow.services import rooms as rooms_service

router = APIRouter(prefix="/rooms", tags=["rooms"])


@router.post("", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
def add_room(
    payload: RoomCreate,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(require_scope({ApiScope.admin})),
) -> GroupRoom:
    """Add a group room to the pool, or update its fee and contracts."""

    return rooms_service.add_room(db, payload, actor=f"apikey:{scope.value}")


@router.get("", response_model=list[RoomRead])
def list_rooms(
    room_status: RoomStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(require_scope({ApiScope.admin})),
) -> list[GroupRoom]:
    return rooms_service.list_rooms(db, room_status)


@router.delete("/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_room(
    group_id: str,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(require_scope({ApiScope.admin})),
) -> Response:
    rooms_service.remove_room(db, group_id, actor=f"apikey:{scope.value}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/vaults", response_model=VaultContractRead, status_code=status.HTTP_201_CREATED)
def register_vault(
    payload: VaultContractCreate,
    db: Session = Depends(get_db),
    scope: ApiScope = Depends(require_scope({ApiScope.admin})),
) -> VaultContract:
    return rooms_service.register_vault(db, payload, actor=f"apikey:{scope.value}")
