"""Seed the room pool and a fallback vault for local development."""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

from p2pescrow.config import get_settings
from p2pescrow.db import get_sessionmaker, init_engine
from p2pescrow.schemas.room import RoomContract, RoomCreate, VaultContractCreate
from p2pescrow.services import rooms

DEV_VAULT = os.getenv("SEED_VAULT_ADDRESS", "0x" + "e" * 40)
ROOM_COUNT = int(os.getenv("SEED_ROOM_COUNT", "3"))


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    init_engine()
    session = get_sessionmaker()()

    try:
        for index in range(1, ROOM_COUNT + 1):
            rooms.add_room(
                session,
                RoomCreate(
                    group_id=f"-100{index:07d}",
                    title=f"Escrow room {index}",
                    contracts={"USDT_BSC": RoomContract(address=DEV_VAULT, network="BSC")},
                ),
                actor="script:seed",
            )
        rooms.register_vault(
            session,
            VaultContractCreate(token="USDC", network="BSC", address=DEV_VAULT),
            actor="script:seed",
        )
        print(f"Seeded {ROOM_COUNT} rooms.")
    finally:
        session.close()


if __name__ == "__main__":
    main()
