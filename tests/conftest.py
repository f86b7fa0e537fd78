"""Test configuration."""
import os
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import nullcontext
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# --- Default env for the test run
os.environ.setdefault("DATABASE_URL", "sqlite:///./p2pescrow_test.db")
os.environ.setdefault("API_KEY", "test-bot-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("ADMIN_USER_IDS", "[900]")
os.environ.setdefault("P2P_ENV", "test")
os.environ.setdefault("P2P_SCHEDULER_ENABLED", "0")

from p2pescrow.main import app  # noqa: E402
from p2pescrow.db import get_db  # noqa: E402
from p2pescrow.models import EscrowStatus, EscrowTrade, GroupRoom, RoomStatus  # noqa: E402
from p2pescrow.services import ledger  # noqa: E402
from p2pescrow.services.collaborators import (  # noqa: E402
    InMemoryVault,
    get_deposit_source,
    get_notifier,
    get_transfer_client,
)
from p2pescrow.services.escrow import Actor  # noqa: E402
from p2pescrow.services.timers import TradeTimers, get_timers  # noqa: E402

DB_PATH = Path("./p2pescrow_test.db")

BUYER_ID = 101
SELLER_ID = 202
ADMIN_ID = 900
VAULT = "0x" + "a" * 40
BUYER_ADDRESS = "0x" + "b" * 40
SELLER_ADDRESS = "0x" + "c" * 40


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- Fresh database file for the session, schema built by Alembic only
if DB_PATH.exists():
    DB_PATH.unlink()

engine = create_engine(
    os.environ["DATABASE_URL"],
    connect_args={"check_same_thread": False},
    future=True,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False,
                                   future=True, expire_on_commit=False)

_run_migrations()


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, trade: EscrowTrade, event: str, payload: dict[str, Any]) -> None:
        self.events.append((trade.trade_id, event, payload))

    def names(self) -> list[str]:
        return [event for _, event, _ in self.events]


class FakeJob:
    def __init__(self, scheduler: "FakeScheduler", job_id: str) -> None:
        self.scheduler = scheduler
        self.id = job_id

    def remove(self) -> None:
        self.scheduler.jobs.pop(self.id, None)


class FakeScheduler:
    """Records ``add_job`` calls instead of running them."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}

    def add_job(self, func, trigger, *, run_date, id, replace_existing, args):
        self.jobs[id] = {"func": func, "trigger": trigger, "run_date": run_date, "args": args}
        return FakeJob(self, id)


@pytest.fixture
def db_session() -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    session = TestingSessionLocal(bind=connection)
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture
def vault() -> InMemoryVault:
    return InMemoryVault()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def timers(db_session: Session, scheduler: FakeScheduler, notifier: RecordingNotifier) -> TradeTimers:
    return TradeTimers(scheduler, session_factory=lambda: nullcontext(db_session), notifier=notifier)


@pytest.fixture(autouse=True)
def override_dependencies(
    db_session: Session,
    vault: InMemoryVault,
    notifier: RecordingNotifier,
    timers: TradeTimers,
) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_transfer_client] = lambda: vault
    app.dependency_overrides[get_deposit_source] = lambda: vault
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_timers] = lambda: timers
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-API-Key": os.environ["ADMIN_API_KEY"]}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def buyer() -> Actor:
    return Actor(user_id=BUYER_ID, username="buyer_bob")


@pytest.fixture
def seller() -> Actor:
    return Actor(user_id=SELLER_ID, username="seller_sue")


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=ADMIN_ID, username="escrow_admin", is_admin=True)


@pytest.fixture
def make_room(db_session: Session) -> Callable[..., GroupRoom]:
    def _factory(
        *,
        group_id: str | None = None,
        fee_percent: Decimal | None = None,
        contracts: dict[str, dict[str, str]] | None = None,
        status: RoomStatus = RoomStatus.AVAILABLE,
    ) -> GroupRoom:
        room = GroupRoom(
            group_id=group_id or f"-100{uuid4().int % 10**9}",
            title="Escrow room",
            status=status,
            fee_percent=fee_percent,
            contracts=contracts if contracts is not None else {"USDT_BSC": {"address": VAULT, "network": "BSC"}},
        )
        db_session.add(room)
        db_session.commit()
        db_session.refresh(room)
        return room

    return _factory


@pytest.fixture
def make_funded_trade(
    db_session: Session, make_room: Callable[..., GroupRoom], vault: InMemoryVault
) -> Callable[..., EscrowTrade]:
    """Trade sitting in ``deposited`` with the quantity credited to the vault."""

    def _factory(
        *,
        quantity: Decimal = Decimal("1000"),
        deposit: Decimal | None = None,
        fee_rate: Decimal = Decimal("0.5"),
        network_fee: Decimal = Decimal("0.3"),
        status: EscrowStatus = EscrowStatus.DEPOSITED,
        credit_vault: bool = True,
    ) -> EscrowTrade:
        trade_id = f"P2PMMX{uuid4().int % 10**8}"
        room = make_room(status=RoomStatus.ASSIGNED)
        room.assigned_trade_id = trade_id
        trade = EscrowTrade(
            trade_id=trade_id,
            group_id=room.group_id,
            creator_id=SELLER_ID,
            buyer_id=BUYER_ID,
            buyer_username="buyer_bob",
            seller_id=SELLER_ID,
            seller_username="seller_sue",
            allowed_user_ids=[SELLER_ID, BUYER_ID],
            allowed_usernames=["seller_sue", "buyer_bob"],
            joined_user_ids=[SELLER_ID, BUYER_ID],
            status=status,
            chain="BSC",
            token="USDT",
            quantity=quantity,
            buyer_address=BUYER_ADDRESS,
            seller_address=SELLER_ADDRESS,
            contract_address=VAULT,
            fee_rate=fee_rate,
            network_fee=network_fee,
            partial_transaction_hashes=[],
            release_transaction_hashes=[],
            refund_transaction_hashes=[],
        )
        amount = quantity if deposit is None else deposit
        tx_hash = f"0x{uuid4().hex}"
        ledger.record_deposit(trade, tx_hash, amount, ledger.to_minor_units(amount, 18))
        if credit_vault:
            vault.credit(VAULT, amount, tx_hash=tx_hash)
        db_session.add(trade)
        db_session.commit()
        db_session.refresh(trade)
        return trade

    return _factory
