import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from p2pescrow.models import EscrowStatus, EscrowTrade, GroupRoom, RoomStatus, SettlementDirection
from p2pescrow.services import consent, deposits, ledger, settlement
from p2pescrow.services.collaborators import TransferResult
from p2pescrow.utils.errors import (
    AlreadySettledError,
    ExceedsBalanceError,
    InsufficientVaultBalanceError,
    PromptExpiredError,
    QuorumNotReachedError,
    SettlementInProgressError,
    TransferFailedError,
)

from .conftest import BUYER_ADDRESS, SELLER_ADDRESS

RELEASE = SettlementDirection.RELEASE
REFUND = SettlementDirection.REFUND


def _agree(db_session, trade, direction, buyer, seller, *, amount=None, prompt_id="prompt-1"):
    consent.open_request(db_session, trade.trade_id, direction, buyer, amount=amount, prompt_id=prompt_id)
    consent.confirm(db_session, trade.trade_id, direction, buyer, prompt_id)
    decision = consent.confirm(db_session, trade.trade_id, direction, seller, prompt_id)
    assert decision.quorum_reached is True
    return prompt_id


class FailingClient:
    def __init__(self) -> None:
        self.calls = 0

    async def transfer(self, **kwargs):
        self.calls += 1
        raise RuntimeError("rpc timeout")


class RejectingClient:
    async def transfer(self, **kwargs):
        return TransferResult(success=False, error="nonce too low")


class SlowClient:
    def __init__(self, inner) -> None:
        self.inner = inner

    async def transfer(self, **kwargs):
        await asyncio.sleep(0.01)
        return await self.inner.transfer(**kwargs)


@pytest.mark.anyio("asyncio")
async def test_full_release_pays_net_and_completes(
    db_session, make_funded_trade, vault, notifier, timers, scheduler, buyer, seller
):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)

    outcome = await settlement.execute(
        db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault, notifier=notifier, timers=timers
    )

    assert outcome.is_full is True
    assert outcome.gross_amount == Decimal("1000")
    assert outcome.net_amount == Decimal("994.7")
    assert outcome.remaining == Decimal("0")
    assert len(vault.transfers) == 1
    sent = vault.transfers[0]
    assert sent["amount"] == Decimal("994.7")
    assert sent["amount_minor"] == 9947 * 10**17
    assert sent["destination"] == BUYER_ADDRESS

    trade = outcome.trade
    assert trade.status == EscrowStatus.COMPLETED
    assert trade.completed_at is not None
    assert ledger.current_balance(trade) == Decimal("0")
    assert trade.release_transaction_hashes == [outcome.transaction_hash]
    assert trade.settlement_in_flight is None

    room = db_session.scalars(select(GroupRoom).where(GroupRoom.group_id == trade.group_id)).one()
    assert room.status == RoomStatus.COMPLETED
    assert f"room-recycle:{trade.trade_id}" in scheduler.jobs
    assert "settlement_completed" in notifier.names()


@pytest.mark.anyio("asyncio")
async def test_net_is_not_grossed_up(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)

    outcome = await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)

    fee = outcome.gross_amount * Decimal("0.5") / Decimal("100")
    assert outcome.net_amount + fee + Decimal("0.3") == outcome.gross_amount
    assert vault.balance_of(trade.contract_address) == Decimal("5.3")


@pytest.mark.anyio("asyncio")
async def test_partial_release_keeps_trade_open(db_session, make_funded_trade, vault, timers, scheduler, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller, amount=Decimal("400"))

    outcome = await settlement.execute(
        db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault, timers=timers
    )

    assert outcome.is_full is False
    assert outcome.net_amount == Decimal("397.7")
    assert outcome.remaining == Decimal("600")
    trade = outcome.trade
    assert trade.status == EscrowStatus.DEPOSITED
    assert ledger.current_balance(trade) == Decimal("600")
    assert ledger.balance_minor(trade) == 600 * 10**18
    assert consent.flags(trade, RELEASE) == (False, False, False)
    assert trade.release_prompt_id is None
    assert trade.pending_release_amount is None
    assert scheduler.jobs == {}

    # A second round settles the remainder.
    prompt = _agree(db_session, trade, RELEASE, buyer, seller, prompt_id="prompt-2")
    final = await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)
    assert final.is_full is True
    assert final.trade.status == EscrowStatus.COMPLETED
    assert len(final.trade.release_transaction_hashes) == 2
    assert final.trade.total_settled_amount == Decimal("1000")


@pytest.mark.anyio("asyncio")
async def test_double_click_transfers_once(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)

    await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)
    with pytest.raises(AlreadySettledError):
        await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)
    with pytest.raises(AlreadySettledError):
        consent.confirm(db_session, trade.trade_id, RELEASE, buyer, prompt)

    assert len(vault.transfers) == 1


@pytest.mark.anyio("asyncio")
async def test_concurrent_settlements_are_latched(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)
    client = SlowClient(vault)

    results = await asyncio.gather(
        settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=client),
        settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=client),
        return_exceptions=True,
    )

    refused = [r for r in results if isinstance(r, SettlementInProgressError)]
    done = [r for r in results if isinstance(r, settlement.SettlementOutcome)]
    assert len(refused) == 1
    assert len(done) == 1
    assert len(vault.transfers) == 1


@pytest.mark.anyio("asyncio")
async def test_amount_above_balance_never_reaches_transfer(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller, amount=Decimal("500"))
    trade.pending_release_amount = Decimal("1200")
    db_session.commit()

    with pytest.raises(ExceedsBalanceError):
        await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)

    trade = settlement.reload(db_session, trade.trade_id)
    assert vault.transfers == []
    assert ledger.current_balance(trade) == Decimal("1000")
    assert trade.settlement_in_flight is None


@pytest.mark.anyio("asyncio")
async def test_transfer_failure_leaves_ledger_untouched(db_session, make_funded_trade, notifier, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)
    client = FailingClient()

    with pytest.raises(TransferFailedError):
        await settlement.execute(
            db_session, trade.trade_id, RELEASE, prompt, transfer_client=client, notifier=notifier
        )

    trade = settlement.reload(db_session, trade.trade_id)
    assert client.calls == 1
    assert trade.status == EscrowStatus.DEPOSITED
    assert ledger.current_balance(trade) == Decimal("1000")
    assert trade.release_transaction_hashes == []
    assert trade.settlement_in_flight is None
    assert consent.trade_quorum_reached(trade, RELEASE) is True
    assert "settlement_failed" in notifier.names()


@pytest.mark.anyio("asyncio")
async def test_unsuccessful_transfer_result_is_a_failure(db_session, make_funded_trade, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)

    with pytest.raises(TransferFailedError) as excinfo:
        await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=RejectingClient())
    assert excinfo.value.details == {"reason": "nonce too low"}


@pytest.mark.anyio("asyncio")
async def test_vault_shortfall_is_typed(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade(credit_vault=False)
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)

    with pytest.raises(InsufficientVaultBalanceError) as excinfo:
        await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)

    assert excinfo.value.available == Decimal("0")
    assert excinfo.value.needed == Decimal("994.7")
    trade = settlement.reload(db_session, trade.trade_id)
    assert ledger.current_balance(trade) == Decimal("1000")
    assert trade.settlement_in_flight is None


@pytest.mark.anyio("asyncio")
async def test_latch_held_elsewhere_refuses_settlement(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)
    assert consent.acquire_latch(db_session, trade, REFUND) is True

    with pytest.raises(SettlementInProgressError):
        await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=vault)

    assert vault.transfers == []
    assert trade.settlement_in_flight == REFUND


@pytest.mark.anyio("asyncio")
async def test_settlement_requires_quorum_and_current_prompt(db_session, make_funded_trade, vault, buyer):
    trade = make_funded_trade()
    consent.open_request(db_session, trade.trade_id, RELEASE, buyer, prompt_id="p-1")
    consent.confirm(db_session, trade.trade_id, RELEASE, buyer, "p-1")

    with pytest.raises(QuorumNotReachedError):
        await settlement.execute(db_session, trade.trade_id, RELEASE, "p-1", transfer_client=vault)
    with pytest.raises(PromptExpiredError):
        await settlement.execute(db_session, trade.trade_id, RELEASE, "p-0", transfer_client=vault)

    trade = settlement.reload(db_session, trade.trade_id)
    assert trade.settlement_in_flight is None
    assert vault.transfers == []


@pytest.mark.anyio("asyncio")
async def test_refund_returns_funds_to_seller(db_session, make_funded_trade, vault, admin):
    trade = make_funded_trade(status=EscrowStatus.DISPUTED)
    consent.open_request(db_session, trade.trade_id, REFUND, admin, prompt_id="r-1")
    consent.confirm(db_session, trade.trade_id, REFUND, admin, "r-1")

    outcome = await settlement.execute(db_session, trade.trade_id, REFUND, "r-1", transfer_client=vault)

    assert outcome.trade.status == EscrowStatus.REFUNDED
    assert outcome.trade.refund_transaction_hashes == [outcome.transaction_hash]
    assert vault.transfers[0]["destination"] == SELLER_ADDRESS
    assert vault.transfers[0]["amount"] == Decimal("994.7")


class DepositDuringTransfer:
    """Lands a deposit in the vault and tries to book it while the transfer is out."""

    def __init__(self, db_session, vault, trade_id, amount) -> None:
        self.db_session = db_session
        self.vault = vault
        self.trade_id = trade_id
        self.amount = amount
        self.refused = None

    async def transfer(self, **kwargs):
        self.vault.credit(
            kwargs["vault_address"], self.amount, value_minor=ledger.to_minor_units(self.amount, 18)
        )
        try:
            await deposits.check_deposits(self.db_session, self.trade_id, self.vault)
        except SettlementInProgressError as exc:
            self.refused = exc
        return await self.vault.transfer(**kwargs)


class ExternalTopUp:
    """Raises the stored balance from outside the settlement before the transfer returns."""

    def __init__(self, db_session, vault, trade_id, balance) -> None:
        self.db_session = db_session
        self.vault = vault
        self.trade_id = trade_id
        self.balance = balance

    async def transfer(self, **kwargs):
        self.db_session.execute(
            update(EscrowTrade)
            .where(EscrowTrade.trade_id == self.trade_id)
            .values(
                deposit_amount=self.balance,
                confirmed_amount=self.balance,
                accumulated_deposit_amount=self.balance,
                accumulated_deposit_amount_wei=str(ledger.to_minor_units(self.balance, 18)),
            )
        )
        return await self.vault.transfer(**kwargs)


@pytest.mark.anyio("asyncio")
async def test_deposit_during_settlement_is_deferred_not_lost(db_session, make_funded_trade, vault, buyer, seller):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller, amount=Decimal("400"))
    client = DepositDuringTransfer(db_session, vault, trade.trade_id, Decimal("500"))

    outcome = await settlement.execute(db_session, trade.trade_id, RELEASE, prompt, transfer_client=client)

    assert isinstance(client.refused, SettlementInProgressError)
    assert outcome.remaining == Decimal("600")
    assert outcome.trade.settlement_in_flight is None

    check = await deposits.check_deposits(db_session, trade.trade_id, vault)
    assert check.new_deposits == 1
    assert check.balance == Decimal("1100")
    assert ledger.balance_minor(check.trade) == 1100 * 10**18
    assert len(check.trade.partial_transaction_hashes) == 1


@pytest.mark.anyio("asyncio")
async def test_balance_growth_during_transfer_downgrades_full_settlement(
    db_session, make_funded_trade, vault, timers, scheduler, buyer, seller
):
    trade = make_funded_trade()
    prompt = _agree(db_session, trade, RELEASE, buyer, seller)
    client = ExternalTopUp(db_session, vault, trade.trade_id, Decimal("1500"))

    outcome = await settlement.execute(
        db_session, trade.trade_id, RELEASE, prompt, transfer_client=client, timers=timers
    )

    assert outcome.gross_amount == Decimal("1000")
    assert outcome.is_full is False
    assert outcome.remaining == Decimal("500")
    trade = settlement.reload(db_session, trade.trade_id)
    assert trade.status == EscrowStatus.DEPOSITED
    assert ledger.current_balance(trade) == Decimal("500")
    assert ledger.balance_minor(trade) == 500 * 10**18
    assert trade.release_transaction_hashes == [outcome.transaction_hash]
    assert scheduler.jobs == {}
    room = db_session.scalars(select(GroupRoom).where(GroupRoom.group_id == trade.group_id)).one()
    assert room.status == RoomStatus.ASSIGNED


def test_manual_deposit_refused_while_settlement_in_flight(db_session, make_funded_trade, admin):
    trade = make_funded_trade(deposit=Decimal("600"))
    assert consent.acquire_latch(db_session, trade, RELEASE) is True

    with pytest.raises(SettlementInProgressError) as excinfo:
        deposits.record_manual_deposit(db_session, trade.trade_id, admin, "0x" + "7" * 64, Decimal("400"))

    assert excinfo.value.details == {"direction": "release"}
    trade = settlement.reload(db_session, trade.trade_id)
    assert ledger.current_balance(trade) == Decimal("600")
