from decimal import Decimal

import pytest

from p2pescrow.models import EscrowStatus, SettlementDirection, TradeDetailsStep
from p2pescrow.schemas.trade import ActorIn, TradeCreate
from p2pescrow.services import actions, consent, escrow
from p2pescrow.services.actions import (
    ApproveDealSummary,
    ClaimRole,
    CloseTrade,
    ConfirmSettlement,
    ContinuePartial,
    DeclineSettlement,
    FiatReceived,
    FiatSent,
    PayRemainder,
    SelectChain,
    SelectToken,
)
from p2pescrow.utils.errors import InvalidStateError, TradeNotFoundError, ValidationError

from .conftest import SELLER_ID


@pytest.mark.parametrize(
    "data, expected",
    [
        ("select_role_buyer", ClaimRole(role="buyer")),
        ("select_role_seller", ClaimRole(role="seller")),
        ("step2_select_chain_BSC", SelectChain(chain="BSC")),
        ("step4_select_chain_TRON", SelectChain(chain="TRON")),
        ("step3_select_coin_USDT", SelectToken(token="USDT")),
        ("approve_deal_summary", ApproveDealSummary()),
        ("partial_continue_P2PMMX7", ContinuePartial(trade_id="P2PMMX7")),
        ("partial_pay_remaining_P2PMMX7", PayRemainder(trade_id="P2PMMX7")),
        ("fiat_sent_buyer_P2PMMX7", FiatSent(trade_id="P2PMMX7")),
        ("fiat_received_seller_yes_P2PMMX7", FiatReceived(trade_id="P2PMMX7", outcome="full")),
        ("fiat_received_seller_no_P2PMMX7", FiatReceived(trade_id="P2PMMX7", outcome="none")),
        ("fiat_received_seller_partial_P2PMMX7", FiatReceived(trade_id="P2PMMX7", outcome="partial")),
        (
            "release_confirm_yes_P2PMMX7",
            ConfirmSettlement(trade_id="P2PMMX7", direction=SettlementDirection.RELEASE),
        ),
        (
            "admin_refund_confirm_yes_P2PMMX7",
            ConfirmSettlement(trade_id="P2PMMX7", direction=SettlementDirection.REFUND),
        ),
        (
            "refund_confirm_no_P2PMMX7",
            DeclineSettlement(trade_id="P2PMMX7", direction=SettlementDirection.REFUND),
        ),
        ("close_trade_P2PMMX7", CloseTrade(trade_id="P2PMMX7")),
    ],
)
def test_decode_action(data, expected):
    assert actions.decode_action(data) == expected


@pytest.mark.parametrize("data", ["", "select_role_admin", "step2_select_chain_", "release_confirm_maybe_X"])
def test_unknown_callback_is_rejected(data):
    with pytest.raises(ValidationError):
        actions.decode_action(data)


def test_action_name():
    assert actions.action_name(ApproveDealSummary()) == "approve_deal_summary"
    assert actions.action_name(ClaimRole(role="buyer")) == "claim_role"


def _ctx(db_session, actor, vault, notifier=None, timers=None, **kwargs):
    return actions.ActionContext(
        db=db_session, actor=actor, transfer_client=vault, notifier=notifier, timers=timers, **kwargs
    )


@pytest.mark.anyio("asyncio")
async def test_role_buttons_resolve_trade_from_group(db_session, make_room, timers, vault, buyer, seller):
    room = make_room()
    trade = escrow.create_trade(
        db_session,
        TradeCreate(creator=ActorIn(user_id=SELLER_ID, username="seller_sue"), counterparty_username="buyer_bob"),
        timers=timers,
    )
    escrow.join_room(db_session, trade.trade_id, seller, timers=timers)
    escrow.join_room(db_session, trade.trade_id, buyer, timers=timers)

    await actions.dispatch(ClaimRole(role="seller"), _ctx(db_session, seller, vault, group_id=room.group_id))
    outcome = await actions.dispatch(
        actions.decode_action("select_role_buyer"), _ctx(db_session, buyer, vault, group_id=room.group_id)
    )

    assert outcome.action == "claim_role"
    assert outcome.trade.trade_details_step == TradeDetailsStep.CHAIN_SELECTION


@pytest.mark.anyio("asyncio")
async def test_dispatch_without_trade_reference(db_session, vault, buyer):
    with pytest.raises(TradeNotFoundError):
        await actions.dispatch(ClaimRole(role="buyer"), _ctx(db_session, buyer, vault, group_id="-100404"))


@pytest.mark.anyio("asyncio")
async def test_fiat_buttons(db_session, make_funded_trade, vault, notifier, buyer, seller):
    trade = make_funded_trade()

    await actions.dispatch(
        actions.decode_action(f"fiat_sent_buyer_{trade.trade_id}"), _ctx(db_session, buyer, vault, notifier)
    )
    outcome = await actions.dispatch(
        actions.decode_action(f"fiat_received_seller_yes_{trade.trade_id}"), _ctx(db_session, seller, vault, notifier)
    )

    assert outcome.detail == {"outcome": "full"}
    assert outcome.trade.status == EscrowStatus.READY_TO_RELEASE
    assert notifier.events == [
        (trade.trade_id, "fiat_sent", {}),
        (trade.trade_id, "fiat_received", {"outcome": "full"}),
    ]


@pytest.mark.anyio("asyncio")
async def test_confirm_buttons_settle_on_quorum(db_session, make_funded_trade, vault, notifier, buyer, seller):
    trade = make_funded_trade()
    consent.open_request(db_session, trade.trade_id, SettlementDirection.RELEASE, buyer, prompt_id="p-9")
    button = actions.decode_action(f"release_confirm_yes_{trade.trade_id}")

    first = await actions.dispatch(button, _ctx(db_session, buyer, vault, notifier, prompt_id="p-9"))
    assert first.detail == {"quorum_reached": False, "role": "buyer"}
    assert vault.transfers == []
    assert notifier.names() == ["release_confirmed"]

    second = await actions.dispatch(button, _ctx(db_session, seller, vault, notifier, prompt_id="p-9"))
    assert second.detail["quorum_reached"] is True
    assert Decimal(second.detail["net_amount"]) == Decimal("994.7")
    assert second.detail["is_full"] is True
    assert second.trade.status == EscrowStatus.COMPLETED
    assert len(vault.transfers) == 1
    assert notifier.names() == ["release_confirmed", "settlement_completed"]


@pytest.mark.anyio("asyncio")
async def test_decline_button(db_session, make_funded_trade, vault, seller):
    trade = make_funded_trade()
    consent.open_request(db_session, trade.trade_id, SettlementDirection.REFUND, seller, prompt_id="p-3")

    outcome = await actions.dispatch(
        actions.decode_action(f"refund_confirm_no_{trade.trade_id}"), _ctx(db_session, seller, vault, prompt_id="p-3")
    )

    assert outcome.action == "decline_settlement"
    assert outcome.trade.refund_prompt_id is None


@pytest.mark.anyio("asyncio")
async def test_dispute_and_close_buttons_notify(db_session, make_funded_trade, vault, notifier, buyer, seller):
    trade = make_funded_trade(status=EscrowStatus.IN_FIAT_TRANSFER)

    await actions.dispatch(
        actions.decode_action(f"fiat_received_seller_partial_{trade.trade_id}"), _ctx(db_session, seller, vault, notifier)
    )
    assert notifier.events[-1] == (trade.trade_id, "dispute_opened", {"outcome": "partial"})

    with pytest.raises(InvalidStateError):
        await actions.dispatch(CloseTrade(trade_id=trade.trade_id), _ctx(db_session, buyer, vault, notifier))
    assert notifier.names() == ["dispute_opened"]
