from decimal import Decimal

from p2pescrow.services import fees


def test_network_fee_by_chain_and_tier():
    assert fees.network_fee("BSC", has_bio_tag=False) == Decimal("0.3")
    assert fees.network_fee("BSC", has_bio_tag=True) == Decimal("0.2")
    assert fees.network_fee("TRON", has_bio_tag=False) == Decimal("3.0")
    assert fees.network_fee("TRON", has_bio_tag=True) == Decimal("2.0")


def test_network_fee_aliases_and_unknown_chain_fall_back_to_default():
    assert fees.network_fee("bep20", has_bio_tag=False) == Decimal("0.3")
    assert fees.network_fee("TRC20", has_bio_tag=False) == Decimal("3.0")
    assert fees.network_fee("POLYGON", has_bio_tag=False) == fees.network_fee("BSC", has_bio_tag=False)
    assert fees.network_fee(None, has_bio_tag=True) == Decimal("0.2")


def test_service_fee_tiers():
    assert fees.service_fee(False, False) == Decimal("0.75")
    assert fees.service_fee(True, False) == Decimal("0.5")
    assert fees.service_fee(False, True) == Decimal("0.5")
    assert fees.service_fee(True, True) == Decimal("0.25")


def test_fees_are_deterministic():
    first = [fees.network_fee("BSC", True), fees.service_fee(True, False)]
    second = [fees.network_fee("BSC", True), fees.service_fee(True, False)]
    assert first == second


def test_bio_tag_inferred_from_fee_rate():
    assert fees.has_bio_tag_for_fee_rate(Decimal("0.5")) is True
    assert fees.has_bio_tag_for_fee_rate(Decimal("0.75")) is False
    assert fees.has_bio_tag_for_fee_rate(None) is False


def test_normalize_chain():
    assert fees.normalize_chain(" trx ") == "TRON"
    assert fees.normalize_chain("") == "BSC"
    assert fees.normalize_chain("matic") == "POLYGON"
