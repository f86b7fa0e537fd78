"""Fee policy: flat network fee per transfer and the percentage service fee tiers."""
from __future__ import annotations

from decimal import Decimal

from p2pescrow.config import DEFAULT_CHAIN, get_settings

_CHAIN_ALIASES = {
    "BSC": "BSC",
    "BNB": "BSC",
    "BEP20": "BSC",
    "BEP-20": "BSC",
    "TRON": "TRON",
    "TRX": "TRON",
    "TRC20": "TRON",
    "TRC-20": "TRON",
    "ETHEREUM": "ETH",
    "ETH": "ETH",
    "MATIC": "POLYGON",
    "POLYGON": "POLYGON",
}


def normalize_chain(chain: str | None) -> str:
    """Return the canonical chain symbol (``BSC`` when empty)."""

    if not chain:
        return DEFAULT_CHAIN
    upper = chain.strip().upper()
    return _CHAIN_ALIASES.get(upper, upper)


def network_fee(chain: str | None, has_bio_tag: bool) -> Decimal:
    """Flat fee, in token units, withheld from every outgoing transfer.

    Chains without their own row use the default chain's fee.
    """

    tier = "HAS_BIO_TAG" if has_bio_tag else "NO_BIO_TAG"
    table = get_settings().NETWORK_FEES[tier]
    canonical = normalize_chain(chain)
    if canonical in table:
        return Decimal(table[canonical])
    return Decimal(table[DEFAULT_CHAIN])


def service_fee(seller_has_tag: bool, buyer_has_tag: bool) -> Decimal:
    """Percentage fee locked onto a trade when it is opened."""

    fees = get_settings().SERVICE_FEES
    if seller_has_tag and buyer_has_tag:
        return Decimal(fees["BOTH_TAGS"])
    if seller_has_tag or buyer_has_tag:
        return Decimal(fees["ONE_TAG"])
    return Decimal(fees["NO_BIO_TAG"])


def has_bio_tag_for_fee_rate(fee_rate: Decimal | None) -> bool:
    """A rate below the untagged tier means at least one party was tagged."""

    if fee_rate is None:
        return False
    return Decimal(fee_rate) < Decimal(get_settings().SERVICE_FEES["NO_BIO_TAG"])


__all__ = ["normalize_chain", "network_fee", "service_fee", "has_bio_tag_for_fee_rate"]
