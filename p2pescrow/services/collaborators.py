"""Interfaces to the systems the escrow core drives but does not own.

The chat front-end, the chain RPC and the transfer signer live in other
processes. Each is reached through a small async protocol so the settlement
code can be exercised against in-process stand-ins. Production wiring binds
the real transfer client and deposit source at startup; the in-memory vault
only stands in for them in development and test environments.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol
from uuid import uuid4

from p2pescrow.config import get_settings
from p2pescrow.models.escrow import EscrowTrade
from p2pescrow.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


class VaultBalanceTooLow(Exception):
    """Raised by a transfer client when the vault cannot cover the payout."""

    def __init__(self, available: Decimal, needed: Decimal) -> None:
        super().__init__(f"vault holds {available}, transfer needs {needed}")
        self.available = available
        self.needed = needed


@dataclass(frozen=True)
class TransferResult:
    success: bool
    transaction_hash: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ObservedTransfer:
    """A token transfer into a vault as reported by the chain scanner."""

    from_address: str
    to_address: str
    tx_hash: str
    value: Decimal
    value_minor: int | None = None
    block_number: int = 0


@dataclass(frozen=True)
class DepositScan:
    transfers: list[ObservedTransfer]
    last_block: int


class TransferClient(Protocol):
    async def transfer(
        self,
        *,
        token: str,
        chain: str,
        vault_address: str,
        destination: str,
        amount: Decimal,
        amount_minor_override: int | None = None,
    ) -> TransferResult:
        """Send ``amount`` out of the vault. Must raise ``VaultBalanceTooLow`` on shortfall."""


class DepositSource(Protocol):
    async def fetch_transfers(
        self,
        *,
        token: str,
        chain: str,
        vault_address: str,
        since_block: int,
    ) -> DepositScan:
        """Return transfers into ``vault_address`` after ``since_block``."""


class Notifier(Protocol):
    async def notify(self, trade: EscrowTrade, event: str, payload: dict[str, Any]) -> None:
        """Present a state change to the parties of ``trade``."""


async def notify_safely(
    notifier: Notifier | None,
    trade: EscrowTrade,
    event: str,
    payload: dict[str, Any] | None = None,
) -> None:
    """Deliver a notification without letting chat failures reach the caller."""

    if notifier is None:
        return
    try:
        await notifier.notify(trade, event, payload or {})
    except Exception:  # noqa: BLE001
        logger.warning(
            "Notification delivery failed",
            extra={"trade_id": trade.trade_id, "event": event},
            exc_info=True,
        )


class LoggingNotifier:
    """Default notifier: the bot polls trade state, so events are only logged."""

    async def notify(self, trade: EscrowTrade, event: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Trade notification",
            extra={"trade_id": trade.trade_id, "event": event, "status": trade.status.value},
        )


@dataclass
class _VaultAccount:
    balance: Decimal = Decimal("0")
    inbound: list[ObservedTransfer] = field(default_factory=list)


class InMemoryVault:
    """Single-process vault used in dev and tests.

    Implements both :class:`TransferClient` and :class:`DepositSource` and keeps
    a per-vault balance so a transfer larger than what was credited fails the
    way the on-chain vault would.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, _VaultAccount] = {}
        self._block = 0
        self.transfers: list[dict[str, Any]] = []

    def _account(self, vault_address: str) -> _VaultAccount:
        return self._accounts.setdefault(vault_address.lower(), _VaultAccount())

    def credit(
        self,
        vault_address: str,
        amount: Decimal,
        *,
        from_address: str = "0x" + "0" * 40,
        tx_hash: str | None = None,
        value_minor: int | None = None,
    ) -> ObservedTransfer:
        """Simulate an inbound deposit and return the observed transfer."""

        self._block += 1
        observed = ObservedTransfer(
            from_address=from_address,
            to_address=vault_address,
            tx_hash=tx_hash or f"0x{uuid4().hex}{uuid4().hex}",
            value=Decimal(str(amount)),
            value_minor=value_minor,
            block_number=self._block,
        )
        account = self._account(vault_address)
        account.balance += observed.value
        account.inbound.append(observed)
        return observed

    def balance_of(self, vault_address: str) -> Decimal:
        return self._account(vault_address).balance

    async def fetch_transfers(
        self,
        *,
        token: str,
        chain: str,
        vault_address: str,
        since_block: int,
    ) -> DepositScan:
        account = self._account(vault_address)
        found = [t for t in account.inbound if t.block_number > since_block]
        return DepositScan(transfers=found, last_block=self._block)

    async def transfer(
        self,
        *,
        token: str,
        chain: str,
        vault_address: str,
        destination: str,
        amount: Decimal,
        amount_minor_override: int | None = None,
    ) -> TransferResult:
        account = self._account(vault_address)
        if account.balance < amount:
            raise VaultBalanceTooLow(available=account.balance, needed=amount)
        account.balance -= amount
        tx_hash = f"0x{uuid4().hex}{uuid4().hex}"
        self.transfers.append(
            {
                "token": token,
                "chain": chain,
                "vault_address": vault_address,
                "destination": destination,
                "amount": amount,
                "amount_minor": amount_minor_override,
                "tx_hash": tx_hash,
            }
        )
        logger.info(
            "Vault transfer executed",
            extra={"vault": vault_address, "amount": str(amount), "tx_hash": tx_hash},
        )
        return TransferResult(success=True, transaction_hash=tx_hash)


_default_notifier = LoggingNotifier()
_bound_transfer_client: TransferClient | None = None
_bound_deposit_source: DepositSource | None = None
_dev_vault: InMemoryVault | None = None

IN_MEMORY_VAULT_ENVS = {"dev", "local", "test"}


def bind_transfer_client(client: TransferClient | None) -> None:
    """Install the signer-backed transfer client (``None`` unbinds it)."""

    global _bound_transfer_client
    _bound_transfer_client = client


def bind_deposit_source(source: DepositSource | None) -> None:
    global _bound_deposit_source
    _bound_deposit_source = source


def _in_memory_vault(role: str) -> InMemoryVault:
    env = get_settings().app_env.lower()
    if env not in IN_MEMORY_VAULT_ENVS:
        logger.error("No %s bound outside development", role, extra={"env": env})
        raise ConfigurationError(f"No {role} is configured.", details={"env": env})
    global _dev_vault
    if _dev_vault is None:
        logger.warning("Using the in-memory vault as %s; nothing reaches a chain", role)
        _dev_vault = InMemoryVault()
    return _dev_vault


def get_transfer_client() -> TransferClient:
    if _bound_transfer_client is not None:
        return _bound_transfer_client
    return _in_memory_vault("transfer client")


def get_deposit_source() -> DepositSource:
    if _bound_deposit_source is not None:
        return _bound_deposit_source
    return _in_memory_vault("deposit source")


def get_notifier() -> Notifier:
    return _default_notifier


__all__ = [
    "DepositScan",
    "DepositSource",
    "InMemoryVault",
    "LoggingNotifier",
    "Notifier",
    "ObservedTransfer",
    "TransferClient",
    "TransferResult",
    "VaultBalanceTooLow",
    "bind_deposit_source",
    "bind_transfer_client",
    "get_deposit_source",
    "get_notifier",
    "get_transfer_client",
    "notify_safely",
]
