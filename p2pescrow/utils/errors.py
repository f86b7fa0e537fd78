"""Utility helpers for standardized error responses and domain errors."""
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class EscrowError(HTTPException):
    """Base class for errors surfaced to the chat front-end.

    Subclasses fix the error code and HTTP status; the body is always an
    ``error_response`` payload so the generic HTTP handler renders it as-is.
    """

    code = "ESCROW_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "The request could not be processed."

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(
            status_code=type(self).status_code,
            detail=error_response(self.code, self.message, self.details),
        )


# --- Validation ------------------------------------------------------------


class ValidationError(EscrowError):
    code = "VALIDATION_ERROR"


class NotParticipantError(ValidationError):
    code = "NOT_PARTICIPANT"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Only the buyer, seller or an admin can do this."


class RoleConflictError(ValidationError):
    code = "ROLE_CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This role cannot be claimed."


class SelfDealingError(RoleConflictError):
    code = "SELF_DEALING"
    default_message = "You cannot open a trade with yourself."


class WrongStepError(ValidationError):
    code = "WRONG_STEP"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This step is no longer active."


class InvalidStateError(ValidationError):
    code = "INVALID_STATE"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The trade is not in a state that allows this action."


class NonPositiveAmountError(ValidationError):
    code = "NON_POSITIVE_AMOUNT"
    default_message = "Amount must be greater than 0."


class ExceedsBalanceError(ValidationError):
    code = "EXCEEDS_BALANCE"
    default_message = "Amount exceeds the available balance."


class AmountTooSmallError(ValidationError):
    code = "AMOUNT_TOO_SMALL"
    default_message = "Net amount after fees is too small."


class QuorumNotReachedError(ValidationError):
    code = "QUORUM_NOT_REACHED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Waiting for the remaining approvals."


# --- Staleness -------------------------------------------------------------


class StaleActionError(EscrowError):
    code = "STALE_ACTION"
    status_code = status.HTTP_409_CONFLICT
    default_message = "This has already been handled."


class PromptExpiredError(StaleActionError):
    code = "PROMPT_EXPIRED"
    default_message = "This request has expired."


class AlreadySettledError(StaleActionError):
    code = "ALREADY_SETTLED"
    default_message = "This deal has already been settled."


class SettlementInProgressError(StaleActionError):
    code = "SETTLEMENT_IN_PROGRESS"
    default_message = "A settlement for this deal is already being processed."


# --- Configuration ---------------------------------------------------------


class ConfigurationError(EscrowError):
    code = "CONFIGURATION_ERROR"
    status_code = 422
    default_message = "The trade cannot proceed until an admin fixes its configuration."


class NoRoomAvailableError(EscrowError):
    code = "NO_ROOM_AVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "No functioning rooms available. Please try again later."


# --- Transfers -------------------------------------------------------------


class TransferFailedError(EscrowError):
    code = "TRANSFER_FAILED"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Operation failed, please try again or contact support."


class InsufficientVaultBalanceError(TransferFailedError):
    code = "INSUFFICIENT_VAULT_BALANCE"
    default_message = "The vault does not have enough funds to complete this transfer."

    def __init__(
        self,
        available: Decimal | None = None,
        needed: Decimal | None = None,
        message: str | None = None,
    ) -> None:
        self.available = available
        self.needed = needed
        super().__init__(
            message,
            details={
                "available": str(available) if available is not None else None,
                "needed": str(needed) if needed is not None else None,
            },
        )


class TradeNotFoundError(EscrowError):
    code = "TRADE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Trade not found."


class RoomNotFoundError(EscrowError):
    code = "ROOM_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Room not found."


__all__ = [
    "error_response",
    "EscrowError",
    "ValidationError",
    "NotParticipantError",
    "RoleConflictError",
    "SelfDealingError",
    "WrongStepError",
    "InvalidStateError",
    "NonPositiveAmountError",
    "ExceedsBalanceError",
    "AmountTooSmallError",
    "QuorumNotReachedError",
    "StaleActionError",
    "PromptExpiredError",
    "AlreadySettledError",
    "SettlementInProgressError",
    "ConfigurationError",
    "NoRoomAvailableError",
    "TransferFailedError",
    "InsufficientVaultBalanceError",
    "TradeNotFoundError",
    "RoomNotFoundError",
]
