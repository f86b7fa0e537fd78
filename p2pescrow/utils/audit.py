"""Audit logging helper utilities."""
from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from p2pescrow.models.audit import AuditLog
from p2pescrow.utils.time import utcnow


ADDRESS_KEYS = {
    "address",
    "buyer_address",
    "seller_address",
    "destination",
    "from_address",
    "deposit_from_address",
}

SENSITIVE_KEYS = ADDRESS_KEYS | {"username", "buyer_username", "seller_username", "api_key"}


def _mask_value(key: str, value: Any) -> Any:
    if value is None:
        return None

    if key in ADDRESS_KEYS:
        text = str(value)
        if len(text) <= 10:
            return "***"
        return f"{text[:6]}***{text[-4:]}"

    if key == "api_key":
        return "***"

    text = str(value)
    if len(text) <= 2:
        return "***"
    return f"{text[:2]}***"


def sanitize_payload_for_audit(data: Any) -> Any:
    """Return a copy of ``data`` with payout addresses and handles masked."""

    if isinstance(data, Mapping):
        sanitized: dict[str, Any] = {}
        for key, value in data.items():
            masked_value = _mask_value(key, value) if key in SENSITIVE_KEYS else value
            sanitized[key] = sanitize_payload_for_audit(masked_value)
        return sanitized

    if isinstance(data, list):
        return [sanitize_payload_for_audit(item) for item in data]

    return data


def log_audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity: str,
    entity_id: int | None,
    data: dict | None = None,
) -> None:
    """Persist an audit entry in the shared AuditLog table.

    A ``trade_id`` key in ``data`` is copied to its own indexed column.
    """

    data = data or {}
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            entity=entity,
            entity_id=entity_id if entity_id is not None else 0,
            trade_id=data.get("trade_id"),
            data_json=sanitize_payload_for_audit(data),
            at=utcnow(),
        )
    )


__all__ = ["SENSITIVE_KEYS", "log_audit", "sanitize_payload_for_audit"]
