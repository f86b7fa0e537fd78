from p2pescrow.models.audit import AuditLog
from p2pescrow.utils.audit import log_audit, sanitize_payload_for_audit


def test_audit_log_masks_sensitive_fields(db_session):
    payload = {
        "buyer_address": "0x" + "b" * 40,
        "username": "buyer_bob",
        "api_key": "test-bot-key",
        "tx_hash": "0x" + "1" * 64,
        "nested": [{"destination": "TXYZ1234567890abcdefghijklmnopqrs"}],
    }

    log_audit(
        db_session,
        actor="test",
        action="MASK_TEST",
        entity="EscrowTrade",
        entity_id=1,
        data=payload,
    )
    db_session.commit()

    entry = (
        db_session.query(AuditLog)
        .filter(AuditLog.action == "MASK_TEST")
        .order_by(AuditLog.id.desc())
        .first()
    )
    assert entry is not None
    assert entry.data_json["buyer_address"] == "0xbbbb***bbbb"
    assert entry.data_json["username"] == "bu***"
    assert entry.data_json["api_key"] == "***"
    assert entry.data_json["tx_hash"] == payload["tx_hash"]
    assert entry.data_json["nested"][0]["destination"] == "TXYZ12***pqrs"


def test_short_values_are_fully_masked():
    assert sanitize_payload_for_audit({"address": "0xabc", "username": "al", "seller_address": None}) == {
        "address": "***",
        "username": "***",
        "seller_address": None,
    }
