from app.models.audit import AuditLog
from app.utils.audit import audit_trail, log_audit


def test_audit_log_masks_sensitive_fields(db_session):
    payload = {
        "transfer_proof_url": "https://files.example.com/proofs/abc123.png?token=secret",
        "bank_account_number": "5140 1234 5678",
        "email": "sensitive@example.com",
        "gateway_reference": "ch_3NxYz9AbCdEf",
        "client_secret": "pi_1_secret_abc",
        "nested": [{"bank_account_number": "1234"}],
        "amount": "40.00",
    }

    log_audit(
        db_session,
        actor="test",
        action="MASK_TEST",
        entity="Payment",
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
    assert entry.data_json["transfer_proof_url"] == "https://files.example.com/proofs/***"
    assert entry.data_json["bank_account_number"] == "***5678"
    assert entry.data_json["email"] == "***@example.com"
    assert entry.data_json["gateway_reference"] == "***CdEf"
    assert entry.data_json["client_secret"] == "***"
    assert entry.data_json["nested"][0]["bank_account_number"] == "***1234"
    assert entry.data_json["amount"] == "40.00"


def test_audit_trail_is_chronological(db_session, parties, lock_plan, escrow_milestone):
    (milestone,) = lock_plan("100.00")
    payment = escrow_milestone(milestone)

    actions = [entry.action for entry in audit_trail(db_session, "Payment", payment.id)]

    assert actions == ["PAYMENT_CREATED", "PAYMENT_INTENT_REUSED", "PAYMENT_ESCROWED"]
