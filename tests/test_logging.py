from tablecode.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    sanitize_error_message,
    set_correlation_id,
)


def test_credentials_and_contact_details_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "pin_reset",
            "new_pin": "59273841",
            "owner_email": "owner@seaview.example",
            "otp": "1234",
            "phone": "9876543210",
        },
    )
    assert event["new_pin"] == "59***41"
    assert event["otp"] == "***"
    assert "seaview" not in event["owner_email"]
    assert event["phone"] == "98***10"


def test_counters_are_not_masked():
    event = _redact_pii(
        None, "info", {"pin_reset_count": 3, "last_pin_reset_by": "super_admin", "token_type": "Bearer"}
    )
    assert event == {"pin_reset_count": 3, "last_pin_reset_by": "super_admin", "token_type": "Bearer"}


def test_correlation_id_attached():
    token = correlation_id_var.set(None)
    try:
        assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
        assert set_correlation_id("req-123") == "req-123"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-123"
    finally:
        correlation_id_var.reset(token)


def test_sanitize_error_message():
    cleaned = sanitize_error_message("pin=59273841 failed at /srv/app/tenants.py")
    assert "59273841" not in cleaned
    assert "/srv/app" not in cleaned
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500
