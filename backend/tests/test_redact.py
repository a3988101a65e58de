from packtrip.core.logging import redact_secrets


def test_redact_signature_key():
    event = {"order_id": "BK-ABCDEFGH-01A2B3", "signature_key": "f00dfeed"}
    out = redact_secrets(None, None, event.copy())
    assert out["signature_key"] == "REDACTED"
    assert out["order_id"] == "BK-ABCDEFGH-01A2B3"


def test_redact_bearer_token_in_text():
    event = {"event": "request failed", "header": "Bearer eyJhbGciOi.payload.sig"}
    out = redact_secrets(None, None, event.copy())
    assert out["header"] == "Bearer REDACTED"


def test_redact_server_key_in_list():
    event = {"urls": ["auth=SB-Mid-server-abc123", "https://app.sandbox.midtrans.com"]}
    out = redact_secrets(None, None, event.copy())
    assert out["urls"] == ["auth=REDACTED", "https://app.sandbox.midtrans.com"]


def test_redact_nested():
    event = {"payload": {"notification": {"signature_key": "abc", "gross_amount": "1000.00"}}}
    out = redact_secrets(None, None, event.copy())
    assert out["payload"]["notification"] == {"signature_key": "REDACTED", "gross_amount": "1000.00"}


def test_empty_secret_left_alone():
    out = redact_secrets(None, None, {"fcm_token": None})
    assert out["fcm_token"] is None
