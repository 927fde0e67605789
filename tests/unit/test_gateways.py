import hashlib
import hmac
import json

import pytest
import requests

from src.domain.exceptions import (
    GatewayConfigurationError,
    GatewayUnavailableError,
    InvalidWebhookSignatureError,
    MalformedWebhookError,
    UnknownGatewayError,
)
from src.infrastructure.gateways.chapa import ChapaGateway
from src.infrastructure.gateways.razorpay_gateway import RazorpayGateway
from src.infrastructure.gateways.registry import (
    get_gateway,
    pollable_providers,
    supported_providers,
)


def _sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class _FakeResponse:
    def __init__(self, status_code: int, body: dict):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body)

    def json(self):
        return self._body


# ---------------------
# REGISTRY
# ---------------------

def test_registry_resolves_known_gateways():
    assert isinstance(get_gateway("chapa"), ChapaGateway)
    assert isinstance(get_gateway("RAZORPAY"), RazorpayGateway)
    assert "manual" in supported_providers()
    assert "manual" not in pollable_providers()


def test_registry_rejects_unknown_and_manual_webhooks():
    with pytest.raises(UnknownGatewayError):
        get_gateway("paypal")
    with pytest.raises(UnknownGatewayError):
        get_gateway("manual")


# ---------------------
# CHAPA
# ---------------------

def test_chapa_signature_accepted(monkeypatch):
    monkeypatch.setenv("CHAPA_WEBHOOK_SECRET", "whsec")
    body = b'{"tx_ref": "tx-1", "status": "success"}'

    ChapaGateway().verify_signature(body, {"chapa-signature": _sign("whsec", body)})


def test_chapa_signature_rejected(monkeypatch):
    monkeypatch.setenv("CHAPA_WEBHOOK_SECRET", "whsec")
    body = b'{"tx_ref": "tx-1", "status": "success"}'

    with pytest.raises(InvalidWebhookSignatureError):
        ChapaGateway().verify_signature(body, {"chapa-signature": _sign("other", body)})
    with pytest.raises(InvalidWebhookSignatureError):
        ChapaGateway().verify_signature(body, {})


def test_chapa_signature_requires_secret(monkeypatch):
    monkeypatch.delenv("CHAPA_WEBHOOK_SECRET", raising=False)

    with pytest.raises(GatewayConfigurationError):
        ChapaGateway().verify_signature(b"{}", {"chapa-signature": "x"})


def test_chapa_parses_nested_and_flat_payloads():
    nested = ChapaGateway().parse_webhook(
        {"event": "charge.completed", "data": {"tx_ref": "tx-1", "status": "success"}}
    )
    flat = ChapaGateway().parse_webhook({"event": "charge.failed", "tx_ref": "tx-2"})

    assert (nested.tx_ref, nested.status) == ("tx-1", "success")
    assert (flat.tx_ref, flat.status) == ("tx-2", "charge.failed")


def test_chapa_rejects_payload_without_tx_ref():
    with pytest.raises(MalformedWebhookError):
        ChapaGateway().parse_webhook({"status": "success"})


def test_chapa_fetch_status(monkeypatch):
    monkeypatch.setenv("CHAPA_SECRET_KEY", "sk-test")
    calls = []

    def fake_get(url, headers, timeout):
        calls.append((url, headers["Authorization"]))
        return _FakeResponse(200, {"status": "success", "data": {"status": "failed", "tx_ref": "tx-1"}})

    monkeypatch.setattr(requests, "get", fake_get)

    notification = ChapaGateway().fetch_status("tx-1")

    assert notification.status == "failed"
    assert calls == [("https://api.chapa.co/v1/transaction/verify/tx-1", "Bearer sk-test")]


def test_chapa_fetch_status_gateway_down(monkeypatch):
    monkeypatch.setenv("CHAPA_SECRET_KEY", "sk-test")

    def fake_get(url, headers, timeout):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(requests, "get", fake_get)

    with pytest.raises(GatewayUnavailableError):
        ChapaGateway().fetch_status("tx-1")


# ---------------------
# RAZORPAY
# ---------------------

def test_razorpay_signature(monkeypatch):
    monkeypatch.setenv("RAZORPAY_WEBHOOK_SECRET", "rzp-whsec")
    body = b'{"event": "payment.captured"}'

    RazorpayGateway().verify_signature(body, {"x-razorpay-signature": _sign("rzp-whsec", body)})

    with pytest.raises(InvalidWebhookSignatureError):
        RazorpayGateway().verify_signature(body, {"x-razorpay-signature": "deadbeef"})


def test_razorpay_parses_payment_and_refund_events():
    captured = RazorpayGateway().parse_webhook(
        {
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"order_id": "order_1", "status": "captured"}}},
        }
    )
    refunded = RazorpayGateway().parse_webhook(
        {
            "event": "refund.processed",
            "payload": {
                "payment": {
                    "entity": {"order_id": "order_1", "status": "captured", "notes": {"tx_ref": "tx-9"}}
                }
            },
        }
    )

    assert (captured.tx_ref, captured.status) == ("order_1", "captured")
    assert (refunded.tx_ref, refunded.status) == ("tx-9", "refunded")


def test_razorpay_fetch_requires_keys(monkeypatch):
    monkeypatch.delenv("RAZORPAY_KEY_ID", raising=False)
    monkeypatch.delenv("RAZORPAY_KEY_SECRET", raising=False)

    with pytest.raises(GatewayConfigurationError):
        RazorpayGateway().fetch_status("order_1")
