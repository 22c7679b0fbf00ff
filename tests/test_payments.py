"""StripeGateway against a fake StripeClient (no network)."""
from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace

import pytest
import stripe

from orderflow.errors import GatewayUnavailable, PaymentDeclined
from orderflow.services.payments import StripeGateway, mask_token, public_config


def _intent(status="succeeded", amount=4250, **extra):
    intent = {
        "id": "pi_123",
        "status": status,
        "amount_received": amount if status == "succeeded" else 0,
        "currency": "cad",
        "latest_charge": {"id": "ch_123", "receipt_url": "https://pay.stripe.com/receipts/abc"},
    }
    intent.update(extra)
    return intent


class _FakeIntents:
    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    def create(self, params=None, options=None):
        self.calls.append((params, options))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _gateway(intents, **kwargs):
    client = SimpleNamespace(v1=SimpleNamespace(payment_intents=intents))
    return StripeGateway("sk_test_123", client_factory=lambda api_key, **kw: client, **kwargs)


def _charge(gateway, key="key-1"):
    return asyncio.run(gateway.charge("pm_card_visa", 4250, "CAD", key))


def test_completed_charge():
    intents = _FakeIntents(result=_intent())
    result = _charge(_gateway(intents))

    assert result.payment_id == "pi_123"
    assert result.status == "completed"
    assert result.amount_minor == 4250
    assert result.currency == "CAD"
    assert result.receipt_reference == "https://pay.stripe.com/receipts/abc"

    params, options = intents.calls[0]
    assert params["amount"] == 4250
    assert params["currency"] == "cad"
    assert params["payment_method"] == "pm_card_visa"
    assert params["confirm"] is True
    assert options == {"idempotency_key": "key-1"}


def test_unexpanded_charge_has_no_receipt():
    intents = _FakeIntents(result=_intent(latest_charge="ch_123"))
    assert _charge(_gateway(intents)).receipt_reference is None


@pytest.mark.parametrize("status", ["requires_payment_method", "canceled", "processing", "requires_action"])
def test_non_completed_status_is_a_decline(status):
    intents = _FakeIntents(result=_intent(status=status))
    with pytest.raises(PaymentDeclined) as exc_info:
        _charge(_gateway(intents))
    assert exc_info.value.payment_id == "pi_123"
    assert exc_info.value.gateway_status == status


def test_card_error_is_a_decline():
    intents = _FakeIntents(error=stripe.CardError("Your card was declined.", "payment_method", "card_declined"))
    with pytest.raises(PaymentDeclined) as exc_info:
        _charge(_gateway(intents))
    assert exc_info.value.gateway_status == "card_declined"
    assert exc_info.value.message == "Your card was declined."


def test_rejected_payment_method_is_a_decline():
    error = stripe.InvalidRequestError("No such PaymentMethod", "payment_method", "resource_missing")
    with pytest.raises(PaymentDeclined):
        _charge(_gateway(_FakeIntents(error=error)))


def test_other_invalid_request_is_unavailable():
    error = stripe.InvalidRequestError("Invalid currency", "currency")
    with pytest.raises(GatewayUnavailable):
        _charge(_gateway(_FakeIntents(error=error)))


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("connection reset"),
        stripe.APIError("internal error", http_status=500),
        stripe.RateLimitError("too many requests", http_status=429),
    ],
)
def test_transport_errors_are_unavailable(error):
    with pytest.raises(GatewayUnavailable):
        _charge(_gateway(_FakeIntents(error=error)))


def test_timeout_is_unavailable():
    intents = _FakeIntents(result=_intent(), delay=0.3)
    with pytest.raises(GatewayUnavailable):
        _charge(_gateway(intents, timeout=0.05))


def test_missing_secret_key():
    with pytest.raises(RuntimeError):
        StripeGateway(None)


def test_refresh_rebuilds_client():
    keys = []

    def factory(api_key, **kw):
        keys.append(api_key)
        return SimpleNamespace(v1=SimpleNamespace(payment_intents=_FakeIntents(result=_intent())))

    gateway = StripeGateway("sk_old", client_factory=factory)
    gateway.refresh("sk_new")
    assert keys == ["sk_old", "sk_new"]


@pytest.mark.parametrize(
    "token,masked",
    [(None, "<empty>"), ("", "<empty>"), ("pm_1", "pm..."), ("pm_card_visa_1234", "pm_card_vi...")],
)
def test_mask_token(token, masked):
    assert mask_token(token) == masked


def test_public_config():
    cfg = public_config()
    assert cfg["provider"] == "stripe"
    assert cfg["currency"] == "CAD"
    assert "secret" not in " ".join(str(v) for v in cfg.values())
