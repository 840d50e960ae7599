import json

import pytest
import stripe

from instant_case_study.billing_service import (
    BillingProviderError,
    DisabledStripeClient,
    StripeSdkClient,
    WebhookVerificationError,
    get_stripe_client,
)


class _StripeResource:
    def __init__(self, **fields):
        for key, value in fields.items():
            setattr(self, key, value)


def test_factory_returns_disabled_client_without_configuration(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    assert isinstance(get_stripe_client(), DisabledStripeClient)


def test_factory_returns_sdk_client_when_configured(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    assert isinstance(get_stripe_client(), StripeSdkClient)


def test_missing_signature_header_is_verification_error():
    client = StripeSdkClient(api_key=None, webhook_secret="whsec_abc")
    with pytest.raises(WebhookVerificationError):
        client.parse_webhook_event(payload=b"{}", signature_header=None)


def test_garbage_signature_header_is_verification_error():
    client = StripeSdkClient(api_key=None, webhook_secret="whsec_abc")
    with pytest.raises(WebhookVerificationError):
        client.parse_webhook_event(payload=b"{}", signature_header="not-a-signature")


def test_disabled_client_parses_unsigned_body():
    body = json.dumps({"id": "evt_1", "type": "invoice.paid"}).encode("utf-8")
    assert DisabledStripeClient().parse_webhook_event(body, None)["type"] == "invoice.paid"


def test_retrieve_customer_maps_deleted_marker(monkeypatch):
    calls = []

    def fake_retrieve(customer_id, **kwargs):
        calls.append((customer_id, kwargs))
        return _StripeResource(id=customer_id, deleted=True)

    monkeypatch.setattr(stripe.Customer, "retrieve", fake_retrieve)
    client = StripeSdkClient(api_key="sk_test_123", webhook_secret=None)

    customer = client.retrieve_customer("cus_gone")

    assert customer.deleted is True
    assert customer.email is None
    assert calls == [("cus_gone", {"api_key": "sk_test_123"})]


def test_retrieve_customer_missing_resource_is_none(monkeypatch):
    def fake_retrieve(customer_id, **kwargs):
        raise stripe.InvalidRequestError("No such customer", "id", code="resource_missing")

    monkeypatch.setattr(stripe.Customer, "retrieve", fake_retrieve)
    client = StripeSdkClient(api_key="sk_test_123", webhook_secret=None)

    assert client.retrieve_customer("cus_unknown") is None


def test_retrieve_subscription_connection_error_is_provider_error(monkeypatch):
    def fake_retrieve(subscription_id, **kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)
    client = StripeSdkClient(api_key="sk_test_123", webhook_secret=None)

    with pytest.raises(BillingProviderError):
        client.retrieve_subscription("sub_1")


def test_retrieve_subscription_maps_status_and_customer(monkeypatch):
    monkeypatch.setattr(
        stripe.Subscription,
        "retrieve",
        lambda subscription_id, **kwargs: _StripeResource(id=subscription_id, status="trialing", customer="cus_1"),
    )
    client = StripeSdkClient(api_key="sk_test_123", webhook_secret=None)

    subscription = client.retrieve_subscription("sub_1")

    assert subscription.status == "trialing"
    assert subscription.customer == "cus_1"


def test_lookups_require_api_key():
    client = StripeSdkClient(api_key=None, webhook_secret="whsec_abc")
    with pytest.raises(BillingProviderError):
        client.retrieve_customer("cus_1")
