"""
Payment provider registry, status normalization and the NOWPayments client.

The client tests run against a fake NOWPayments API served by aiohttp's
TestServer so the real request/response handling is exercised.
"""

from typing import Any
from unittest.mock import patch

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from profitcruiser.services.errors import ConfigurationError, ProviderRequestError, ValidationError
from profitcruiser.services.payments import (
    HostedCryptoProvider,
    ManualProvider,
    NowPaymentsClient,
    PaymentProviderRegistry,
    build_registry,
    normalize_status,
    resolve_template,
)

from .conftest import make_settings


class TestNormalizeStatus:
    @pytest.mark.parametrize("raw", ["finished", "confirmed", "completed", "FINISHED", " Confirmed "])
    def test_paid_statuses(self, raw):
        assert normalize_status(raw) == "paid"

    @pytest.mark.parametrize("raw", ["waiting", "confirming", "sending", "partially_paid"])
    def test_pending_statuses(self, raw):
        assert normalize_status(raw) == "pending"

    @pytest.mark.parametrize("raw", ["failed", "expired", "refunded", "chargeback"])
    def test_failed_statuses(self, raw):
        assert normalize_status(raw) == "failed"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_empty_means_pending(self, raw):
        assert normalize_status(raw) == "pending"

    def test_unknown_status_passes_through(self):
        assert normalize_status("on_hold") == "on_hold"

    def test_normalization_is_stable(self):
        for raw in ["finished", "waiting", "expired", "on_hold", None]:
            once = normalize_status(raw)
            assert normalize_status(once) == once


class TestRegistry:
    def test_manual_only_when_credentials_missing(self, tmp_path):
        registry = build_registry(make_settings(tmp_path))

        assert [provider["key"] for provider in registry.list()] == ["manual"]
        assert registry.resolve(None).key == "manual"
        assert registry.resolve("").key == "manual"

    def test_crypto_providers_registered_when_enabled(self, tmp_path):
        settings = make_settings(tmp_path, np_api_key="key", np_ipn_secret="secret")
        registry = build_registry(settings)

        keys = [provider["key"] for provider in registry.list()]
        assert keys == [
            "manual",
            "nowpayments-btc",
            "nowpayments-eth",
            "nowpayments-usdterc20",
            "nowpayments-usdcerc20",
        ]
        described = {provider["key"]: provider for provider in registry.list()}
        assert described["nowpayments-btc"] == {
            "key": "nowpayments-btc",
            "label": "NOWPayments (Bitcoin)",
            "type": "crypto",
            "payCurrency": "BTC",
            "supportsRedirect": True,
        }
        assert described["manual"]["supportsRedirect"] is False

    def test_resolve_is_case_insensitive(self, tmp_path):
        settings = make_settings(tmp_path, np_api_key="key", np_ipn_secret="secret")
        registry = build_registry(settings)

        assert registry.resolve("NOWPayments-ETH").key == "nowpayments-eth"
        assert registry.resolve("MANUAL").key == "manual"

    def test_unknown_method_is_rejected(self, tmp_path):
        registry = build_registry(make_settings(tmp_path))

        with pytest.raises(ValidationError):
            registry.resolve("paypal")

    def test_fallback_prefers_legacy_key_then_manual(self):
        registry = PaymentProviderRegistry()
        legacy = ManualProvider()
        legacy.key = "nowpayments"
        registry.register(legacy)
        registry.register(ManualProvider())

        assert registry.resolve(None) is legacy

    def test_empty_registry_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            PaymentProviderRegistry().resolve(None)

    def test_label_for(self, tmp_path):
        registry = build_registry(make_settings(tmp_path))

        assert registry.label_for("manual") == "Manual Payment"
        assert registry.label_for("nowpayments") == "NOWPayments"
        assert registry.label_for("") == "Payment"
        assert registry.label_for(None) == "Payment"
        assert registry.label_for("bank-transfer") == "Bank Transfer"


class TestManualProvider:
    @pytest.mark.asyncio
    async def test_manual_payment_is_paid_immediately(self):
        result = await ManualProvider().create_payment(
            order_id="#10001",
            amount="14.50",
            currency="EUR",
            product="Private Chat",
            username="julian",
            created_at="2025-10-09T09:00:00+00:00",
        )

        assert result["orderStatus"] == "paid"
        payment = result["payment"]
        assert payment["provider"] == "manual"
        assert payment["status"] == "paid"
        assert payment["payAmount"] == 14.5
        assert payment["actuallyPaid"] == 14.5
        assert payment["invoiceUrl"] is None
        assert payment["createdAt"] == payment["updatedAt"] == "2025-10-09T09:00:00+00:00"


def test_resolve_template_encodes_order_id():
    url = resolve_template("http://shop.test/account?order={{orderId}}&status=success", "#30219")
    assert url == "http://shop.test/account?order=%2330219&status=success"


class FakeNowPayments:
    """Minimal stand-in for the NOWPayments REST API."""

    def __init__(self):
        self.invoices: list[dict[str, Any]] = []
        self.api_keys: list[str] = []
        self.invoice_status = 200
        self.invoice_response: dict[str, Any] = {}
        self.estimate_status = 200

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v1/invoice", self.invoice)
        app.router.add_get("/v1/estimate", self.estimate)
        return app

    async def invoice(self, request: web.Request):
        self.api_keys.append(request.headers.get("x-api-key", ""))
        body = await request.json()
        self.invoices.append(body)
        if self.invoice_status != 200:
            return web.json_response(self.invoice_response, status=self.invoice_status)
        return web.json_response(
            {
                "id": "inv-555",
                "invoice_url": "https://nowpayments.io/payment/?iid=inv-555",
                "pay_currency": body["pay_currency"],
                "pay_amount": "0.000231",
                **self.invoice_response,
            }
        )

    async def estimate(self, request: web.Request):
        if self.estimate_status != 200:
            return web.json_response({"message": "unavailable"}, status=self.estimate_status)
        return web.json_response({"currency_from": request.query["currency_from"], "estimated_amount": "0.0000231"})


@pytest_asyncio.fixture
async def fake_api():
    fake = FakeNowPayments()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = str(server.make_url("/")).rstrip("/")
    yield fake
    await server.close()


def _client_for(tmp_path, fake) -> NowPaymentsClient:
    settings = make_settings(
        tmp_path,
        np_api_base=fake.base_url,
        np_api_key="test-api-key",
        np_ipn_secret="secret",
        np_timeout_seconds=5,
    )
    return NowPaymentsClient(settings)


class TestNowPaymentsClient:
    @pytest.mark.asyncio
    async def test_create_invoice(self, tmp_path, fake_api):
        client = _client_for(tmp_path, fake_api)

        invoice = await client.create_invoice(
            order_id="#30221",
            amount=7.99,
            currency="EUR",
            product="Auto Rob Hub",
            username="Alex#123",
            pay_currency="eth",
        )

        assert invoice == {
            "invoiceId": "inv-555",
            "invoiceUrl": "https://nowpayments.io/payment/?iid=inv-555",
            "status": "waiting",
            "payCurrency": "eth",
            "payAmount": 0.000231,
        }
        sent = fake_api.invoices[0]
        assert fake_api.api_keys == ["test-api-key"]
        assert sent["price_amount"] == 7.99
        assert sent["price_currency"] == "eur"
        assert sent["order_id"] == "#30221"
        assert sent["order_description"] == "Auto Rob Hub for Alex#123"
        assert sent["ipn_callback_url"] == "http://shop.test/api/nowpayments/webhook"
        assert sent["success_url"] == "http://shop.test/account?order=%2330221&status=success"
        assert sent["cancel_url"] == "http://shop.test/account?order=%2330221&status=cancelled"

    @pytest.mark.asyncio
    async def test_provider_error_message_is_surfaced(self, tmp_path, fake_api):
        fake_api.invoice_status = 400
        fake_api.invoice_response = {"message": "price_amount is too small"}
        client = _client_for(tmp_path, fake_api)

        with pytest.raises(ProviderRequestError) as excinfo:
            await client.create_invoice(
                order_id="#30222", amount=0.01, currency="EUR", product="Tiny", username="julian"
            )

        assert excinfo.value.message == "price_amount is too small"
        assert excinfo.value.status == 400

    @pytest.mark.asyncio
    async def test_provider_error_without_message(self, tmp_path, fake_api):
        fake_api.invoice_status = 503
        client = _client_for(tmp_path, fake_api)

        with pytest.raises(ProviderRequestError, match=r"NOWPayments request failed \(503\)"):
            await client.create_invoice(
                order_id="#30223", amount=5, currency="EUR", product="Anything", username="julian"
            )

    @pytest.mark.asyncio
    async def test_hosted_provider_maps_invoice(self, tmp_path, fake_api):
        provider = HostedCryptoProvider(_client_for(tmp_path, fake_api), "btc", "Bitcoin")

        result = await provider.create_payment(
            order_id="#30224",
            amount=10,
            currency="EUR",
            product="Robux",
            username="julian",
            created_at="2025-10-09T09:00:00+00:00",
        )

        assert result["orderStatus"] == "pending"
        assert result["payment"]["provider"] == "nowpayments-btc"
        assert result["payment"]["providerLabel"] == "NOWPayments (Bitcoin)"
        assert result["payment"]["invoiceUrl"] == "https://nowpayments.io/payment/?iid=inv-555"
        assert result["payment"]["actuallyPaid"] is None
        assert fake_api.invoices[0]["pay_currency"] == "btc"

    @pytest.mark.asyncio
    async def test_fetch_estimate(self, tmp_path, fake_api):
        client = _client_for(tmp_path, fake_api)

        assert await client.fetch_estimate("EUR") == {"currency_from": "eur", "estimated_amount": "0.0000231"}

    @pytest.mark.asyncio
    async def test_fetch_estimate_failure_returns_empty(self, tmp_path, fake_api):
        fake_api.estimate_status = 500
        client = _client_for(tmp_path, fake_api)

        with patch("profitcruiser.services.payments.logger") as log:
            assert await client.fetch_estimate("EUR") == {}

        log.warning.assert_called_once_with("Failed to fetch crypto prices from NOWPayments (status 500)")
