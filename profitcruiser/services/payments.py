import asyncio
import json
import re
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from ..config import Settings
from ..utils.helpers import to_float
from ..utils.logger import logger
from .errors import ConfigurationError, ProviderRequestError, ValidationError

LEGACY_PROVIDER_KEY = "nowpayments"
LEGACY_PROVIDER_LABEL = "NOWPayments"

SUPPORTED_CRYPTO_CURRENCIES = [
    {"code": "btc", "name": "Bitcoin", "symbol": "₿"},
    {"code": "eth", "name": "Ethereum", "symbol": "Ξ"},
    {"code": "usdterc20", "name": "Tether USD (ERC-20)", "symbol": "₮"},
    {"code": "usdcerc20", "name": "USD Coin (ERC-20)", "symbol": "$"},
]

PAID_STATUSES = {"finished", "confirmed", "completed"}
PENDING_STATUSES = {"waiting", "confirming", "sending", "partially_paid"}
FAILED_STATUSES = {"failed", "expired", "refunded", "chargeback"}


def normalize_status(raw: Optional[str]) -> str:
    """Map a provider status onto ``paid`` / ``pending`` / ``failed``.

    Unknown non-empty values pass through untouched; empty means ``pending``.
    """
    if raw is None:
        return "pending"
    value = str(raw)
    normalized = value.strip().lower()
    if normalized in PAID_STATUSES:
        return "paid"
    if normalized in PENDING_STATUSES:
        return "pending"
    if normalized in FAILED_STATUSES:
        return "failed"
    return value if normalized else "pending"


def resolve_template(template: str, order_id: str) -> str:
    return template.replace("{{orderId}}", quote(order_id, safe=""))


def title_case(value: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in re.split(r"[^a-zA-Z0-9]+", value) if part)


class NowPaymentsClient:
    """Thin client for the NOWPayments hosted-invoice API."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None):
        self.api_base = settings.np_api_base
        self.api_key = settings.np_api_key
        self.webhook_url = settings.np_webhook_url
        self.success_url_template = settings.np_success_url
        self.cancel_url_template = settings.np_cancel_url
        self.default_pay_currency = settings.pay_currency
        self.timeout_seconds = settings.np_timeout_seconds
        self.session = session

    async def create_invoice(
        self,
        *,
        order_id: str,
        amount: Any,
        currency: str,
        product: str,
        username: str,
        pay_currency: Optional[str] = None,
    ) -> dict[str, Any]:
        pay_currency = (pay_currency or self.default_pay_currency).lower()
        payload = {
            "price_amount": to_float(amount, default=0.0),
            "price_currency": str(currency).lower(),
            "pay_currency": pay_currency,
            "order_id": order_id,
            "order_description": f"{product} for {username}",
            "ipn_callback_url": self.webhook_url,
            "success_url": resolve_template(self.success_url_template, order_id) if self.success_url_template else None,
            "cancel_url": resolve_template(self.cancel_url_template, order_id) if self.cancel_url_template else None,
        }

        status, data = await self._request("POST", "/v1/invoice", json_body=payload)
        if status < 200 or status >= 300:
            message = data.get("message") or data.get("error") or f"NOWPayments request failed ({status})"
            raise ProviderRequestError(str(message), status=status)

        pay_amount = data.get("pay_amount")
        return {
            "invoiceId": data.get("id"),
            "invoiceUrl": data.get("invoice_url"),
            "status": str(data.get("status") or "waiting").lower(),
            "payCurrency": data.get("pay_currency") or pay_currency,
            "payAmount": to_float(pay_amount, default=None) if pay_amount is not None else None,
        }

    async def fetch_estimate(self, fiat_currency: str = "EUR") -> dict[str, Any]:
        try:
            status, data = await self._request(
                "GET",
                "/v1/estimate",
                params={"amount": "1", "currency_from": fiat_currency.lower()},
            )
        except ProviderRequestError as exc:
            logger.warning(f"Error fetching crypto prices: {exc.message}")
            return {}
        if status < 200 or status >= 300:
            logger.warning(f"Failed to fetch crypto prices from NOWPayments (status {status})")
            return {}
        return data

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> tuple[int, dict[str, Any]]:
        url = f"{self.api_base}{path}"
        headers = {"x-api-key": self.api_key}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            if self.session is not None and not self.session.closed:
                return await self._send(self.session, method, url, headers, json_body, params, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, method, url, headers, json_body, params, timeout)
        except asyncio.TimeoutError as exc:
            raise ProviderRequestError(f"NOWPayments request timed out after {self.timeout_seconds:g}s") from exc
        except aiohttp.ClientError as exc:
            raise ProviderRequestError(f"NOWPayments request failed: {exc}") from exc

    @staticmethod
    async def _send(session, method, url, headers, json_body, params, timeout) -> tuple[int, dict[str, Any]]:
        async with session.request(method, url, json=json_body, params=params, headers=headers, timeout=timeout) as response:
            raw = await response.text()
            try:
                data = json.loads(raw) if raw else {}
            except json.JSONDecodeError:
                data = {}
            if not isinstance(data, dict):
                data = {}
            return response.status, data


class PaymentProvider:
    key = ""
    label = ""
    type = "manual"
    pay_currency: Optional[str] = None
    supports_redirect = False

    async def create_payment(
        self,
        *,
        order_id: str,
        amount: Any,
        currency: str,
        product: str,
        username: str,
        created_at: str,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "type": self.type,
            "payCurrency": self.pay_currency,
            "supportsRedirect": self.supports_redirect is True,
        }


class ManualProvider(PaymentProvider):
    key = "manual"
    label = "Manual Payment"
    type = "manual"

    async def create_payment(self, *, order_id, amount, currency, product, username, created_at):
        normalized_amount = to_float(amount, default=0.0)
        return {
            "orderStatus": "paid",
            "payment": {
                "provider": self.key,
                "providerLabel": self.label,
                "invoiceId": None,
                "invoiceUrl": None,
                "status": "paid",
                "payCurrency": currency,
                "payAmount": normalized_amount,
                "actuallyPaid": normalized_amount,
                "createdAt": created_at,
                "updatedAt": created_at,
            },
        }


class HostedCryptoProvider(PaymentProvider):
    type = "crypto"
    supports_redirect = True

    def __init__(self, client: NowPaymentsClient, code: str, name: str):
        self.client = client
        self.code = code
        self.key = f"{LEGACY_PROVIDER_KEY}-{code}"
        self.label = f"{LEGACY_PROVIDER_LABEL} ({name})"
        self.pay_currency = code.upper()

    async def create_payment(self, *, order_id, amount, currency, product, username, created_at):
        invoice = await self.client.create_invoice(
            order_id=order_id,
            amount=amount,
            currency=currency,
            product=product,
            username=username,
            pay_currency=self.code,
        )
        return {
            "orderStatus": normalize_status(invoice["status"]),
            "payment": {
                "provider": self.key,
                "providerLabel": self.label,
                "invoiceId": invoice["invoiceId"],
                "invoiceUrl": invoice["invoiceUrl"],
                "status": invoice["status"],
                "payCurrency": invoice["payCurrency"],
                "payAmount": invoice["payAmount"],
                "actuallyPaid": None,
                "createdAt": created_at,
                "updatedAt": created_at,
            },
        }


class PaymentProviderRegistry:
    def __init__(self):
        self._providers: dict[str, PaymentProvider] = {}

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.key.lower()] = provider

    def get(self, key: Optional[str]) -> Optional[PaymentProvider]:
        if not key:
            return None
        return self._providers.get(str(key).strip().lower())

    def resolve(self, payment_method: Any = None) -> PaymentProvider:
        if isinstance(payment_method, str) and payment_method.strip():
            provider = self.get(payment_method)
            if provider is None:
                raise ValidationError("Unknown payment method")
            return provider

        provider = self.get(LEGACY_PROVIDER_KEY) or self.get("manual")
        if provider is None:
            raise ConfigurationError("No payment provider is enabled")
        return provider

    def label_for(self, provider_key: Optional[str]) -> str:
        if not provider_key:
            return "Payment"
        provider = self.get(provider_key)
        if provider is not None and provider.label:
            return provider.label
        if provider_key.lower() == LEGACY_PROVIDER_KEY:
            return LEGACY_PROVIDER_LABEL
        return title_case(provider_key)

    def list(self) -> list[dict[str, Any]]:
        return [provider.describe() for provider in self._providers.values()]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


def build_registry(settings: Settings, client: Optional[NowPaymentsClient] = None) -> PaymentProviderRegistry:
    registry = PaymentProviderRegistry()
    registry.register(ManualProvider())

    if settings.nowpayments_enabled:
        client = client or NowPaymentsClient(settings)
        for crypto in SUPPORTED_CRYPTO_CURRENCIES:
            registry.register(HostedCryptoProvider(client, crypto["code"], crypto["name"]))
        logger.info(f"NOWPayments enabled with {len(SUPPORTED_CRYPTO_CURRENCIES)} crypto providers.")
    else:
        logger.info("NOWPayments credentials missing; running in manual-only payment mode.")
    return registry
