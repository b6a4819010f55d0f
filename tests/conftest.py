"""
Shared fixtures for the storefront test suite.

Every fixture builds against a temporary JSON state file so tests never touch
the real ``data/`` directory or a database.
"""

import hashlib
import hmac
import json
from typing import Any, Optional

import pytest
import pytest_asyncio

from profitcruiser.config import Settings
from profitcruiser.services.activity_log import ActivityLog
from profitcruiser.services.chats import ChatService
from profitcruiser.services.orders import OrderService
from profitcruiser.services.payments import build_registry
from profitcruiser.services.state_store import StateStore
from profitcruiser.services.webhooks import WebhookReconciler

IPN_SECRET = "test-ipn-secret"


def sign(raw_body: bytes, secret: str = IPN_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def webhook_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def make_settings(tmp_path, **overrides) -> Settings:
    options: dict[str, Any] = {
        "state_file": tmp_path / "state.json",
        "storage_backend": "json",
        "np_api_key": "",
        "np_ipn_secret": "",
        "public_domain": "http://shop.test",
    }
    options.update(overrides)
    return Settings(**options)


class StorefrontHarness:
    """Wires the services together the same way the HTTP server does."""

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self.settings = settings
        self.store = StateStore(settings)
        self.activity = ActivityLog(self.store)
        self.registry = build_registry(settings, client)
        self.chats = ChatService(self.store, self.activity)
        self.orders = OrderService(self.store, self.registry, self.chats, self.activity)
        self.webhooks = WebhookReconciler(
            self.store,
            self.registry,
            self.orders,
            self.chats,
            self.activity,
            ipn_secret=settings.np_ipn_secret,
            enabled=settings.nowpayments_enabled,
        )

    async def load(self) -> "StorefrontHarness":
        await self.store.load(self.registry.label_for)
        return self

    def activity_messages(self) -> list[str]:
        return [entry["message"] for entry in self.store.state["activityLog"]]

    def chats_for(self, order_id: str) -> list[dict[str, Any]]:
        return [chat for chat in self.store.state["chats"] if chat["orderId"] == order_id]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def crypto_settings(tmp_path) -> Settings:
    return make_settings(tmp_path, np_api_key="test-api-key", np_ipn_secret=IPN_SECRET)


@pytest_asyncio.fixture
async def harness(settings) -> StorefrontHarness:
    return await StorefrontHarness(settings).load()


@pytest_asyncio.fixture
async def crypto_harness(crypto_settings) -> StorefrontHarness:
    return await StorefrontHarness(crypto_settings).load()


@pytest.fixture
def julian() -> dict[str, Any]:
    return {"id": "user-julian", "username": "julian", "email": "julian@example.com", "role": "user"}
