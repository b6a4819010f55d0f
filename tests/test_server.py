"""
HTTP surface tests: routing, middlewares and the JSON envelope, driven through
aiohttp's test client against a fully wired StorefrontServer.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from profitcruiser.server import StorefrontServer

from .conftest import IPN_SECRET, make_settings, sign, webhook_body


@pytest_asyncio.fixture
async def server(tmp_path):
    settings = make_settings(
        tmp_path,
        np_api_key="test-api-key",
        np_ipn_secret=IPN_SECRET,
        allowed_origins=["https://shop.test", "https://*.preview.shop.test"],
    )
    storefront = StorefrontServer(settings)
    await storefront.prepare()
    return storefront


@pytest_asyncio.fixture
async def client(server):
    test_client = TestClient(TestServer(server.app))
    await test_client.start_server()
    yield test_client
    await test_client.close()


async def _login(client, email="admin@profitcruiser.gg", password="ChangeMe123!") -> dict[str, str]:
    response = await client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status == 200
    body = await response.json()
    return {"Authorization": f"Bearer {body['token']}"}


async def _register(client, username="julian") -> dict[str, str]:
    response = await client.post(
        "/api/auth/register",
        json={"email": f"{username}@example.com", "username": username, "password": "hunter22"},
    )
    assert response.status == 201
    body = await response.json()
    return {"Authorization": f"Bearer {body['token']}"}


class TestPublicRoutes:
    @pytest.mark.asyncio
    async def test_middleware_order(self, server):
        assert list(server.app.middlewares) == [
            server._cors_middleware,
            server._error_middleware,
            server._session_middleware,
        ]

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")

        assert response.status == 200
        assert await response.json() == {
            "ok": True,
            "orders": 2,
            "chats": 2,
            "nowpaymentsEnabled": True,
            "storageBackend": "json",
        }

    @pytest.mark.asyncio
    async def test_preflight(self, client):
        response = await client.options("/api/orders", headers={"Origin": "https://shop.test"})

        assert response.status == 204
        assert response.headers["Access-Control-Allow-Origin"] == "https://shop.test"
        assert "PATCH" in response.headers["Access-Control-Allow-Methods"]

    @pytest.mark.asyncio
    async def test_cors_wildcard_pattern(self, client):
        response = await client.get("/api/health", headers={"Origin": "https://pr-12.preview.shop.test"})
        assert response.headers["Access-Control-Allow-Origin"] == "https://pr-12.preview.shop.test"

    @pytest.mark.asyncio
    async def test_cors_on_error_responses(self, client):
        response = await client.get("/api/orders", headers={"Origin": "https://shop.test"})

        assert response.status == 401
        assert response.headers["Access-Control-Allow-Origin"] == "https://shop.test"

    @pytest.mark.asyncio
    async def test_providers(self, client):
        response = await client.get("/api/payments/providers")

        body = await response.json()
        assert [provider["key"] for provider in body["providers"]][:2] == ["manual", "nowpayments-btc"]

    @pytest.mark.asyncio
    async def test_crypto_prices(self, client, server):
        with patch.object(server.np_client, "fetch_estimate", new=AsyncMock(return_value={"btc": 0.0000231})):
            response = await client.get("/api/crypto/prices")

        body = await response.json()
        assert body["prices"] == {"btc": 0.0000231}
        assert [currency["code"] for currency in body["currencies"]] == ["btc", "eth", "usdterc20", "usdcerc20"]
        assert body["timestamp"]


class TestAuthRoutes:
    @pytest.mark.asyncio
    async def test_register_and_me(self, client):
        headers = await _register(client)

        response = await client.get("/api/auth/me", headers=headers)

        body = await response.json()
        assert body["user"]["username"] == "julian"
        assert "passwordHash" not in body["user"]

    @pytest.mark.asyncio
    async def test_duplicate_registration(self, client):
        await _register(client)
        response = await client.post(
            "/api/auth/register",
            json={"email": "julian@example.com", "username": "julian2", "password": "x"},
        )

        assert response.status == 409
        assert (await response.json())["ok"] is False

    @pytest.mark.asyncio
    async def test_bad_login(self, client):
        response = await client.post("/api/auth/login", json={"email": "admin@profitcruiser.gg", "password": "nope"})

        assert response.status == 401
        assert await response.json() == {"ok": False, "message": "Invalid email or password"}

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        response = await client.post(
            "/api/auth/login", data=b"{oops", headers={"Content-Type": "application/json"}
        )
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_me_requires_session(self, client):
        response = await client.get("/api/auth/me")
        assert response.status == 401


class TestOrderRoutes:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        headers = await _register(client)

        response = await client.post(
            "/api/orders",
            json={"amount": 14.50, "currency": "EUR", "product": "Private Chat", "paymentMethod": "manual"},
            headers=headers,
        )

        assert response.status == 201
        body = await response.json()
        assert body["ok"] is True
        assert body["order"]["status"] == "paid"
        assert body["chat"]["orderId"] == body["order"]["id"]
        assert body["payment"]["provider"] == "manual"

        listing = await (await client.get("/api/orders", headers=headers)).json()
        assert [order["id"] for order in listing["orders"]] == [body["order"]["id"]]

        chats = await (await client.get("/api/chats", headers=headers)).json()
        assert [chat["orderId"] for chat in chats["chats"]] == [body["order"]["id"]]

    @pytest.mark.asyncio
    async def test_create_requires_session(self, client):
        response = await client.post("/api/orders", json={"amount": 5, "product": "Robux"})
        assert response.status == 401

    @pytest.mark.asyncio
    async def test_validation_error(self, client):
        headers = await _register(client)
        response = await client.post("/api/orders", json={"product": "Robux"}, headers=headers)

        assert response.status == 400
        assert (await response.json())["message"] == "Missing order details"

    @pytest.mark.asyncio
    async def test_provider_outage_is_502(self, client, server):
        headers = await _register(client)

        with patch.object(
            server.np_client, "create_invoice", new=AsyncMock(side_effect=RuntimeError("connection reset"))
        ):
            response = await client.post(
                "/api/orders",
                json={"amount": 5, "product": "Robux", "paymentMethod": "nowpayments-btc"},
                headers=headers,
            )

        assert response.status == 502
        assert server.orders.list_for_user({"id": server.auth.find_by_email("julian@example.com")["id"]}) == []


class TestWebhookRoute:
    @pytest.mark.asyncio
    async def test_bad_signature(self, client):
        raw = webhook_body({"order_id": "#30219", "payment_status": "failed"})

        response = await client.post("/api/nowpayments/webhook", data=raw, headers={"x-nowpayments-sig": "bad"})

        assert response.status == 401

    @pytest.mark.asyncio
    async def test_signed_delivery(self, client, server):
        server.orders.find("#30220")["status"] = "pending"
        raw = webhook_body({"order_id": "#30220", "payment_status": "finished", "actually_paid": 14.5})

        response = await client.post(
            "/api/nowpayments/webhook",
            data=raw,
            headers={"x-nowpayments-sig": sign(raw), "Content-Type": "application/json"},
        )

        assert response.status == 204
        assert server.orders.find("#30220")["status"] == "paid"

    @pytest.mark.asyncio
    async def test_unknown_order_still_acknowledged(self, client):
        raw = webhook_body({"order_id": "#00000", "payment_status": "finished"})

        response = await client.post("/api/nowpayments/webhook", data=raw, headers={"x-nowpayments-sig": sign(raw)})

        assert response.status == 204


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_requires_admin(self, client):
        headers = await _register(client)

        for path in ("/api/admin/overview", "/api/admin/chats", "/api/admin/robux-settings"):
            response = await client.get(path, headers=headers)
            assert response.status == 401

    @pytest.mark.asyncio
    async def test_overview(self, client):
        headers = await _login(client)

        response = await client.get("/api/admin/overview", headers=headers)

        body = await response.json()
        assert body["ok"] is True
        assert body["totals"]["openChats"] == 1
        assert body["activityLog"][0]["message"] == "User Admin logged in"

    @pytest.mark.asyncio
    async def test_chat_moderation(self, client):
        headers = await _login(client)

        detail = await (await client.get("/api/admin/chats/chat-30219", headers=headers)).json()
        assert detail["chat"]["order"]["id"] == "#30219"

        response = await client.post(
            "/api/admin/chats/chat-30219/messages", json={"message": "Delivered!"}, headers=headers
        )
        assert response.status == 200
        assert (await response.json())["message"]["body"] == "Delivered!"

        response = await client.patch("/api/admin/chats/chat-30219", json={"status": "closed"}, headers=headers)
        assert (await response.json())["chat"]["status"] == "closed"

        response = await client.patch("/api/admin/chats/chat-30219", json={"status": "gone"}, headers=headers)
        assert response.status == 400

    @pytest.mark.asyncio
    async def test_unknown_chat(self, client):
        headers = await _login(client)

        response = await client.get("/api/admin/chats/nope", headers=headers)

        assert response.status == 404
        assert await response.json() == {"ok": False, "message": "Chat not found"}

    @pytest.mark.asyncio
    async def test_settings(self, client):
        headers = await _login(client)

        response = await client.patch("/api/admin/settings", json={"siteName": "Cruiser"}, headers=headers)
        assert (await response.json())["settings"]["siteName"] == "Cruiser"

        response = await client.patch("/api/admin/robux-settings", json={"maxRobux": "30000"}, headers=headers)
        assert (await response.json())["settings"]["maxRobux"] == 30000

        response = await client.get("/api/admin/robux-settings", headers=headers)
        assert (await response.json())["settings"]["maxRobux"] == 30000

    @pytest.mark.asyncio
    async def test_unexpected_error_is_500(self, client, server):
        headers = await _login(client)

        with patch.object(server.admin, "overview", side_effect=RuntimeError("boom")):
            response = await client.get("/api/admin/overview", headers=headers)

        assert response.status == 500
        assert await response.json() == {"ok": False, "message": "internal server error"}
