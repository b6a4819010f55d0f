import fnmatch
from typing import Any, Optional

from aiohttp import ClientSession, web

from .config import Settings
from .services.activity_log import ActivityLog
from .services.admin import AdminService
from .services.auth import AuthService, public_user
from .services.chats import ChatService
from .services.errors import AuthError, StorefrontError, ValidationError
from .services.notifier import DiscordNotifier
from .services.orders import OrderService
from .services.payments import SUPPORTED_CRYPTO_CURRENCIES, NowPaymentsClient, build_registry
from .services.state_store import StateStore
from .services.webhooks import WebhookReconciler
from .utils.helpers import utc_now_iso
from .utils.logger import logger


class StorefrontServer:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.host = settings.host
        self.port = settings.port
        self.allowed_origins = settings.allowed_origins or ["*"]

        self.store = StateStore(settings)
        self.activity = ActivityLog(self.store)
        self.np_client = NowPaymentsClient(settings)
        self.registry = build_registry(settings, self.np_client)
        self.notifier = DiscordNotifier(settings.discord_webhook_url)
        self.chats = ChatService(self.store, self.activity)
        self.orders = OrderService(self.store, self.registry, self.chats, self.activity, notifier=self.notifier)
        self.webhooks = WebhookReconciler(
            self.store,
            self.registry,
            self.orders,
            self.chats,
            self.activity,
            ipn_secret=settings.np_ipn_secret,
            enabled=settings.nowpayments_enabled,
            notifier=self.notifier,
        )
        self.auth = AuthService(
            self.store,
            self.activity,
            session_ttl_days=settings.session_ttl_days,
            admin_email=settings.admin_email,
            admin_password=settings.admin_password,
            admin_username=settings.admin_username,
        )
        self.admin = AdminService(self.store, self.activity)

        self.app = web.Application(
            middlewares=[
                self._cors_middleware,
                self._error_middleware,
                self._session_middleware,
            ]
        )
        self.app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        self.app.router.add_get("/api/health", self.health)
        self.app.router.add_post("/api/auth/register", self.auth_register)
        self.app.router.add_post("/api/auth/login", self.auth_login)
        self.app.router.add_get("/api/auth/me", self.auth_me)
        self.app.router.add_get("/api/payments/providers", self.payment_providers)
        self.app.router.add_get("/api/crypto/prices", self.crypto_prices)
        self.app.router.add_post("/api/orders", self.create_order)
        self.app.router.add_get("/api/orders", self.list_orders)
        self.app.router.add_post("/api/nowpayments/webhook", self.nowpayments_webhook)
        self.app.router.add_get("/api/chats", self.list_chats)
        self.app.router.add_get("/api/admin/chats", self.admin_list_chats)
        self.app.router.add_get("/api/admin/chats/{chat_id}", self.admin_get_chat)
        self.app.router.add_post("/api/admin/chats/{chat_id}/messages", self.admin_post_message)
        self.app.router.add_post("/api/admin/chats/{chat_id}", self.admin_post_message)
        self.app.router.add_patch("/api/admin/chats/{chat_id}", self.admin_set_chat_status)
        self.app.router.add_get("/api/admin/overview", self.admin_overview)
        self.app.router.add_patch("/api/admin/settings", self.admin_update_settings)
        self.app.router.add_get("/api/admin/robux-settings", self.admin_get_robux_settings)
        self.app.router.add_patch("/api/admin/robux-settings", self.admin_update_robux_settings)

        self.http_session: Optional[ClientSession] = None
        self.runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except StorefrontError as exc:
            return web.json_response({"ok": False, "message": exc.message}, status=exc.status)
        except Exception as exc:
            logger.exception(f"Storefront API error on {request.path}: {exc}")
            return web.json_response(
                {"ok": False, "message": "internal server error"},
                status=500,
            )

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        response = await handler(request)
        self._apply_cors_headers(request, response)
        return response

    @web.middleware
    async def _session_middleware(self, request: web.Request, handler):
        request["user"] = None
        if request.method != "OPTIONS":
            request["user"] = self.auth.authenticate(request.headers.get("Authorization"))
        return await handler(request)

    async def _handle_options(self, request: web.Request):
        return web.Response(status=204)

    def _apply_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        origin = request.headers.get("Origin")

        if "*" in self.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = "*"
        elif origin and self._is_origin_allowed(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        else:
            response.headers["Access-Control-Allow-Origin"] = self.allowed_origins[0]

        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,OPTIONS"
        request_headers = request.headers.get("Access-Control-Request-Headers")
        response.headers["Access-Control-Allow-Headers"] = request_headers or "Content-Type,Authorization"

    def _is_origin_allowed(self, origin: str) -> bool:
        for allowed in self.allowed_origins:
            if allowed == origin:
                return True
            if "*" in allowed and fnmatch.fnmatch(origin, allowed):
                return True
        return False

    async def prepare(self) -> None:
        """Load persisted state and make sure an admin account exists."""
        await self.store.load(self.registry.label_for)
        async with self.store.lock:
            if self.auth.ensure_admin_user():
                await self.store.save()

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.http_session = ClientSession()
        self.np_client.session = self.http_session
        self.notifier.session = self.http_session
        await self.prepare()

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()

        logger.info(
            f"Storefront API listening on {self.host}:{self.port} "
            f"(state storage: {self.store.backend}, NOWPayments: "
            f"{'enabled' if self.settings.nowpayments_enabled else 'disabled'})"
        )

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        if self.http_session is not None:
            await self.http_session.close()
            self.http_session = None
        await self.store.close()
        logger.info("Storefront API stopped.")

    def _require_user(self, request: web.Request) -> dict[str, Any]:
        user = request.get("user")
        if user is None:
            raise AuthError("Unauthorized")
        return user

    def _require_admin(self, request: web.Request) -> dict[str, Any]:
        user = self._require_user(request)
        if user.get("role") != "admin":
            raise AuthError("Unauthorized")
        return user

    async def _safe_json(self, request: web.Request) -> dict[str, Any]:
        if not request.can_read_body:
            return {}
        try:
            body = await request.json()
        except ValueError as exc:
            raise ValidationError("invalid json body") from exc
        if not isinstance(body, dict):
            raise ValidationError("invalid json body")
        return body

    async def health(self, request: web.Request):
        return web.json_response(
            {
                "ok": True,
                "orders": len(self.store.state.get("orders", [])),
                "chats": len(self.store.state.get("chats", [])),
                "nowpaymentsEnabled": self.settings.nowpayments_enabled,
                "storageBackend": self.store.backend,
            }
        )

    async def auth_register(self, request: web.Request):
        payload = await self._safe_json(request)
        token, user = await self.auth.register(payload)
        return web.json_response({"ok": True, "token": token, "user": public_user(user)}, status=201)

    async def auth_login(self, request: web.Request):
        payload = await self._safe_json(request)
        token, user = await self.auth.login(payload)
        return web.json_response({"ok": True, "token": token, "user": public_user(user)})

    async def auth_me(self, request: web.Request):
        user = self._require_user(request)
        return web.json_response({"ok": True, "user": public_user(user)})

    async def payment_providers(self, request: web.Request):
        return web.json_response({"ok": True, "providers": self.registry.list()})

    async def crypto_prices(self, request: web.Request):
        prices: dict[str, Any] = {}
        if self.settings.nowpayments_enabled:
            prices = await self.np_client.fetch_estimate("EUR")
        return web.json_response(
            {
                "ok": True,
                "prices": prices,
                "currencies": SUPPORTED_CRYPTO_CURRENCIES,
                "timestamp": utc_now_iso(),
            }
        )

    async def create_order(self, request: web.Request):
        user = self._require_user(request)
        payload = await self._safe_json(request)
        result = await self.orders.create_order(user, payload)
        return web.json_response({"ok": True, **result}, status=201)

    async def list_orders(self, request: web.Request):
        orders = self.orders.list_for_user(request.get("user"))
        return web.json_response({"ok": True, "orders": orders})

    async def nowpayments_webhook(self, request: web.Request):
        raw_body = await request.read()
        await self.webhooks.handle(raw_body, request.headers)
        return web.Response(status=204)

    async def list_chats(self, request: web.Request):
        user = self._require_user(request)
        return web.json_response({"ok": True, "chats": self.chats.list_for_user(user)})

    async def admin_list_chats(self, request: web.Request):
        self._require_admin(request)
        return web.json_response({"ok": True, "chats": self.chats.list_all()})

    async def admin_get_chat(self, request: web.Request):
        self._require_admin(request)
        chat = self.chats.get(request.match_info["chat_id"])
        return web.json_response({"ok": True, "chat": self.chats.with_order(chat)})

    async def admin_post_message(self, request: web.Request):
        self._require_admin(request)
        payload = await self._safe_json(request)
        async with self.store.lock:
            message = await self.chats.post_admin_message(request.match_info["chat_id"], payload.get("message"))
        return web.json_response({"ok": True, "message": message})

    async def admin_set_chat_status(self, request: web.Request):
        self._require_admin(request)
        payload = await self._safe_json(request)
        async with self.store.lock:
            chat = await self.chats.set_status(request.match_info["chat_id"], payload.get("status"))
        return web.json_response({"ok": True, "chat": chat})

    async def admin_overview(self, request: web.Request):
        self._require_admin(request)
        return web.json_response({"ok": True, **self.admin.overview()})

    async def admin_update_settings(self, request: web.Request):
        self._require_admin(request)
        payload = await self._safe_json(request)
        settings = await self.admin.update_settings(payload)
        return web.json_response({"ok": True, "settings": settings})

    async def admin_get_robux_settings(self, request: web.Request):
        self._require_admin(request)
        return web.json_response({"ok": True, "settings": self.admin.robux_settings()})

    async def admin_update_robux_settings(self, request: web.Request):
        self._require_admin(request)
        payload = await self._safe_json(request)
        settings = await self.admin.update_robux_settings(payload)
        return web.json_response({"ok": True, "settings": settings})
