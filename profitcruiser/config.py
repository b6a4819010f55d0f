import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .utils.helpers import to_bool, to_float, to_int

DEFAULT_ADMIN_EMAIL = "admin@profitcruiser.gg"
DEFAULT_ADMIN_PASSWORD = "ChangeMe123!"


def _env(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def _sanitize_domain(value: str) -> str:
    if not value:
        return ""
    return value[:-1] if value.endswith("/") else value


class Settings:
    def __init__(
        self,
        *,
        host: str = "0.0.0.0",
        port: int = 5174,
        public_domain: str = "http://localhost:5173",
        allowed_origins: Optional[list[str]] = None,
        np_api_base: str = "https://api.nowpayments.io",
        np_api_key: str = "",
        np_ipn_secret: str = "",
        pay_currency: str = "btc",
        np_webhook_url: Optional[str] = None,
        np_success_url: Optional[str] = None,
        np_cancel_url: Optional[str] = None,
        np_timeout_seconds: float = 20.0,
        storage_backend: str = "json",
        state_file: Path = Path("data/state.json"),
        database_url: str = "",
        kv_table: str = "storefront_kv",
        require_database: bool = False,
        admin_email: str = DEFAULT_ADMIN_EMAIL,
        admin_password: str = DEFAULT_ADMIN_PASSWORD,
        admin_username: str = "Admin",
        session_ttl_days: int = 7,
        discord_webhook_url: str = "",
    ):
        self.host = host
        self.port = port
        self.public_domain = _sanitize_domain(public_domain)
        self.allowed_origins = allowed_origins or ["*"]
        self.np_api_base = np_api_base.rstrip("/")
        self.np_api_key = np_api_key
        self.np_ipn_secret = np_ipn_secret
        self.pay_currency = (pay_currency or "btc").lower()
        self.np_webhook_url = (
            np_webhook_url if np_webhook_url is not None else f"{self.public_domain}/api/nowpayments/webhook"
        )
        self.np_success_url = (
            np_success_url
            if np_success_url is not None
            else f"{self.public_domain}/account?order={{{{orderId}}}}&status=success"
        )
        self.np_cancel_url = (
            np_cancel_url
            if np_cancel_url is not None
            else f"{self.public_domain}/account?order={{{{orderId}}}}&status=cancelled"
        )
        self.np_timeout_seconds = np_timeout_seconds
        self.storage_backend = storage_backend if storage_backend in {"auto", "json", "postgres"} else "auto"
        self.state_file = Path(state_file)
        self.database_url = database_url
        self.kv_table = kv_table
        self.require_database = require_database
        self.admin_email = admin_email.lower()
        self.admin_password = admin_password
        self.admin_username = admin_username
        self.session_ttl_days = session_ttl_days
        self.discord_webhook_url = discord_webhook_url

    @property
    def nowpayments_enabled(self) -> bool:
        return bool(self.np_api_key and self.np_ipn_secret and self.np_webhook_url)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        raw_origins = _env("FRONTEND_ORIGINS") or _env("FRONTEND_ORIGIN") or "*"
        origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        public_domain = _env("PUBLIC_DOMAIN", "http://localhost:5173")

        return cls(
            host=_env("STORE_API_HOST", "0.0.0.0"),
            port=to_int(_env("PORT"), default=5174) or 5174,
            public_domain=public_domain,
            allowed_origins=origins,
            np_api_base=_env("NP_API_BASE", "https://api.nowpayments.io"),
            np_api_key=_env("NP_API_KEY"),
            np_ipn_secret=_env("NP_IPN_SECRET"),
            pay_currency=_env("PAY_CURRENCY", "btc"),
            np_webhook_url=os.getenv("NP_WEBHOOK_URL"),
            np_success_url=os.getenv("NP_SUCCESS_URL"),
            np_cancel_url=os.getenv("NP_CANCEL_URL"),
            np_timeout_seconds=to_float(_env("NP_TIMEOUT_SECONDS"), default=20.0) or 20.0,
            storage_backend=_env("STATE_STORAGE_BACKEND", "auto").lower(),
            state_file=Path(_env("STATE_FILE", "data/state.json")),
            database_url=_env("SUPABASE_DATABASE_URL") or _env("DATABASE_URL"),
            kv_table=_env("STATE_KV_TABLE", "storefront_kv"),
            require_database=to_bool(os.getenv("STATE_REQUIRE_DATABASE"), default=False),
            admin_email=_env("ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL),
            admin_password=_env("ADMIN_PASSWORD", DEFAULT_ADMIN_PASSWORD),
            admin_username=_env("ADMIN_USERNAME", "Admin"),
            session_ttl_days=to_int(_env("SESSION_TTL_DAYS"), default=7) or 7,
            discord_webhook_url=_env("DISCORD_WEBHOOK_URL"),
        )
