import asyncio
import json
import os
import re
import ssl
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import asyncpg

from ..config import Settings
from ..utils.logger import logger
from .defaults import SCHEMA_VERSION, STATE_KEYS, create_default_state, default_collection
from .errors import PersistenceError

STATE_KV_KEY = "state"


def ensure_order_payment_shape(order: dict[str, Any], label_for: Callable[[str], str]) -> bool:
    """Backfill ``payment`` on a legacy order. Returns True when the order changed."""
    payment = order.get("payment")
    if not isinstance(payment, dict):
        if "payment" in order and payment is None:
            return False
        order["payment"] = None
        return True

    if not payment.get("providerLabel"):
        payment["providerLabel"] = label_for(str(payment.get("provider") or ""))
        return True
    return False


def migrate_state(document: dict[str, Any], label_for: Callable[[str], str]) -> bool:
    """One pass over a loaded document that brings it up to ``SCHEMA_VERSION``.

    Missing collections get their defaults and every order gets a canonical
    payment shape, so call sites can rely on the fields being present.
    """
    changed = False
    for key in STATE_KEYS:
        expected = default_collection(key)
        value = document.get(key)
        if isinstance(expected, list) and not isinstance(value, list):
            document[key] = expected
            changed = True
        elif isinstance(expected, dict) and not isinstance(value, dict):
            document[key] = expected
            changed = True

    for order in document["orders"]:
        if isinstance(order, dict) and ensure_order_payment_shape(order, label_for):
            changed = True

    for chat in document["chats"]:
        if isinstance(chat, dict) and not isinstance(chat.get("messages"), list):
            chat["messages"] = []
            changed = True

    if document.get("schemaVersion") != SCHEMA_VERSION:
        document["schemaVersion"] = SCHEMA_VERSION
        changed = True
    return changed


class StateStore:
    """Holds the whole application document in memory and persists it whole.

    ``lock`` is the single mutual-exclusion primitive for mutations: handlers
    take it, mutate ``state`` synchronously and ``await save()`` before
    releasing it.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.state_file = Path(settings.state_file)
        self.kv_table = settings.kv_table
        if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", self.kv_table):
            self.kv_table = "storefront_kv"
        self.use_database = settings.storage_backend == "postgres" or (
            settings.storage_backend == "auto" and bool(settings.database_url)
        )
        self.require_database = settings.storage_backend == "postgres" or settings.require_database
        self.pg_pool: Optional[asyncpg.Pool] = None
        self.state: dict[str, Any] = {}
        self.lock = asyncio.Lock()

    @property
    def backend(self) -> str:
        return "postgres" if self.use_database else "json"

    async def load(self, label_for: Callable[[str], str]) -> dict[str, Any]:
        if self.use_database and self.pg_pool is None:
            try:
                await self._init_database()
            except Exception as exc:
                if self.require_database:
                    logger.critical(f"State database init failed in required mode: {exc}")
                    raise
                logger.error(f"State database init failed, falling back to JSON file: {exc}")
                self.use_database = False

        document = await self._read_document()
        if document is None:
            logger.info(f"No persisted state found; writing default document ({self.backend}).")
            self.state = create_default_state(
                admin_email=self.settings.admin_email,
                admin_password=self.settings.admin_password,
                admin_username=self.settings.admin_username,
            )
            await self.save()
            return self.state

        if not isinstance(document, dict):
            raise PersistenceError("persisted state is not a JSON object")

        self.state = document
        if migrate_state(self.state, label_for):
            logger.info(f"Persisted state migrated to schema version {SCHEMA_VERSION}.")
            await self.save()
        return self.state

    async def save(self, document: Optional[dict[str, Any]] = None) -> None:
        if document is not None:
            self.state = document
        try:
            if self.use_database and self.pg_pool is not None:
                await self._db_set_json(STATE_KV_KEY, self.state)
            else:
                self._write_json(self.state_file, self.state)
        except Exception as exc:
            logger.error(f"Failed to persist state ({self.backend}): {exc}")
            raise PersistenceError("failed to persist state") from exc

    async def close(self) -> None:
        if self.pg_pool is not None:
            await self.pg_pool.close()
            self.pg_pool = None

    async def _read_document(self) -> Any:
        if self.use_database and self.pg_pool is not None:
            return await self._db_get_json(STATE_KV_KEY)
        if not self.state_file.exists():
            return None
        try:
            return json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"could not read state file {self.state_file}") from exc

    def _write_json(self, path: Path, payload: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, path)

    async def _init_database(self) -> None:
        if not self.settings.database_url:
            raise RuntimeError("DATABASE_URL or SUPABASE_DATABASE_URL is required for postgres storage")

        dsn, ssl_arg = normalize_postgres_dsn(self.settings.database_url)
        pool_kwargs: dict[str, Any] = {
            "dsn": dsn,
            "min_size": 1,
            "max_size": 5,
            "command_timeout": 30,
        }
        if ssl_arg is not None:
            pool_kwargs["ssl"] = ssl_arg
        try:
            self.pg_pool = await asyncpg.create_pool(**pool_kwargs)
        except Exception as exc:
            if "CERTIFICATE_VERIFY_FAILED" not in str(exc):
                raise

            logger.warning("State DB certificate verification failed. Retrying with ssl verification disabled.")
            retry_ctx = ssl.create_default_context()
            retry_ctx.check_hostname = False
            retry_ctx.verify_mode = ssl.CERT_NONE
            pool_kwargs["ssl"] = retry_ctx
            self.pg_pool = await asyncpg.create_pool(**pool_kwargs)

        assert self.pg_pool is not None
        async with self.pg_pool.acquire() as conn:
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.kv_table} (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
                """
            )

        # Carry an existing JSON document over on first switch to the database.
        existing = await self._db_get_json(STATE_KV_KEY)
        if existing is None and self.state_file.exists():
            try:
                seed = json.loads(self.state_file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                seed = None
            if isinstance(seed, dict):
                logger.info(f"Seeding state database from {self.state_file}.")
                await self._db_set_json(STATE_KV_KEY, seed)

    async def _db_get_json(self, key: str) -> Any:
        if self.pg_pool is None:
            return None

        row = await self.pg_pool.fetchrow(f"SELECT value_json FROM {self.kv_table} WHERE key = $1", key)
        if row is None:
            return None
        try:
            return json.loads(str(row.get("value_json") or ""))
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"stored value for {key} is not valid JSON") from exc

    async def _db_set_json(self, key: str, value: Any) -> None:
        if self.pg_pool is None:
            return
        payload = json.dumps(value, ensure_ascii=False)
        await self.pg_pool.execute(
            f"""
            INSERT INTO {self.kv_table} (key, value_json, updated_at)
            VALUES ($1, $2, NOW())
            ON CONFLICT (key)
            DO UPDATE SET value_json = EXCLUDED.value_json, updated_at = NOW()
            """,
            key,
            payload,
        )


SSL_ON = {"1", "true", "yes", "require", "verify-ca", "verify-full"}
SSL_OFF = {"0", "false", "no", "disable"}
SUPABASE_POOLER_SUFFIX = ".pooler.supabase.com"
SUPABASE_HOST_SUFFIXES = (SUPABASE_POOLER_SUFFIX, ".supabase.co")


def _tls_requested(query_flags: list[str], host: str) -> bool:
    """`sslmode`/`ssl` query flags win; otherwise hosted Supabase gets TLS."""
    if any(flag in SSL_OFF for flag in query_flags):
        return False
    if any(flag in SSL_ON for flag in query_flags):
        return True
    return host.endswith(SUPABASE_HOST_SUFFIXES)


def _tls_verified(host: str) -> bool:
    override = os.getenv("DB_SSL_VERIFY", "").strip().lower()
    if override in {"1", "true", "yes"}:
        return True
    if override in {"0", "false", "no"}:
        return False
    # the transaction pooler presents a certificate that fails hostname checks
    return not host.endswith(SUPABASE_POOLER_SUFFIX)


def _tls_context(verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def normalize_postgres_dsn(db_url: str) -> tuple[str, Optional[ssl.SSLContext]]:
    """Turn a hosted Postgres URL into an asyncpg DSN plus its `ssl=` argument.

    asyncpg rejects libpq's `sslmode` query parameter, so it is stripped from
    the DSN and translated into an SSL context instead.
    """
    dsn = re.sub(r"^postgresql://", "postgres://", db_url.strip())
    parsed = urlparse(dsn)
    if parsed.scheme != "postgres":
        return dsn, None

    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    flags = [str(query.pop(name, "")).strip().lower() for name in ("sslmode", "ssl")]
    host = (parsed.hostname or "").lower()

    ssl_arg = _tls_context(_tls_verified(host)) if _tls_requested(flags, host) else None
    return urlunparse(parsed._replace(query=urlencode(query))), ssl_arg
