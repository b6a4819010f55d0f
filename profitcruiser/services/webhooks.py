import hashlib
import hmac
import json
from typing import Any, Mapping, Optional

from ..utils.helpers import to_float, utc_now_iso
from ..utils.logger import logger
from .activity_log import ActivityLog
from .chats import ChatService
from .errors import SignatureError
from .notifier import DiscordNotifier
from .orders import OrderService
from .payments import LEGACY_PROVIDER_KEY, PaymentProviderRegistry, normalize_status
from .state_store import StateStore, ensure_order_payment_shape

SIGNATURE_HEADERS = ("x-nowpayments-sig", "x-nowpayments-signature")


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def verify_signature(raw_body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret or not signature:
        return False
    expected = compute_signature(raw_body, secret)
    provided = signature.strip().lower().encode("utf-8", "surrogateescape")
    return hmac.compare_digest(expected.encode("ascii"), provided)


def _pick(payload: Mapping[str, Any], key: str, fallback: Any) -> Any:
    value = payload.get(key)
    return value if value is not None else fallback


class WebhookReconciler:
    """Applies signed NOWPayments IPN callbacks to stored orders.

    Only a bad signature is reported back to the caller; every other anomaly
    (unknown order, malformed JSON, missing fields) is a silent no-op so the
    provider's retries and out-of-order deliveries are harmless.
    """

    def __init__(
        self,
        store: StateStore,
        registry: PaymentProviderRegistry,
        orders: OrderService,
        chats: ChatService,
        activity: ActivityLog,
        ipn_secret: str,
        enabled: bool,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.store = store
        self.registry = registry
        self.orders = orders
        self.chats = chats
        self.activity = activity
        self.ipn_secret = ipn_secret
        self.enabled = enabled
        self.notifier = notifier

    @staticmethod
    def signature_from(headers: Mapping[str, str]) -> str:
        for name in SIGNATURE_HEADERS:
            value = headers.get(name)
            if value:
                return str(value)
        return ""

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self.enabled or not raw_body:
            return

        if not verify_signature(raw_body, self.signature_from(headers), self.ipn_secret):
            logger.warning("Rejected NOWPayments webhook with missing or invalid signature")
            raise SignatureError("Invalid signature")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        order_id = payload.get("order_id") or payload.get("orderId")
        if not order_id:
            return

        async with self.store.lock:
            order = self.orders.find(str(order_id))
            if order is None:
                logger.info(f"Ignoring webhook for unknown order {order_id}")
                return
            confirmed = await self._reconcile(order, payload)

        if confirmed and self.notifier is not None:
            await self.notifier.payment_confirmed(order)

    async def _reconcile(self, order: dict[str, Any], payload: dict[str, Any]) -> bool:
        ensure_order_payment_shape(order, self.registry.label_for)
        previous = order.get("payment") or {}

        raw_status = _pick(payload, "payment_status", None)
        if raw_status is None:
            raw_status = _pick(payload, "invoice_status", previous.get("status"))
        provider_status = str(raw_status or "").strip().lower()

        pay_amount = payload.get("pay_amount")
        actually_paid = payload.get("actually_paid")
        provider_key = previous.get("provider") or LEGACY_PROVIDER_KEY
        provider_label = previous.get("providerLabel") or self.registry.label_for(provider_key)

        payment = {
            "provider": provider_key,
            "providerLabel": provider_label,
            "invoiceId": _pick(payload, "invoice_id", previous.get("invoiceId")),
            "invoiceUrl": _pick(payload, "invoice_url", previous.get("invoiceUrl")),
            "status": provider_status or previous.get("status") or None,
            "payCurrency": _pick(payload, "pay_currency", previous.get("payCurrency")),
            "payAmount": to_float(pay_amount, default=None) if pay_amount is not None else previous.get("payAmount"),
            "actuallyPaid": (
                to_float(actually_paid, default=None) if actually_paid is not None else previous.get("actuallyPaid")
            ),
            "createdAt": previous.get("createdAt") or order.get("createdAt"),
            "updatedAt": utc_now_iso(),
        }
        order["payment"] = payment

        previous_status = order.get("status")
        order["status"] = normalize_status(payment["status"])
        order_id = order["id"]
        reported = payment["status"] or "unknown"

        confirmed = False
        message = f"{provider_label} status update for order {order_id}: {reported}"
        if order["status"] == "paid" and previous_status != "paid":
            confirmed = True
            message = f"{provider_label} confirmed payment for order {order_id}"
            try:
                await self.chats.open_admin_chat_on_payment(order)
            except Exception as exc:
                logger.error(f"Failed to open admin chat for paid order {order_id}: {exc}")
        elif order["status"] == "failed" and previous_status != "failed":
            message = f"{provider_label} marked order {order_id} as failed ({reported})"

        self.activity.append(message)
        await self.store.save()
        logger.info(f"Webhook applied to order {order_id}: {reported} -> {order['status']}")
        return confirmed
