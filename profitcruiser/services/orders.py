from typing import Any, Optional

from ..utils.helpers import to_float, utc_now_iso
from ..utils.logger import logger
from .activity_log import ActivityLog
from .chats import ChatService
from .defaults import create_order_id
from .errors import AuthError, UpstreamProviderError, ValidationError
from .notifier import DiscordNotifier
from .payments import PaymentProvider, PaymentProviderRegistry
from .state_store import StateStore


class OrderService:
    def __init__(
        self,
        store: StateStore,
        registry: PaymentProviderRegistry,
        chats: ChatService,
        activity: ActivityLog,
        notifier: Optional[DiscordNotifier] = None,
    ):
        self.store = store
        self.registry = registry
        self.chats = chats
        self.activity = activity
        self.notifier = notifier
        self._reserved_ids: set[str] = set()

    @property
    def orders(self) -> list[dict[str, Any]]:
        return self.store.state.setdefault("orders", [])

    def find(self, order_id: str) -> Optional[dict[str, Any]]:
        for order in self.orders:
            if order.get("id") == order_id:
                return order
        return None

    def list_for_user(self, user: Optional[dict[str, Any]]) -> list[dict[str, Any]]:
        if user is None:
            raise AuthError("Unauthorized")
        return [order for order in self.orders if order.get("userId") == user.get("id")]

    def _reserve_order_id(self) -> str:
        # Ids stay reserved while the provider call is in flight so two
        # concurrent creations never share one.
        taken = {order.get("id") for order in self.orders} | self._reserved_ids
        order_id = create_order_id()
        while order_id in taken:
            order_id = create_order_id()
        self._reserved_ids.add(order_id)
        return order_id

    async def create_order(self, user: Optional[dict[str, Any]], payload: dict[str, Any]) -> dict[str, Any]:
        if user is None:
            raise AuthError("Unauthorized")

        amount = payload.get("amount")
        product = payload.get("product")
        if not amount or not product:
            raise ValidationError("Missing order details")
        normalized_amount = to_float(amount, default=None)
        if normalized_amount is None:
            raise ValidationError("Amount must be a number")

        currency = payload.get("currency") or "EUR"
        provider = self.registry.resolve(payload.get("paymentMethod"))

        order_id = self._reserve_order_id()
        try:
            created_at = utc_now_iso()
            result = await self._call_provider(provider, order_id, amount, currency, product, user, created_at)

            async with self.store.lock:
                order, chat = await self._commit_order(
                    provider,
                    result,
                    order_id=order_id,
                    user=user,
                    amount=normalized_amount,
                    currency=currency,
                    product=product,
                    robux_amount=payload.get("robuxAmount"),
                    created_at=created_at,
                )
        finally:
            self._reserved_ids.discard(order_id)

        logger.info(f"Order {order_id} created for {user.get('username')} via {provider.key} ({order['status']})")
        if self.notifier is not None:
            await self.notifier.order_created(order)
        return {"order": order, "chat": chat, "payment": order["payment"]}

    async def _call_provider(
        self,
        provider: PaymentProvider,
        order_id: str,
        amount: Any,
        currency: str,
        product: str,
        user: dict[str, Any],
        created_at: str,
    ) -> dict[str, Any]:
        try:
            result = await provider.create_payment(
                order_id=order_id,
                amount=amount,
                currency=currency,
                product=product,
                username=user.get("username"),
                created_at=created_at,
            )
        except Exception as exc:
            logger.error(f"Failed to create payment with {provider.label} for order {order_id}: {exc}")
            raise UpstreamProviderError(
                f"Could not create payment via {provider.label}. Please try again later."
            ) from exc
        return result if isinstance(result, dict) else {}

    def _normalize_payment(
        self, provider: PaymentProvider, base: Optional[dict[str, Any]], created_at: str
    ) -> Optional[dict[str, Any]]:
        if not isinstance(base, dict):
            return None
        provider_key = base.get("provider") or provider.key
        pay_amount = base.get("payAmount")
        actually_paid = base.get("actuallyPaid")
        return {
            "provider": provider_key,
            "providerLabel": base.get("providerLabel") or self.registry.label_for(provider_key),
            "invoiceId": base.get("invoiceId"),
            "invoiceUrl": base.get("invoiceUrl"),
            "status": base.get("status"),
            "payCurrency": base.get("payCurrency"),
            "payAmount": to_float(pay_amount, default=None) if pay_amount is not None else None,
            "actuallyPaid": to_float(actually_paid, default=None) if actually_paid is not None else None,
            "createdAt": base.get("createdAt") or created_at,
            "updatedAt": base.get("updatedAt") or created_at,
        }

    async def _commit_order(
        self,
        provider: PaymentProvider,
        result: dict[str, Any],
        *,
        order_id: str,
        user: dict[str, Any],
        amount: float,
        currency: str,
        product: str,
        robux_amount: Any,
        created_at: str,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        payment = self._normalize_payment(provider, result.get("payment"), created_at)
        order_status = result.get("orderStatus") or "pending"

        order = {
            "id": order_id,
            "userId": user.get("id"),
            "username": user.get("username"),
            "amount": amount,
            "currency": currency,
            "product": product,
            "robuxAmount": robux_amount,
            "status": order_status,
            "createdAt": created_at,
            "payment": payment,
        }
        self.orders.append(order)

        chat = None
        if order_status == "paid":
            try:
                chat = await self.chats.open_admin_chat_on_payment(order)
            except Exception as exc:
                logger.error(f"Failed to open admin chat for paid order {order_id}: {exc}")
        if chat is None:
            chat = self.chats.find_by_order(order_id) or self.chats.create_plain_chat(order)

        provider_label = (payment or {}).get("providerLabel") or self.registry.label_for(provider.key)
        username = user.get("username")
        if order_status == "paid":
            self.activity.append(f"New payment via {provider_label} from {username} ({amount:.2f} {currency})")
        else:
            pending_currency = (payment or {}).get("payCurrency") or provider.pay_currency or currency
            currency_suffix = f" ({str(pending_currency).upper()})" if pending_currency else ""
            self.activity.append(f"Order {order_id} awaiting payment via {provider_label}{currency_suffix} from {username}")
        if (payment or {}).get("invoiceUrl"):
            self.activity.append(f"{provider_label} invoice created for order {order_id}")

        await self.store.save()
        return order, chat
