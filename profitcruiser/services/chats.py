from typing import Any, Optional

from ..utils.helpers import parse_timestamp, utc_now, utc_now_iso
from ..utils.logger import logger
from .activity_log import ActivityLog
from .defaults import ROBUX_CHAT_INTRO_MESSAGE, create_chat_id, create_message
from .errors import NotFoundError, ValidationError
from .state_store import StateStore

CHAT_STATUSES = {"open", "closed"}


class ChatService:
    """Per-order support chats.

    Every mutating method expects the caller to hold ``store.lock``; the
    lookup-before-create in :meth:`open_admin_chat_on_payment` is what keeps
    chats unique per order.
    """

    def __init__(self, store: StateStore, activity: ActivityLog):
        self.store = store
        self.activity = activity

    @property
    def chats(self) -> list[dict[str, Any]]:
        return self.store.state.setdefault("chats", [])

    def find_by_order(self, order_id: str) -> Optional[dict[str, Any]]:
        for chat in self.chats:
            if chat.get("orderId") == order_id:
                return chat
        return None

    def get(self, chat_id: str) -> dict[str, Any]:
        for chat in self.chats:
            if chat.get("id") == chat_id:
                return chat
        raise NotFoundError("Chat not found")

    def list_for_user(self, user: dict[str, Any]) -> list[dict[str, Any]]:
        return [chat for chat in self.chats if chat.get("userId") == user.get("id")]

    def with_order(self, chat: dict[str, Any]) -> dict[str, Any]:
        order = next(
            (item for item in self.store.state.get("orders", []) if item.get("id") == chat.get("orderId")),
            None,
        )
        return {**chat, "order": order}

    def list_all(self) -> list[dict[str, Any]]:
        return [self.with_order(chat) for chat in self.chats]

    def _new_chat(self, order: dict[str, Any], messages: list[dict[str, Any]]) -> dict[str, Any]:
        now = utc_now_iso()
        return {
            "id": create_chat_id(),
            "orderId": order["id"],
            "userId": order.get("userId"),
            "username": order.get("username"),
            "status": "open",
            "createdAt": now,
            "lastActivityAt": now,
            "responseMinutes": None,
            "messages": messages,
        }

    def create_plain_chat(self, order: dict[str, Any]) -> dict[str, Any]:
        chat = self._new_chat(
            order,
            [
                create_message("system", f"Chat opened for order {order['id']}"),
                create_message("system", ROBUX_CHAT_INTRO_MESSAGE),
            ],
        )
        self.chats.append(chat)
        return chat

    async def open_admin_chat_on_payment(self, order: dict[str, Any]) -> Optional[dict[str, Any]]:
        existing = self.find_by_order(order["id"])
        if existing is not None:
            return existing

        admins = [user for user in self.store.state.get("users", []) if user.get("role") == "admin"]
        if not admins:
            logger.warning(f"No admin users found to open chat with for order {order['id']}")
            return None

        chat = self._new_chat(
            order,
            [
                create_message("system", f"Payment confirmed for order {order['id']} - Chat opened with admins"),
                create_message(
                    "system",
                    f"Payment of {order.get('amount')} {order.get('currency')} has been confirmed. "
                    f"Please process the Robux delivery for {order.get('username')}.",
                ),
            ],
        )
        self.chats.append(chat)
        self.activity.append(
            f"Admin chat opened automatically for paid order {order['id']} ({order.get('username')})"
        )
        await self.store.save()
        logger.info(f"Admin chat {chat['id']} opened for paid order {order['id']}")
        return chat

    async def post_admin_message(self, chat_id: str, body: Any) -> dict[str, Any]:
        chat = self.get(chat_id)
        if not isinstance(body, str) or not body.strip():
            raise ValidationError("Message is required")

        message = create_message("admin", body.strip())
        chat.setdefault("messages", []).append(message)
        chat["lastActivityAt"] = message["createdAt"]

        if chat.get("responseMinutes") is None:
            created_at = parse_timestamp(chat.get("createdAt")) or utc_now()
            elapsed = (utc_now() - created_at).total_seconds() / 60
            chat["responseMinutes"] = max(0, round(elapsed))

        self.activity.append(f"Admin replied to chat {chat.get('orderId')} ({chat.get('username')})")
        await self.store.save()
        return message

    async def set_status(self, chat_id: str, status: Any) -> dict[str, Any]:
        chat = self.get(chat_id)
        if not isinstance(status, str) or status not in CHAT_STATUSES:
            raise ValidationError("Valid status is required (open or closed)")

        chat["status"] = status
        chat["lastActivityAt"] = utc_now_iso()
        verb = "closed" if status == "closed" else "reopened"
        self.activity.append(f"Admin {verb} chat {chat.get('orderId')} ({chat.get('username')})")
        await self.store.save()
        return chat
