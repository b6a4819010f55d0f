import copy
import hashlib
import random
import uuid
from typing import Any

from ..utils.helpers import utc_now_iso

SCHEMA_VERSION = 1

ROBUX_CHAT_INTRO_MESSAGE = (
    "Follow these instructions to add a gamepass: https://www.youtube.com/watch?v=Hl9QPHIXWHk"
)

DEFAULT_SETTINGS = {
    "siteName": "ProfitCruiser",
    "siteTagline": "Premium Roblox Scripts",
    "logoUrl": "/logo.svg",
    "stripeKey": "",
    "payhipKey": "",
    "workinkKey": "",
    "revolutIban": "",
    "chatEnabled": True,
    "loggingEnabled": True,
    "notificationsEnabled": True,
}

DEFAULT_ROBUX_SETTINGS = {
    "minRobux": 400,
    "maxRobux": 20000,
    "stepRobux": 200,
    "quickSelectPacks": [800, 2000, 5000, 10000, 20000],
    "baseMarketPrice": 0.0039,
    "markup": 1.6,
}

STATE_KEYS = (
    "users",
    "sessions",
    "orders",
    "chats",
    "activityLog",
    "settings",
    "scripts",
    "scriptVisibility",
    "views",
    "viewTimeline",
    "metrics",
    "robuxSettings",
)


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def create_order_id() -> str:
    return f"#{random.randint(10000, 99999)}"


def create_chat_id() -> str:
    return str(uuid.uuid4())


def create_message(author: str, body: str, created_at: str = "") -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "author": author,
        "body": body,
        "createdAt": created_at or utc_now_iso(),
    }


def create_activity_entry(message: str) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "timestamp": utc_now_iso(),
        "message": message,
    }


def _sample_payment(amount: float, created_at: str) -> dict[str, Any]:
    return {
        "provider": "demo",
        "providerLabel": "Demo Checkout",
        "invoiceId": None,
        "invoiceUrl": None,
        "status": "finished",
        "payCurrency": "USD",
        "payAmount": amount,
        "actuallyPaid": amount,
        "createdAt": created_at,
        "updatedAt": created_at,
    }


def _sample_chat(
    chat_id: str,
    order_id: str,
    user_id: str,
    username: str,
    status: str,
    last_activity_at: str,
    response_minutes: int,
    conversation: list[tuple[str, str, str]],
) -> dict[str, Any]:
    messages = [
        {
            "id": f"{chat_id}-m1",
            "author": "system",
            "body": f"Chat opened for order {order_id}",
            "createdAt": "2025-10-09T09:45:00.000Z",
        },
        {
            "id": f"{chat_id}-m2",
            "author": "system",
            "body": ROBUX_CHAT_INTRO_MESSAGE,
            "createdAt": "2025-10-09T09:45:10.000Z",
        },
    ]
    for idx, (author, body, created_at) in enumerate(conversation, start=3):
        messages.append({"id": f"{chat_id}-m{idx}", "author": author, "body": body, "createdAt": created_at})

    return {
        "id": chat_id,
        "orderId": order_id,
        "userId": user_id,
        "username": username,
        "status": status,
        "createdAt": "2025-10-09T09:45:00.000Z",
        "lastActivityAt": last_activity_at,
        "responseMinutes": response_minutes,
        "messages": messages,
    }


def create_default_state(
    admin_email: str = "admin@profitcruiser.gg",
    admin_password: str = "ChangeMe123!",
    admin_username: str = "Admin",
) -> dict[str, Any]:
    """Seed document written on first start: one admin, two demo orders with chats."""
    orders = [
        {
            "id": "#30219",
            "userId": "sample-alex",
            "username": "Alex#123",
            "amount": 7.99,
            "currency": "USD",
            "product": "Auto Rob Hub",
            "robuxAmount": None,
            "status": "paid",
            "createdAt": "2025-10-09T09:10:00.000Z",
            "payment": _sample_payment(7.99, "2025-10-09T09:10:00.000Z"),
        },
        {
            "id": "#30220",
            "userId": "sample-julian",
            "username": "Julian",
            "amount": 14.5,
            "currency": "USD",
            "product": "Private Chat",
            "robuxAmount": None,
            "status": "paid",
            "createdAt": "2025-10-09T09:15:00.000Z",
            "payment": _sample_payment(14.5, "2025-10-09T09:15:00.000Z"),
        },
    ]

    chats = [
        _sample_chat(
            "chat-30219",
            "#30219",
            "sample-alex",
            "Alex#123",
            "open",
            "2025-10-09T09:46:00.000Z",
            12,
            [
                ("Alex#123", "Hi, just placed an order! Let me know when you are ready.", "2025-10-09T09:45:30.000Z"),
                ("admin", "Thanks Alex! I will deliver within the hour. Stay online in your VIP server.", "2025-10-09T09:46:00.000Z"),
            ],
        ),
        _sample_chat(
            "chat-30220",
            "#30220",
            "sample-julian",
            "Julian",
            "closed",
            "2025-10-09T10:05:00.000Z",
            8,
            [
                ("Julian", "Looking forward to the private coaching session.", "2025-10-09T09:47:00.000Z"),
                ("admin", "Scheduled for tonight 20:00 CET. See you there!", "2025-10-09T09:48:00.000Z"),
            ],
        ),
    ]

    return {
        "schemaVersion": SCHEMA_VERSION,
        "users": [
            {
                "id": "admin-1337",
                "email": admin_email.lower(),
                "username": admin_username,
                "passwordHash": hash_password(admin_password),
                "role": "admin",
                "createdAt": utc_now_iso(),
                "lastLoginAt": None,
            }
        ],
        "sessions": [],
        "orders": orders,
        "chats": chats,
        "activityLog": [
            {"id": "log-1", "timestamp": "2025-10-09T09:43:00.000Z", "message": "New payment from Alex#123 ($7.99)"},
            {"id": "log-2", "timestamp": "2025-10-09T09:45:00.000Z", "message": "Chat opened (Order #30219)"},
            {"id": "log-3", "timestamp": "2025-10-09T09:46:00.000Z", "message": "Message sent by Admin"},
            {"id": "log-4", "timestamp": "2025-10-09T09:50:00.000Z", "message": 'Script "Auto Rob Hub" published'},
        ],
        "settings": copy.deepcopy(DEFAULT_SETTINGS),
        "scripts": [],
        "scriptVisibility": {},
        "views": {"auto-rob-hub": 1580, "private-chat": 640},
        "viewTimeline": [
            {"date": "2025-10-03", "count": 120},
            {"date": "2025-10-04", "count": 140},
            {"date": "2025-10-05", "count": 175},
            {"date": "2025-10-06", "count": 210},
            {"date": "2025-10-07", "count": 260},
            {"date": "2025-10-08", "count": 310},
            {"date": "2025-10-09", "count": 355},
        ],
        "metrics": {"chatResponseMinutes": 10},
        "robuxSettings": copy.deepcopy(DEFAULT_ROBUX_SETTINGS),
    }


def default_collection(key: str) -> Any:
    defaults: dict[str, Any] = {
        "users": [],
        "sessions": [],
        "orders": [],
        "chats": [],
        "activityLog": [],
        "settings": DEFAULT_SETTINGS,
        "scripts": [],
        "scriptVisibility": {},
        "views": {},
        "viewTimeline": [],
        "metrics": {"chatResponseMinutes": 10},
        "robuxSettings": DEFAULT_ROBUX_SETTINGS,
    }
    return copy.deepcopy(defaults.get(key, []))
