from datetime import timedelta
from typing import Any

from ..utils.helpers import parse_timestamp, to_float, utc_now
from .activity_log import ActivityLog
from .defaults import DEFAULT_ROBUX_SETTINGS, default_collection
from .state_store import StateStore

ROBUX_NUMERIC_FIELDS = ("minRobux", "maxRobux", "stepRobux", "baseMarketPrice", "markup")


class AdminService:
    def __init__(self, store: StateStore, activity: ActivityLog):
        self.store = store
        self.activity = activity

    @property
    def state(self) -> dict[str, Any]:
        return self.store.state

    def view_total(self) -> int:
        return int(sum(to_float(value, default=0.0) or 0.0 for value in self.state.get("views", {}).values()))

    def sales_for_last_days(self, days: int) -> list[dict[str, Any]]:
        today = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        cutoff = today - timedelta(days=days - 1)
        totals: dict[str, float] = {}
        for order in self.state.get("orders", []):
            if order.get("status") != "paid":
                continue
            created_at = parse_timestamp(order.get("createdAt"))
            if created_at is None or created_at < cutoff:
                continue
            date_key = str(order.get("createdAt"))[:10]
            totals[date_key] = totals.get(date_key, 0.0) + (to_float(order.get("amount"), default=0.0) or 0.0)
        return [{"date": date, "total": total} for date, total in sorted(totals.items())]

    def average_response_minutes(self) -> int:
        values = [
            chat.get("responseMinutes")
            for chat in self.state.get("chats", [])
            if isinstance(chat.get("responseMinutes"), (int, float)) and not isinstance(chat.get("responseMinutes"), bool)
        ]
        if not values:
            return self.state.get("metrics", {}).get("chatResponseMinutes", 0) or 0
        return round(sum(values) / len(values))

    def overview(self) -> dict[str, Any]:
        orders = self.state.get("orders", [])
        chats = self.state.get("chats", [])
        views = self.state.get("views", {})
        visibility = self.state.get("scriptVisibility", {})

        top_scripts = sorted(views.items(), key=lambda item: item[1], reverse=True)[:5]

        product_sales: dict[str, dict[str, Any]] = {}
        for order in orders:
            product = str(order.get("product") or "")
            entry = product_sales.setdefault(product, {"product": product, "sales": 0})
            entry["sales"] += 1
        top_products = sorted(product_sales.values(), key=lambda row: row["sales"], reverse=True)[:5]

        return {
            "totals": {
                "scripts": None,
                "views": self.view_total(),
                "activeBuyers": len({order.get("userId") for order in orders if order.get("status") == "paid"}),
                "openChats": len([chat for chat in chats if chat.get("status") == "open"]),
                "lastActivity": self.activity.last_timestamp(),
            },
            "charts": {
                "viewsPerDay": self.state.get("viewTimeline", []),
                "topScripts": [{"slug": slug, "views": count} for slug, count in top_scripts],
                "topProducts": top_products,
                "salesLast7Days": self.sales_for_last_days(7),
                "salesLast30Days": self.sales_for_last_days(30),
                "averageChatResponseMinutes": self.average_response_minutes(),
            },
            "orders": list(reversed(orders[-20:])),
            "chats": [
                {
                    "id": chat.get("id"),
                    "orderId": chat.get("orderId"),
                    "userId": chat.get("userId"),
                    "username": chat.get("username"),
                    "status": chat.get("status"),
                    "lastActivityAt": chat.get("lastActivityAt"),
                }
                for chat in chats
            ],
            "activityLog": self.activity.recent(50),
            "settings": self.state.get("settings", {}),
            "visibility": [{"slug": slug, "hidden": hidden} for slug, hidden in visibility.items()],
        }

    async def update_settings(self, changes: dict[str, Any]) -> dict[str, Any]:
        async with self.store.lock:
            settings = {**self.state.get("settings", default_collection("settings")), **changes}
            self.state["settings"] = settings
            self.activity.append("Admin updated settings")
            await self.store.save()
        return settings

    def robux_settings(self) -> dict[str, Any]:
        return self.state.get("robuxSettings") or dict(DEFAULT_ROBUX_SETTINGS)

    async def update_robux_settings(self, changes: dict[str, Any]) -> dict[str, Any]:
        async with self.store.lock:
            settings = self.state.get("robuxSettings")
            if not isinstance(settings, dict):
                settings = {}
                self.state["robuxSettings"] = settings

            for field in ROBUX_NUMERIC_FIELDS:
                if field in changes and changes[field] is not None:
                    value = to_float(changes[field], default=None)
                    if value is not None:
                        settings[field] = int(value) if value.is_integer() and field != "baseMarketPrice" else value
            if isinstance(changes.get("quickSelectPacks"), list):
                settings["quickSelectPacks"] = changes["quickSelectPacks"]

            self.activity.append("Robux store settings updated")
            await self.store.save()
        return settings
