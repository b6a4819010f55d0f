from typing import Any, Optional

import aiohttp
import discord

from ..utils.logger import logger


class DiscordNotifier:
    """Mirrors order events into a Discord channel through a channel webhook."""

    def __init__(self, webhook_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.webhook_url = (webhook_url or "").strip()
        self.session = session

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url) and self.session is not None

    async def order_created(self, order: dict[str, Any]) -> bool:
        payment = order.get("payment") or {}
        paid = order.get("status") == "paid"
        embed = discord.Embed(
            title="New Paid Order" if paid else "New Order Awaiting Payment",
            color=0x22C55E if paid else 0xFACC15,
        )
        embed.add_field(name="Order ID", value=f"`{order.get('id')}`", inline=True)
        embed.add_field(name="Total", value=self._format_amount(order), inline=True)
        embed.add_field(name="Payment", value=str(payment.get("providerLabel") or "N/A"), inline=True)
        embed.add_field(name="Customer", value=str(order.get("username") or "N/A"), inline=False)
        embed.add_field(name="Product", value=str(order.get("product") or "N/A")[:1024], inline=False)
        if order.get("robuxAmount"):
            embed.add_field(name="Robux", value=str(order.get("robuxAmount")), inline=True)
        if payment.get("invoiceUrl"):
            embed.add_field(name="Invoice", value=str(payment.get("invoiceUrl"))[:1024], inline=False)
        return await self._send(embed)

    async def payment_confirmed(self, order: dict[str, Any]) -> bool:
        payment = order.get("payment") or {}
        embed = discord.Embed(title="Payment Confirmed", color=0x22C55E)
        embed.add_field(name="Order ID", value=f"`{order.get('id')}`", inline=True)
        embed.add_field(name="Total", value=self._format_amount(order), inline=True)
        embed.add_field(name="Customer", value=str(order.get("username") or "N/A"), inline=True)
        if payment.get("actuallyPaid") is not None:
            embed.add_field(
                name="Received",
                value=f"{payment.get('actuallyPaid')} {str(payment.get('payCurrency') or '').upper()}".strip(),
                inline=False,
            )
        return await self._send(embed)

    async def _send(self, embed: discord.Embed) -> bool:
        if not self.enabled:
            return False
        try:
            webhook = discord.Webhook.from_url(self.webhook_url, session=self.session)
            await webhook.send(embed=embed, username="ProfitCruiser")
        except Exception as exc:
            logger.warning(f"Discord notification failed: {exc!r}")
            return False
        return True

    @staticmethod
    def _format_amount(order: dict[str, Any]) -> str:
        try:
            return f"{float(order.get('amount')):.2f} {order.get('currency') or ''}".strip()
        except (TypeError, ValueError):
            return "N/A"
