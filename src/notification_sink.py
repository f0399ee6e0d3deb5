#!/usr/bin/env python3
"""
Notification Sink

Delivers a mint or sale notification to every destination of a watch entry.
A destination ID maps to a Discord webhook URL in the config profile. Delivery
is best-effort per destination: an unknown ID or a failed POST is logged and
the next destination is tried. Nothing is retried.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

import requests

from ens_lookup import EnsLookup, short_address
from notification_builder import MintBatchNotification, SaleNotification

logger = logging.getLogger(__name__)

Notification = Union[MintBatchNotification, SaleNotification]

VALUE_UNAVAILABLE = "Value unavailable"
MINT_COLOR = 0x2ECC71
SALE_COLOR = 0x3498DB
MAX_LISTED_TOKEN_IDS = 20


def format_amount(value: Decimal) -> str:
    """Plain decimal string, at most 6 fractional digits, no trailing zeros"""
    value = Decimal(value)
    if value.as_tuple().exponent < -6:
        value = value.quantize(Decimal("0.000001"))
    return f"{value.normalize():f}"


def format_reference_value(value: Optional[Decimal], symbol: str) -> str:
    if value is None:
        return VALUE_UNAVAILABLE
    return f"{format_amount(value)} {symbol}"


def format_token_ids(token_ids: List[int]) -> str:
    shown = ", ".join(f"#{token_id}" for token_id in token_ids[:MAX_LISTED_TOKEN_IDS])
    hidden = len(token_ids) - MAX_LISTED_TOKEN_IDS
    if hidden > 0:
        shown += f" (+{hidden} more)"
    return shown


def render_embed(payload: Notification, ens: Optional[EnsLookup] = None) -> Dict[str, Any]:
    """Discord embed for a notification"""
    def who(address: str) -> str:
        return ens.display(address) if ens else short_address(address)

    if isinstance(payload, MintBatchNotification):
        count = len(payload.token_ids)
        title = f"{count} new mint{'s' if count != 1 else ''}: {payload.contract_name}"
        fields = [
            {"name": "Tokens", "value": format_token_ids(payload.token_ids)[:1024], "inline": False},
            {"name": "Minter", "value": who(payload.minter_address), "inline": True},
            {"name": "Paid", "value": f"{format_amount(payload.total_paid)} {payload.payment_symbol}", "inline": True},
            {"name": f"Value ({payload.reference_symbol})",
             "value": format_reference_value(payload.reference_value, payload.reference_symbol), "inline": True},
        ]
        color = MINT_COLOR
        link = payload.open_for_sale_link
    else:
        title = f"{payload.contract_name} #{payload.token_id} sold"
        fields = [
            {"name": "Seller", "value": who(payload.seller), "inline": True},
            {"name": "Buyer", "value": who(payload.buyer), "inline": True},
            {"name": "Price", "value": f"{format_amount(payload.amount_paid)} {payload.payment_symbol}", "inline": True},
            {"name": f"Value ({payload.reference_symbol})",
             "value": format_reference_value(payload.reference_value, payload.reference_symbol), "inline": True},
            {"name": "Paid in", "value": "native currency" if payload.method == "native" else "token", "inline": True},
        ]
        color = SALE_COLOR
        link = payload.marketplace_link

    embed = {
        "title": title,
        "color": color,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "fields": fields,
        "image": {"url": payload.image_url},
        "footer": {"text": f"contract: {payload.contract_address}"},
    }
    if link:
        embed["url"] = link
    if payload.transaction_hash:
        embed["footer"]["text"] += f" | tx: {payload.transaction_hash}"
    return embed


class NotificationSink:
    """Interface: deliver a payload to destination IDs, return the IDs reached"""

    def deliver(self, destination_ids: Iterable[str], payload: Notification) -> List[str]:
        raise NotImplementedError


class LoggingSink(NotificationSink):
    """Used with --no-discord: log what would have been sent"""

    def deliver(self, destination_ids: Iterable[str], payload: Notification) -> List[str]:
        delivered = []
        for destination_id in destination_ids:
            destination_id = str(destination_id)
            if destination_id in delivered:
                continue
            delivered.append(destination_id)
        logger.info(f"[no-discord] {payload.kind} notification for {payload.contract_name} -> {delivered}")
        return delivered


class DiscordWebhookSink(NotificationSink):
    def __init__(self, destinations: Dict[str, str], timeout: float = 5.0,
                 ens: Optional[EnsLookup] = None, username: str = "Mint Watcher"):
        self.destinations = {str(key): value for key, value in destinations.items()}
        self.timeout = timeout
        self.ens = ens
        self.username = username

    def resolve_destination(self, destination_id: str) -> Optional[str]:
        url = self.destinations.get(str(destination_id))
        if not url or url == "N/A":
            return None
        return url

    def deliver(self, destination_ids: Iterable[str], payload: Notification) -> List[str]:
        body = {
            "username": self.username,
            "content": None,
            "embeds": [render_embed(payload, self.ens)],
        }

        delivered = []
        attempted = set()
        for destination_id in destination_ids:
            destination_id = str(destination_id)
            if destination_id in attempted:
                continue
            attempted.add(destination_id)

            url = self.resolve_destination(destination_id)
            if url is None:
                logger.warning(f"Destination {destination_id} has no webhook configured; skipping")
                continue

            try:
                response = requests.post(url, json=body, timeout=self.timeout)
            except requests.RequestException as e:
                logger.error(f"Failed to notify destination {destination_id}: {e}")
                continue

            if response.status_code >= 400:
                logger.error(
                    f"Destination {destination_id} rejected notification "
                    f"(status {response.status_code}): {response.text[:200]}"
                )
                continue

            delivered.append(destination_id)

        logger.info(
            f"Sent {payload.kind} notification for {payload.contract_name} "
            f"to {len(delivered)}/{len(attempted)} destinations"
        )
        return delivered
