#!/usr/bin/env python3
"""
Ping Helper

Operator heartbeat for the mint watcher: a periodic webhook message summarizing
what is being watched, so a silent channel can be told apart from a dead
process.

Pings are scheduled on a Tuesday 9am US/Eastern basis; frequency_days=7 means
weekly, 1 means daily. The time of the last ping is kept in a small JSON file
under the profile's data directory.
"""

import time
import logging
import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytz
import requests

logger = logging.getLogger(__name__)


class PingHelper:
    def __init__(self, data_dir: str, webhook_url: Optional[str] = None, name: str = "mint_watcher",
                 timeout: float = 10.0):
        self.name = name
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.eastern_tz = pytz.timezone('US/Eastern')

        ping_dir = Path(data_dir) / "ping_state"
        ping_dir.mkdir(parents=True, exist_ok=True)
        self.ping_state_file = ping_dir / f"{name}_ping_state.json"

    def _get_tuesday_9am_basis(self) -> datetime:
        """Most recent Tuesday 9am ET"""
        now_et = datetime.now(self.eastern_tz)

        days_since_tuesday = (now_et.weekday() - 1) % 7  # Monday=0, Tuesday=1
        if days_since_tuesday == 0 and now_et.hour < 9:
            days_since_tuesday = 7

        tuesday_date = now_et.date() - timedelta(days=days_since_tuesday)
        return self.eastern_tz.localize(datetime.combine(tuesday_date, datetime.min.time().replace(hour=9)))

    def get_next_ping_time(self, frequency_days: int, last_ping_timestamp: float) -> datetime:
        """First scheduled slot after the last ping"""
        basis = self._get_tuesday_9am_basis()
        last_ping = datetime.fromtimestamp(last_ping_timestamp, tz=self.eastern_tz)
        interval = timedelta(days=frequency_days)

        slot = basis
        while slot > last_ping:
            slot -= interval
        while slot <= last_ping:
            slot += interval
        return slot

    def _load_ping_state(self) -> Dict[str, Any]:
        if not self.ping_state_file.exists():
            return {}
        try:
            with open(self.ping_state_file, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load ping state: {e}")
            return {}

    def _save_ping_state(self, state: Dict[str, Any]):
        try:
            with open(self.ping_state_file, 'w') as f:
                json.dump(state, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save ping state: {e}")

    def should_send_ping(self, frequency_days: int = 7) -> bool:
        if not self.webhook_url:
            return False

        last_ping_timestamp = self._load_ping_state().get('last_ping_timestamp', 0)
        now_et = datetime.now(self.eastern_tz)

        if not last_ping_timestamp:
            return now_et.hour >= 9

        return now_et >= self.get_next_ping_time(frequency_days, last_ping_timestamp)

    def send_ping(self, content: str, frequency_days: int = 7) -> bool:
        if not self.webhook_url:
            logger.warning("No heartbeat webhook configured")
            return False

        if frequency_days == 7:
            freq_desc = "Weekly"
        elif frequency_days == 1:
            freq_desc = "Daily"
        else:
            freq_desc = f"{frequency_days}-Day"

        time_str = datetime.now(self.eastern_tz).strftime('%Y-%m-%d %H:%M:%S %Z')
        title = self.name.replace('_', ' ').title()
        payload = {
            "content": f"**{freq_desc} Ping** - {title}\n**Time:** {time_str}\n\n{content}",
            "username": f"{title} Ping",
        }

        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to send heartbeat ping: {e}")
            return False

        state = self._load_ping_state()
        state['last_ping_timestamp'] = time.time()
        state['last_ping_frequency'] = frequency_days
        self._save_ping_state(state)

        logger.info(f"Sent {freq_desc.lower()} heartbeat ping")
        return True


def format_status_content(statuses: List[Dict[str, Any]], chain_head: Optional[int]) -> str:
    """Heartbeat body from WatchlistPoller.status()"""
    lines = [
        f"**Latest block seen:** {chain_head if chain_head is not None else 'N/A'}",
        f"**Contracts watched:** {len(statuses)}",
    ]
    for status in statuses:
        lines.append(
            f"- `{status['name']}`: {status['minted_seen']} minted, {status['sold_seen']} sold, "
            f"{status['notifications_sent']} alerts sent, {status['skipped_cycles']} skipped blocks"
        )
    return "\n".join(lines)
