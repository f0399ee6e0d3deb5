#!/usr/bin/env python3
"""
Best-effort reverse name lookup for addresses shown in notifications.
"""

import logging
import threading
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)


def short_address(address: str) -> str:
    if len(address) < 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


class EnsLookup:
    """Caches successful lookups (including "no name"); failures are retried next time"""

    def __init__(self, lookup_url: Optional[str], timeout: float = 5.0):
        self.lookup_url = lookup_url
        self.timeout = timeout
        self._cache: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()

    def name_for(self, address: str) -> Optional[str]:
        if not self.lookup_url or not address:
            return None

        key = address.lower()
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        try:
            response = requests.get(self.lookup_url.format(address=key), timeout=self.timeout)
            response.raise_for_status()
            data = response.json() or {}
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"ENS lookup failed for {address}: {e}")
            return None

        # anything other than {"domains": [{"name": "..."}]} means no name
        domains = data.get("domains") if isinstance(data, dict) else None
        first = domains[0] if isinstance(domains, list) and domains else None
        name = first.get("name") if isinstance(first, dict) else None
        if not isinstance(name, str) or not name:
            name = None

        with self._lock:
            self._cache[key] = name
        return name

    def display(self, address: str) -> str:
        name = self.name_for(address)
        if name:
            return f"{name} ({short_address(address)})"
        return short_address(address)
