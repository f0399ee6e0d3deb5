#!/usr/bin/env python3
"""
Watchlist Store

Persisted list of watched contracts. Only the CLI mutates it; the poller reads
it once at startup and is told about changes through explicit calls.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional

from web3 import Web3

from config_manager import NATIVE_TOKEN
from database_manager import MintWatchDB

logger = logging.getLogger(__name__)


def dedupe_ids(destination_ids: Iterable[str]) -> List[str]:
    """Drop repeated IDs, keeping first-seen order"""
    seen = set()
    result = []
    for destination_id in destination_ids:
        destination_id = str(destination_id)
        if destination_id not in seen:
            seen.add(destination_id)
            result.append(destination_id)
    return result


@dataclass
class WatchEntry:
    name: str
    contract_address: str
    mint_price: Decimal
    payment_token: str = NATIVE_TOKEN
    payment_token_symbol: str = "ETH"
    destination_ids: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.contract_address = Web3.to_checksum_address(self.contract_address)
        self.mint_price = Decimal(str(self.mint_price))
        if self.payment_token and self.payment_token != NATIVE_TOKEN:
            self.payment_token = Web3.to_checksum_address(self.payment_token)
        else:
            self.payment_token = NATIVE_TOKEN
        self.destination_ids = dedupe_ids(self.destination_ids)

    @property
    def pays_in_native(self) -> bool:
        return self.payment_token == NATIVE_TOKEN


class WatchlistStore:
    def __init__(self, db: MintWatchDB):
        self.db = db

    def _from_row(self, row) -> Optional[WatchEntry]:
        try:
            return WatchEntry(**row)
        except (ValueError, InvalidOperation) as e:
            logger.warning(f"Skipping malformed watch entry {row.get('name')}: {e}")
            return None

    def list_all(self) -> List[WatchEntry]:
        entries = [self._from_row(row) for row in self.db.get_watchlist_rows()]
        return [entry for entry in entries if entry is not None]

    def get(self, name: str) -> Optional[WatchEntry]:
        row = self.db.get_watchlist_row(name)
        return self._from_row(row) if row else None

    def save(self, entry: WatchEntry):
        self.db.upsert_watchlist_row({
            "name": entry.name,
            "contract_address": entry.contract_address,
            "mint_price": str(entry.mint_price),
            "payment_token": entry.payment_token,
            "payment_token_symbol": entry.payment_token_symbol,
            "destination_ids": dedupe_ids(entry.destination_ids),
        })

    def delete(self, name: str) -> bool:
        return self.db.delete_watchlist_row(name)

    def add_destination(self, name: str, destination_id: str) -> Optional[WatchEntry]:
        entry = self.get(name)
        if entry is None:
            return None
        entry.destination_ids = dedupe_ids(entry.destination_ids + [destination_id])
        self.save(entry)
        return entry

    def remove_destination(self, name: str, destination_id: str) -> Optional[WatchEntry]:
        entry = self.get(name)
        if entry is None:
            return None
        entry.destination_ids = [d for d in entry.destination_ids if d != str(destination_id)]
        self.save(entry)
        return entry
