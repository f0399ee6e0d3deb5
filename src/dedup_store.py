#!/usr/bin/env python3
"""
Dedup Store

Per watched contract, two sets of token IDs: those already alerted as minted and
those already alerted as sold. Sets live in memory and are checkpointed to
DuckDB every N blocks, so a restart does not re-alert old events.

The sets only ever grow. A token that was sold once is never alerted again,
even if it is resold later.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from database_manager import MintWatchDB, DatabaseLockError, DEDUP_SCHEMA_VERSION

logger = logging.getLogger(__name__)

MINTED = "minted"
SOLD = "sold"


@dataclass
class DedupState:
    minted_ids: Set[int] = field(default_factory=set)
    sold_ids: Set[int] = field(default_factory=set)

    def ids_for(self, kind: str) -> Set[int]:
        if kind == MINTED:
            return self.minted_ids
        if kind == SOLD:
            return self.sold_ids
        raise ValueError(f"Unknown dedup set kind: {kind}")


def _parse_id_list(raw: Optional[str]) -> Set[int]:
    if not raw:
        return set()
    return {int(token_id) for token_id in json.loads(raw)}


class _ContractLocks:
    """Guards one contract's sets, plus a second lock that orders its flushes"""

    def __init__(self):
        self.state = threading.RLock()
        self.flush = threading.Lock()


class DedupStore:
    def __init__(self, db: MintWatchDB, flush_every_n_blocks: int = 10):
        if flush_every_n_blocks < 1:
            raise ValueError("flush_every_n_blocks must be at least 1")
        self.db = db
        self.flush_every_n_blocks = flush_every_n_blocks
        self._states: Dict[str, DedupState] = {}
        self._locks: Dict[str, _ContractLocks] = {}
        # only guards the two dicts above, never held across a DB call
        self._registry_lock = threading.Lock()

    def _load(self, contract_name: str) -> DedupState:
        try:
            record = self.db.get_dedup_record(contract_name)
        except Exception as e:
            logger.warning(f"Could not read dedup state for {contract_name}, starting empty: {e}")
            return DedupState()

        if record is None:
            logger.info(f"No dedup state for {contract_name}, starting empty")
            return DedupState()

        if record.get("schema_version") != DEDUP_SCHEMA_VERSION:
            logger.warning(
                f"Dedup state for {contract_name} has schema version {record.get('schema_version')}, "
                f"expected {DEDUP_SCHEMA_VERSION}; starting empty"
            )
            return DedupState()

        try:
            state = DedupState(
                minted_ids=_parse_id_list(record.get("minted_ids")),
                sold_ids=_parse_id_list(record.get("sold_ids")),
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Corrupt dedup state for {contract_name}, starting empty: {e}")
            return DedupState()

        logger.info(
            f"Loaded dedup state for {contract_name}: "
            f"{len(state.minted_ids)} minted, {len(state.sold_ids)} sold"
        )
        return state

    def _locks_for(self, contract_name: str) -> _ContractLocks:
        with self._registry_lock:
            locks = self._locks.get(contract_name)
            if locks is None:
                locks = _ContractLocks()
                self._locks[contract_name] = locks
            return locks

    def _state(self, contract_name: str) -> DedupState:
        # caller holds the contract's state lock
        with self._registry_lock:
            state = self._states.get(contract_name)
        if state is None:
            state = self._load(contract_name)
            with self._registry_lock:
                self._states[contract_name] = state
        return state

    def contains(self, contract_name: str, kind: str, token_id: int) -> bool:
        with self._locks_for(contract_name).state:
            return token_id in self._state(contract_name).ids_for(kind)

    def mark_seen(self, contract_name: str, kind: str, token_id: int):
        with self._locks_for(contract_name).state:
            self._state(contract_name).ids_for(kind).add(token_id)

    def counts(self, contract_name: str) -> Tuple[int, int]:
        with self._locks_for(contract_name).state:
            state = self._state(contract_name)
            return len(state.minted_ids), len(state.sold_ids)

    def ids(self, contract_name: str, kind: str) -> List[int]:
        """Sorted copy of one set"""
        with self._locks_for(contract_name).state:
            return sorted(self._state(contract_name).ids_for(kind))

    def is_flush_due(self, block_number: int) -> bool:
        return block_number % self.flush_every_n_blocks == 0

    def flush_if_due(self, contract_name: str, block_number: int) -> bool:
        """Persist both sets when block_number is on the flush cadence"""
        if not self.is_flush_due(block_number):
            return False
        return self.flush(contract_name)

    def flush(self, contract_name: str) -> bool:
        locks = self._locks_for(contract_name)
        with locks.flush:
            with locks.state:
                state = self._state(contract_name)
                minted = list(state.minted_ids)
                sold = list(state.sold_ids)

            # the DB write, lock retries included, runs without the state lock
            try:
                self.db.save_dedup_record(contract_name, minted, sold)
            except DatabaseLockError as e:
                logger.error(f"Dedup flush for {contract_name} skipped, database locked: {e}")
                return False
            except Exception as e:
                logger.error(f"Dedup flush for {contract_name} failed: {e}")
                return False

        logger.debug(f"Flushed dedup state for {contract_name}: {len(minted)} minted, {len(sold)} sold")
        return True

    def forget(self, contract_name: Optional[str] = None):
        """Drop in-memory and persisted state for one contract, or for all"""
        with self._registry_lock:
            if contract_name is None:
                self._states.clear()
            else:
                self._states.pop(contract_name, None)
        self.db.delete_dedup_record(contract_name)
