#!/usr/bin/env python3
"""
Event Classifier

Pulls ERC-721 Transfer logs for one contract over a block range and turns the
ones not seen before into mint or sale events. A log from the zero address is
a mint; anything else is treated as a sale candidate.

Accepted events are marked in the dedup store before anything is sent, so a
failed delivery is never retried on the next block.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from chain_client import (
    ChainClient,
    DecodeError,
    TRANSFER_TOPIC,
    ZERO_ADDRESS,
    normalize_hex,
    topic_to_address,
)
from dedup_store import DedupStore, MINTED, SOLD

logger = logging.getLogger(__name__)

MINT = "mint"
SALE = "sale"


@dataclass
class ClassifiedEvent:
    kind: str
    token_id: int
    from_address: str
    to_address: str
    transaction_hash: str
    block_number: int
    log_index: int = 0


def decode_transfer_log(log: Dict[str, Any]) -> Tuple[str, str, int]:
    """(from, to, token_id) of an ERC-721 Transfer log; DecodeError otherwise"""
    topics = log.get("topics") or []
    # ERC-20 Transfer shares topic0 but has only three topics
    if len(topics) != 4:
        raise DecodeError(f"Transfer log has {len(topics)} topics, expected 4")
    if normalize_hex(topics[0]) != TRANSFER_TOPIC:
        raise DecodeError(f"Unexpected topic0 {normalize_hex(topics[0])}")

    from_address = topic_to_address(topics[1])
    to_address = topic_to_address(topics[2])
    try:
        token_id = int(normalize_hex(topics[3]), 16)
    except ValueError as e:
        raise DecodeError(f"Bad tokenId topic {topics[3]!r}: {e}") from e
    return from_address, to_address, token_id


def _log_position(log: Dict[str, Any]) -> Tuple[int, int]:
    return int(log.get("blockNumber") or 0), int(log.get("logIndex") or 0)


class EventClassifier:
    def __init__(self, client: ChainClient, dedup: DedupStore):
        self.client = client
        self.dedup = dedup

    def fetch_transfer_logs(self, contract_address: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """Raises TransientNetworkError; the caller skips the cycle"""
        return self.client.get_logs(from_block, to_block, contract_address, [TRANSFER_TOPIC])

    def classify(self, contract_name: str, logs: List[Dict[str, Any]]) -> List[ClassifiedEvent]:
        events = []
        for log in sorted(logs, key=_log_position):
            try:
                from_address, to_address, token_id = decode_transfer_log(log)
                tx_hash = normalize_hex(log["transactionHash"])
            except (DecodeError, KeyError) as e:
                logger.debug(f"{contract_name}: skipping undecodable log: {e}")
                continue

            if from_address == ZERO_ADDRESS:
                kind, seen_set = MINT, MINTED
            else:
                kind, seen_set = SALE, SOLD

            if self.dedup.contains(contract_name, seen_set, token_id):
                continue
            self.dedup.mark_seen(contract_name, seen_set, token_id)

            block_number, log_index = _log_position(log)
            events.append(ClassifiedEvent(
                kind=kind,
                token_id=token_id,
                from_address=from_address,
                to_address=to_address,
                transaction_hash=tx_hash,
                block_number=block_number,
                log_index=log_index,
            ))
        return events
