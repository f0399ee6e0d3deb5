#!/usr/bin/env python3
"""
Chain Client

Thin wrapper around a single web3 HTTP provider. The provider is picked once at
startup from an ordered list of endpoints (first one that answers
eth_blockNumber wins) and kept for the life of the process.

Every web3 failure is re-raised as TransientNetworkError and every ABI decode
failure as DecodeError, so callers decide visibly whether to skip a log, a
price source, or a whole poll cycle.
"""

import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from eth_abi import decode, encode
from web3 import Web3
from web3.middleware import geth_poa_middleware

logger = logging.getLogger(__name__)

# event Transfer(address indexed from, address indexed to, uint256 indexed tokenId)
# ERC-20 uses the same signature with the value in the data field
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text="Transfer(address,address,uint256)"))
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class MintWatcherError(Exception):
    """Base class for errors raised by the watcher core"""


class TransientNetworkError(MintWatcherError):
    """RPC or HTTP call failed or timed out; skip the current unit of work"""


class DecodeError(MintWatcherError):
    """Log or ABI payload could not be decoded; skip the affected item"""


class StartupFatalError(MintWatcherError):
    """No usable RPC endpoint; nothing can run"""


def normalize_hex(value: Any) -> str:
    """Lower-case 0x-prefixed hex for HexBytes, bytes or str input"""
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value).lower()


def topic_to_address(topic: Any) -> str:
    """Extract the checksummed address from a 32-byte indexed topic"""
    hex_topic = normalize_hex(topic)
    if len(hex_topic) != 66:
        raise DecodeError(f"Topic {hex_topic} is not 32 bytes")
    return Web3.to_checksum_address("0x" + hex_topic[-40:])


def build_web3(url: str, timeout: float) -> Web3:
    w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))
    # PoA chains put extra data in the header; harmless elsewhere
    w3.middleware_onion.inject(geth_poa_middleware, layer=0)
    return w3


class ChainClient:
    """Read-only chain access over one adopted endpoint"""

    def __init__(self, w3: Web3, endpoint: str):
        self.w3 = w3
        self.endpoint = endpoint

    def current_block(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except Exception as e:
            raise TransientNetworkError(f"eth_blockNumber failed: {e}") from e

    def get_logs(self, from_block: int, to_block: int, address: str, topics: Sequence[Any]) -> List[Dict[str, Any]]:
        filter_params = {
            "fromBlock": from_block,
            "toBlock": to_block,
            "address": Web3.to_checksum_address(address),
            "topics": list(topics),
        }
        try:
            logs = self.w3.eth.get_logs(filter_params)
        except Exception as e:
            raise TransientNetworkError(
                f"eth_getLogs failed for {address} blocks {from_block}-{to_block}: {e}"
            ) from e
        return [dict(log) for log in logs] if logs else []

    def call(self, address: str, signature: str, arg_types: Sequence[str], args: Sequence[Any],
             output_types: Sequence[str]) -> tuple:
        """eth_call a function by its canonical signature, e.g. "tokenURI(uint256)"."""
        selector = Web3.keccak(text=signature)[:4]
        data = bytes(selector) + encode(list(arg_types), list(args))
        try:
            raw = self.w3.eth.call({"to": Web3.to_checksum_address(address), "data": Web3.to_hex(data)})
        except Exception as e:
            raise TransientNetworkError(f"eth_call {signature} on {address} failed: {e}") from e

        if not raw:
            raise DecodeError(f"eth_call {signature} on {address} returned no data")
        try:
            return decode(list(output_types), bytes(raw))
        except Exception as e:
            raise DecodeError(f"Could not decode {signature} result from {address}: {e}") from e

    def get_transaction(self, tx_hash: Any) -> Dict[str, Any]:
        try:
            return dict(self.w3.eth.get_transaction(tx_hash))
        except Exception as e:
            raise TransientNetworkError(f"eth_getTransactionByHash {normalize_hex(tx_hash)} failed: {e}") from e

    def get_transaction_receipt(self, tx_hash: Any) -> Dict[str, Any]:
        try:
            return dict(self.w3.eth.get_transaction_receipt(tx_hash))
        except Exception as e:
            raise TransientNetworkError(f"eth_getTransactionReceipt {normalize_hex(tx_hash)} failed: {e}") from e


def select_chain_client(endpoints: Sequence[str], timeout: float = 5.0,
                        web3_factory: Callable[[str, float], Web3] = build_web3) -> ChainClient:
    """Adopt the first endpoint that answers eth_blockNumber.

    Raises StartupFatalError when no endpoint is reachable.
    """
    if not endpoints:
        raise StartupFatalError("No RPC endpoints configured")

    for url in endpoints:
        try:
            w3 = web3_factory(url, timeout)
            block = w3.eth.block_number
        except Exception as e:
            logger.warning(f"RPC endpoint {url} failed health check: {e}")
            continue
        logger.info(f"Using RPC endpoint {url} (latest block {block})")
        return ChainClient(w3, url)

    raise StartupFatalError(f"None of the {len(endpoints)} RPC endpoints are reachable")


class BlockBroadcaster:
    """Poll the chain head and fan every new block number out to subscribers.

    Each subscriber gets its own queue and sees every block exactly once, in
    order, starting with the head observed at the first successful poll.
    """

    def __init__(self, client: ChainClient, poll_interval: float = 2.0):
        self.client = client
        self.poll_interval = poll_interval
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_block: Optional[int] = None

    def subscribe(self) -> queue.Queue:
        block_queue = queue.Queue()
        with self._lock:
            self._subscribers.append(block_queue)
        return block_queue

    def unsubscribe(self, block_queue: queue.Queue):
        with self._lock:
            if block_queue in self._subscribers:
                self._subscribers.remove(block_queue)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def poll_once(self) -> List[int]:
        """Publish any blocks produced since the last poll; returns them"""
        try:
            head = self.client.current_block()
        except TransientNetworkError as e:
            logger.warning(f"Could not read chain head: {e}")
            return []

        if self.last_block is None:
            self.last_block = head - 1

        if head <= self.last_block:
            return []

        new_blocks = list(range(self.last_block + 1, head + 1))
        with self._lock:
            subscribers = list(self._subscribers)
        for block_number in new_blocks:
            for block_queue in subscribers:
                block_queue.put(block_number)
        self.last_block = head

        if len(new_blocks) > 1:
            logger.debug(f"Published blocks {new_blocks[0]}-{new_blocks[-1]} to {len(subscribers)} pollers")
        return new_blocks

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="block-broadcaster", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)

    def _run(self):
        logger.info(f"Block broadcaster started (poll interval {self.poll_interval}s)")
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.poll_interval)
        logger.info("Block broadcaster stopped")
