import os
import sys
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from chain_client import TRANSFER_TOPIC, TransientNetworkError  # noqa: E402
from config_manager import MonitorSettings  # noqa: E402
from database_manager import MintWatchDB  # noqa: E402
from dedup_store import DedupStore  # noqa: E402
from notification_sink import NotificationSink  # noqa: E402
from watchlist_store import WatchEntry  # noqa: E402

NFT_ADDRESS = "0x" + "ab" * 20
WETH_ADDRESS = "0x" + "c0" * 20
ROUTER_ADDRESS = "0x" + "7a" * 20
USDC_ADDRESS = "0x" + "a0" * 20
MINTER = "0x" + "11" * 20
BUYER = "0x" + "22" * 20
THIRD_PARTY = "0x" + "33" * 20
ZERO = "0x" + "00" * 20


def address_topic(address):
    return "0x" + "0" * 24 + address[2:].lower()


def tx_hash(n):
    return "0x" + f"{n:064x}"


def make_nft_transfer(from_address, to_address, token_id, block, log_index=0, tx=None, contract=NFT_ADDRESS):
    return {
        "address": contract,
        "topics": [TRANSFER_TOPIC, address_topic(from_address), address_topic(to_address), f"0x{token_id:064x}"],
        "data": "0x",
        "blockNumber": block,
        "logIndex": log_index,
        "transactionHash": tx or tx_hash(block * 1000 + log_index),
    }


def make_erc20_transfer(token, from_address, to_address, amount, log_index=0):
    return {
        "address": token,
        "topics": [TRANSFER_TOPIC, address_topic(from_address), address_topic(to_address)],
        "data": f"0x{amount:064x}",
        "logIndex": log_index,
    }


class FakeChainClient:
    """In-memory stand-in for ChainClient"""

    def __init__(self):
        self.endpoint = "http://fake-rpc"
        self.head = 100
        self.logs = []
        self.transactions = {}
        self.receipts = {}
        self.call_results = {}
        self.fail_get_logs = False
        self.get_logs_calls = []

    def current_block(self):
        return self.head

    def get_logs(self, from_block, to_block, address, topics):
        self.get_logs_calls.append((from_block, to_block))
        if self.fail_get_logs:
            raise TransientNetworkError("eth_getLogs timed out")
        return [
            log for log in self.logs
            if from_block <= log["blockNumber"] <= to_block and log["address"].lower() == address.lower()
        ]

    def call(self, address, signature, arg_types, args, output_types):
        result = self.call_results.get((address.lower(), signature))
        if result is None:
            raise TransientNetworkError(f"no fake result for {signature} on {address}")
        if isinstance(result, Exception):
            raise result
        return result

    def get_transaction(self, tx):
        if tx not in self.transactions:
            raise TransientNetworkError(f"unknown tx {tx}")
        return self.transactions[tx]

    def get_transaction_receipt(self, tx):
        if tx not in self.receipts:
            raise TransientNetworkError(f"unknown receipt {tx}")
        return self.receipts[tx]


class FakeDedupDB:
    """Dedup persistence that only records what was saved"""

    def __init__(self, records=None):
        self.records = dict(records or {})
        self.saves = []

    def get_dedup_record(self, contract_name):
        return self.records.get(contract_name)

    def save_dedup_record(self, contract_name, minted_ids, sold_ids):
        self.saves.append((contract_name, sorted(minted_ids), sorted(sold_ids)))

    def delete_dedup_record(self, contract_name=None):
        if contract_name is None:
            self.records.clear()
        else:
            self.records.pop(contract_name, None)


class RecordingSink(NotificationSink):
    def __init__(self):
        self.deliveries = []

    def deliver(self, destination_ids, payload):
        delivered = list(dict.fromkeys(destination_ids))
        self.deliveries.append((delivered, payload))
        return delivered


@pytest.fixture
def fake_client():
    return FakeChainClient()


@pytest.fixture
def fake_db():
    return FakeDedupDB()


@pytest.fixture
def dedup(fake_db):
    return DedupStore(fake_db, flush_every_n_blocks=10)


@pytest.fixture
def settings(tmp_path):
    return MonitorSettings(
        endpoints=["http://fake-rpc"],
        reference_symbol="ETH",
        wrapped_native_address=WETH_ADDRESS,
        fallback_prices={USDC_ADDRESS.lower(): Decimal("0.0003")},
        database_path=str(tmp_path / "mintwatch.duckdb"),
        ens_lookup_url=None,
        marketplace_url_template="https://market.example/{contract}/{token_id}",
        collection_url_template="https://market.example/{contract}",
    )


@pytest.fixture
def entry():
    return WatchEntry(
        name="apes",
        contract_address=NFT_ADDRESS,
        mint_price=Decimal("0.01"),
        payment_token_symbol="ETH",
        destination_ids=["mint-alerts", "sales-feed"],
    )


@pytest.fixture
def db(tmp_path):
    return MintWatchDB(str(tmp_path / "state.duckdb"))
