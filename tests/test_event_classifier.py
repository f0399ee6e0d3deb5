import pytest
from web3 import Web3

from chain_client import DecodeError
from dedup_store import MINTED, SOLD
from event_classifier import EventClassifier, MINT, SALE, decode_transfer_log

from conftest import (
    BUYER,
    MINTER,
    NFT_ADDRESS,
    USDC_ADDRESS,
    ZERO,
    make_erc20_transfer,
    make_nft_transfer,
)


@pytest.fixture
def classifier(fake_client, dedup):
    return EventClassifier(fake_client, dedup)


def test_decode_transfer_log():
    log = make_nft_transfer(ZERO, MINTER, 42, block=10)

    from_address, to_address, token_id = decode_transfer_log(log)

    assert from_address == ZERO
    assert to_address == Web3.to_checksum_address(MINTER)
    assert token_id == 42


def test_decode_rejects_erc20_shaped_log():
    with pytest.raises(DecodeError):
        decode_transfer_log(make_erc20_transfer(USDC_ADDRESS, MINTER, BUYER, 5))


def test_mints_and_sales_are_split(classifier):
    logs = [
        make_nft_transfer(ZERO, MINTER, 1, block=10),
        make_nft_transfer(MINTER, BUYER, 7, block=10, log_index=1),
    ]

    events = classifier.classify("apes", logs)

    assert [(e.kind, e.token_id) for e in events] == [(MINT, 1), (SALE, 7)]
    assert events[1].from_address == Web3.to_checksum_address(MINTER)
    assert events[1].to_address == Web3.to_checksum_address(BUYER)


def test_events_are_ordered_by_block_and_log_index(classifier):
    logs = [
        make_nft_transfer(ZERO, MINTER, 3, block=11, log_index=0),
        make_nft_transfer(ZERO, MINTER, 2, block=10, log_index=5),
        make_nft_transfer(ZERO, MINTER, 1, block=10, log_index=2),
    ]

    events = classifier.classify("apes", logs)

    assert [e.token_id for e in events] == [1, 2, 3]


def test_classification_is_idempotent(classifier, dedup):
    logs = [make_nft_transfer(ZERO, MINTER, token_id, block=10, log_index=token_id) for token_id in (1, 2, 3)]

    first = classifier.classify("apes", logs)
    second = classifier.classify("apes", logs)

    assert len(first) == 3
    assert second == []
    assert dedup.counts("apes") == (3, 0)


def test_sale_of_token_is_reported_once(classifier):
    first = classifier.classify("apes", [make_nft_transfer(MINTER, BUYER, 2, block=10)])
    resale = classifier.classify("apes", [make_nft_transfer(BUYER, MINTER, 2, block=12)])

    assert len(first) == 1
    assert resale == []


def test_empty_range_touches_nothing(classifier, dedup):
    assert classifier.classify("apes", []) == []
    assert dedup.counts("apes") == (0, 0)


def test_undecodable_logs_are_skipped(classifier, dedup):
    broken = make_nft_transfer(ZERO, MINTER, 9, block=10)
    broken["topics"] = broken["topics"][:2]
    logs = [
        broken,
        dict(make_erc20_transfer(USDC_ADDRESS, MINTER, BUYER, 5), blockNumber=10),
        make_nft_transfer(ZERO, MINTER, 4, block=10, log_index=3),
    ]

    events = classifier.classify("apes", logs)

    assert [e.token_id for e in events] == [4]
    assert not dedup.contains("apes", MINTED, 9)


def test_contracts_have_separate_dedup_sets(classifier, dedup):
    log = make_nft_transfer(ZERO, MINTER, 1, block=10)

    assert len(classifier.classify("apes", [log])) == 1
    assert len(classifier.classify("punks", [log])) == 1
    assert not dedup.contains("apes", SOLD, 1)


def test_fetch_transfer_logs_uses_range(classifier, fake_client):
    fake_client.logs = [make_nft_transfer(ZERO, MINTER, 1, block=99), make_nft_transfer(ZERO, MINTER, 2, block=100)]

    logs = classifier.fetch_transfer_logs(NFT_ADDRESS, 100, 100)

    assert [log["blockNumber"] for log in logs] == [100]
    assert fake_client.get_logs_calls == [(100, 100)]
