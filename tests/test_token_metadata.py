import base64
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

import token_metadata
from chain_client import DecodeError, TransientNetworkError
from token_metadata import TokenMetadataFetcher, rewrite_storage_uri

from conftest import NFT_ADDRESS

GATEWAY = "https://gateway.example/ipfs/"
PLACEHOLDER = "https://placeholder.example/none.png"


@pytest.fixture
def fetcher(fake_client):
    return TokenMetadataFetcher(fake_client, GATEWAY, PLACEHOLDER)


def set_token_uri(fake_client, uri):
    fake_client.call_results[(NFT_ADDRESS, "tokenURI(uint256)")] = (uri,)


def metadata_response(body):
    response = MagicMock()
    response.json.return_value = body
    response.raise_for_status.return_value = None
    return response


@pytest.mark.parametrize("uri,expected", [
    ("ipfs://QmHash/1.json", GATEWAY + "QmHash/1.json"),
    ("ipfs://ipfs/QmHash/1.json", GATEWAY + "QmHash/1.json"),
    ("ar://tx-id", "https://arweave.net/tx-id"),
    ("https://api.example/1", "https://api.example/1"),
])
def test_rewrite_storage_uri(uri, expected):
    assert rewrite_storage_uri(uri, GATEWAY) == expected


def test_image_from_ipfs_metadata(fetcher, fake_client):
    set_token_uri(fake_client, "ipfs://QmMeta/7")

    with patch.object(token_metadata.requests, "get",
                      return_value=metadata_response({"image": "ipfs://QmImg/7.png"})) as get:
        image = fetcher.image_url(NFT_ADDRESS, 7)

    assert image == GATEWAY + "QmImg/7.png"
    assert get.call_args.args[0] == GATEWAY + "QmMeta/7"


def test_inline_base64_metadata(fetcher, fake_client):
    body = base64.b64encode(json.dumps({"image": "https://img.example/1.png"}).encode()).decode()
    set_token_uri(fake_client, "data:application/json;base64," + body)

    with patch.object(token_metadata.requests, "get") as get:
        assert fetcher.image_url(NFT_ADDRESS, 1) == "https://img.example/1.png"
    get.assert_not_called()


def test_inline_svg_image_uses_placeholder(fetcher, fake_client):
    set_token_uri(fake_client, 'data:application/json,{"image": "data:image/svg+xml;base64,AAAA"}')

    assert fetcher.image_url(NFT_ADDRESS, 1) == PLACEHOLDER


def test_placeholder_when_token_uri_fails(fetcher):
    assert fetcher.image_url(NFT_ADDRESS, 1) == PLACEHOLDER


def test_placeholder_when_metadata_unreachable(fetcher, fake_client):
    set_token_uri(fake_client, "https://api.example/1")

    with patch.object(token_metadata.requests, "get", side_effect=requests.Timeout("slow")):
        assert fetcher.image_url(NFT_ADDRESS, 1) == PLACEHOLDER


def test_placeholder_when_image_missing(fetcher, fake_client):
    set_token_uri(fake_client, "https://api.example/1")

    with patch.object(token_metadata.requests, "get", return_value=metadata_response({"name": "no image"})):
        assert fetcher.image_url(NFT_ADDRESS, 1) == PLACEHOLDER


def test_fetch_metadata_errors_are_typed(fetcher, fake_client):
    set_token_uri(fake_client, "https://api.example/1")

    with patch.object(token_metadata.requests, "get", side_effect=requests.ConnectionError("down")):
        with pytest.raises(TransientNetworkError):
            fetcher.fetch_metadata(NFT_ADDRESS, 1)

    with patch.object(token_metadata.requests, "get", return_value=metadata_response(["not", "a", "dict"])):
        with pytest.raises(DecodeError):
            fetcher.fetch_metadata(NFT_ADDRESS, 1)


@pytest.mark.parametrize("uri", [
    'data:application/json,"just a string"',
    "data:application/json,[1, 2]",
    "data:application/json;base64," + base64.b64encode(b'["a", "b"]').decode(),
])
def test_inline_metadata_that_is_not_an_object(fetcher, fake_client, uri):
    set_token_uri(fake_client, uri)

    with pytest.raises(DecodeError):
        fetcher.fetch_metadata(NFT_ADDRESS, 1)
    assert fetcher.image_url(NFT_ADDRESS, 1) == PLACEHOLDER
