#!/usr/bin/env python3
"""
Token metadata lookup: tokenURI -> JSON -> image URL, best-effort.
"""

import base64
import json
import logging
from typing import Any, Dict
from urllib.parse import unquote

import requests

from chain_client import ChainClient, DecodeError, TransientNetworkError

logger = logging.getLogger(__name__)

DATA_JSON_BASE64 = "data:application/json;base64,"
DATA_JSON_PLAIN = "data:application/json,"


def rewrite_storage_uri(uri: str, ipfs_gateway: str) -> str:
    """Turn ipfs:// and ar:// URIs into HTTP gateway URLs; others pass through"""
    uri = uri.strip()
    if uri.startswith("ipfs://"):
        path = uri[len("ipfs://"):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return f"{ipfs_gateway.rstrip('/')}/{path}"
    if uri.startswith("ar://"):
        return f"https://arweave.net/{uri[len('ar://'):]}"
    return uri


class TokenMetadataFetcher:
    def __init__(self, client: ChainClient, ipfs_gateway: str, placeholder_image: str, timeout: float = 5.0):
        self.client = client
        self.ipfs_gateway = ipfs_gateway
        self.placeholder_image = placeholder_image
        self.timeout = timeout

    def token_uri(self, contract_address: str, token_id: int) -> str:
        (uri,) = self.client.call(contract_address, "tokenURI(uint256)", ["uint256"], [token_id], ["string"])
        if not uri:
            raise DecodeError(f"Empty tokenURI for {contract_address} #{token_id}")
        return uri

    def fetch_metadata(self, contract_address: str, token_id: int) -> Dict[str, Any]:
        uri = self.token_uri(contract_address, token_id)

        if uri.startswith((DATA_JSON_BASE64, DATA_JSON_PLAIN)):
            try:
                if uri.startswith(DATA_JSON_BASE64):
                    metadata = json.loads(base64.b64decode(uri[len(DATA_JSON_BASE64):]))
                else:
                    metadata = json.loads(unquote(uri[len(DATA_JSON_PLAIN):]))
            except ValueError as e:
                raise DecodeError(f"Inline metadata for {contract_address} #{token_id} is not JSON: {e}") from e
            if not isinstance(metadata, dict):
                raise DecodeError(f"Inline metadata for {contract_address} #{token_id} is not a JSON object")
            return metadata

        url = rewrite_storage_uri(uri, self.ipfs_gateway)
        try:
            response = requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransientNetworkError(f"Metadata fetch failed for {url}: {e}") from e

        try:
            metadata = response.json()
        except ValueError as e:
            raise DecodeError(f"Metadata at {url} is not JSON: {e}") from e
        if not isinstance(metadata, dict):
            raise DecodeError(f"Metadata at {url} is not a JSON object")
        return metadata

    def image_url(self, contract_address: str, token_id: int) -> str:
        """Gateway URL of the token image, or the placeholder on any failure"""
        try:
            metadata = self.fetch_metadata(contract_address, token_id)
        except (TransientNetworkError, DecodeError) as e:
            logger.debug(f"No metadata for {contract_address} #{token_id}: {e}")
            return self.placeholder_image

        image = metadata.get("image") or metadata.get("image_url")
        if not isinstance(image, str) or not image.strip():
            return self.placeholder_image
        if image.startswith("data:"):
            # inline SVGs are not embeddable in webhook messages
            return self.placeholder_image
        return rewrite_storage_uri(image, self.ipfs_gateway)
