#!/usr/bin/env python3
"""
Notification Builder

Turns classified events into notification payloads:
- all new mints of one poll cycle become a single MintBatchNotification
- each new sale becomes a SaleNotification, provided its payment can be found
  (native value on the transaction, or an ERC-20 transfer to the seller in the
  receipt) and priced in the reference currency
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from chain_client import (
    ChainClient,
    DecodeError,
    TRANSFER_TOPIC,
    TransientNetworkError,
    ZERO_ADDRESS,
    normalize_hex,
    topic_to_address,
)
from config_manager import MonitorSettings, NATIVE_TOKEN
from event_classifier import ClassifiedEvent
from price_resolver import PriceResolver
from token_metadata import TokenMetadataFetcher
from watchlist_store import WatchEntry

logger = logging.getLogger(__name__)

WEI_PER_NATIVE = Decimal(10) ** 18

METHOD_NATIVE = "native"
METHOD_TOKEN = "token"


@dataclass
class MintBatchNotification:
    contract_name: str
    contract_address: str
    token_ids: List[int]
    minter_address: str
    total_paid: Decimal
    payment_symbol: str
    reference_value: Optional[Decimal]
    reference_symbol: str
    image_url: str
    open_for_sale_link: Optional[str] = None
    transaction_hash: Optional[str] = None

    kind = "mint"


@dataclass
class SaleNotification:
    contract_name: str
    contract_address: str
    token_id: int
    seller: str
    buyer: str
    amount_paid: Decimal
    payment_symbol: str
    reference_value: Decimal
    reference_symbol: str
    method: str
    image_url: str
    marketplace_link: Optional[str] = None
    transaction_hash: Optional[str] = None

    kind = "sale"


@dataclass
class SalePayment:
    amount: Decimal
    token: str
    symbol: str
    method: str


def _data_bytes(data: Any) -> bytes:
    if isinstance(data, str):
        return bytes.fromhex(data[2:] if data.startswith("0x") else data)
    return bytes(data or b"")


class NotificationBuilder:
    def __init__(self, client: ChainClient, price_resolver: PriceResolver,
                 metadata: TokenMetadataFetcher, settings: MonitorSettings):
        self.client = client
        self.price_resolver = price_resolver
        self.metadata = metadata
        self.settings = settings

    def collection_link(self, entry: WatchEntry) -> Optional[str]:
        template = self.settings.collection_url_template
        if not template:
            return None
        return template.format(contract=entry.contract_address, name=entry.name)

    def token_link(self, entry: WatchEntry, token_id: int) -> Optional[str]:
        template = self.settings.marketplace_url_template
        if not template:
            return None
        return template.format(contract=entry.contract_address, token_id=token_id, name=entry.name)

    def build_mint_batch(self, entry: WatchEntry, mints: List[ClassifiedEvent]) -> Optional[MintBatchNotification]:
        if not mints:
            return None

        token_ids = [mint.token_id for mint in mints]
        total_paid = entry.mint_price * len(token_ids)
        quote = self.price_resolver.resolve(total_paid, entry.payment_token)

        return MintBatchNotification(
            contract_name=entry.name,
            contract_address=entry.contract_address,
            token_ids=token_ids,
            minter_address=mints[0].to_address,
            total_paid=total_paid,
            payment_symbol=entry.payment_token_symbol,
            reference_value=quote.reference_value,
            reference_symbol=self.settings.reference_symbol,
            image_url=self.metadata.image_url(entry.contract_address, token_ids[0]),
            open_for_sale_link=self.collection_link(entry),
            transaction_hash=mints[0].transaction_hash,
        )

    def resolve_sale_payment(self, entry: WatchEntry, sale: ClassifiedEvent) -> Optional[SalePayment]:
        """How much the seller received, and in what; None when undeterminable"""
        try:
            tx = self.client.get_transaction(sale.transaction_hash)
        except TransientNetworkError as e:
            logger.warning(f"{entry.name}: could not load sale tx {sale.transaction_hash}: {e}")
            return None

        value_wei = int(tx.get("value") or 0)
        if value_wei > 0:
            return SalePayment(
                amount=Decimal(value_wei) / WEI_PER_NATIVE,
                token=NATIVE_TOKEN,
                symbol=self.settings.reference_symbol,
                method=METHOD_NATIVE,
            )

        try:
            receipt = self.client.get_transaction_receipt(sale.transaction_hash)
        except TransientNetworkError as e:
            logger.warning(f"{entry.name}: could not load sale receipt {sale.transaction_hash}: {e}")
            return None

        for log in receipt.get("logs") or []:
            topics = log.get("topics") or []
            # ERC-20 Transfer: from and to indexed, amount in data
            if len(topics) != 3 or normalize_hex(topics[0]) != TRANSFER_TOPIC:
                continue
            try:
                token_address = Web3.to_checksum_address(log["address"])
                recipient = topic_to_address(topics[2])
                (raw_amount,) = decode(["uint256"], _data_bytes(log.get("data")))
            except (DecodeError, DecodingError, KeyError, ValueError, TypeError) as e:
                logger.debug(f"{entry.name}: skipping receipt log in {sale.transaction_hash}: {e}")
                continue

            if token_address == entry.contract_address or recipient != sale.from_address or raw_amount == 0:
                continue

            decimals = self.price_resolver.token_decimals(token_address)
            return SalePayment(
                amount=Decimal(raw_amount) / (Decimal(10) ** decimals),
                token=token_address,
                symbol=self.price_resolver.token_symbol(token_address),
                method=METHOD_TOKEN,
            )

        return None

    def build_sale(self, entry: WatchEntry, sale: ClassifiedEvent) -> Optional[SaleNotification]:
        payment = self.resolve_sale_payment(entry, sale)
        if payment is None:
            logger.info(f"{entry.name}: no payment found for token {sale.token_id} transfer, not alerting")
            return None

        quote = self.price_resolver.resolve(payment.amount, payment.token)
        if not quote.is_known:
            logger.info(
                f"{entry.name}: sale of token {sale.token_id} for {payment.amount} {payment.symbol} "
                f"could not be valued, not alerting"
            )
            return None

        return SaleNotification(
            contract_name=entry.name,
            contract_address=entry.contract_address,
            token_id=sale.token_id,
            seller=sale.from_address,
            buyer=sale.to_address,
            amount_paid=payment.amount,
            payment_symbol=payment.symbol,
            reference_value=quote.reference_value,
            reference_symbol=self.settings.reference_symbol,
            method=payment.method,
            image_url=self.metadata.image_url(entry.contract_address, sale.token_id),
            marketplace_link=self.token_link(entry, sale.token_id),
            transaction_hash=sale.transaction_hash,
        )

    def build_simulated_mint(self, entry: WatchEntry, token_id: int = 1) -> MintBatchNotification:
        """A mint notification for a made-up event, used by `mintwatch test-notify`"""
        simulated = ClassifiedEvent(
            kind="mint",
            token_id=token_id,
            from_address=ZERO_ADDRESS,
            to_address=entry.contract_address,
            transaction_hash="0x" + "00" * 32,
            block_number=0,
        )
        return self.build_mint_batch(entry, [simulated])
