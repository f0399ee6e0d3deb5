#!/usr/bin/env python3
"""
Price Resolver

Expresses an amount of an arbitrary payment token in the chain's native
(reference) currency. Sources are tried in order and the first strictly
positive, finite result wins:

1. identity for the native currency (and its wrapped token)
2. on-chain quote from a UniswapV2-style router (getAmountsIn)
3. DexScreener priceNative
4. CoinGecko token_price in the reference currency
5. static fallback table from the config profile

When every source fails the quote is returned with reference_value=None. That
is a normal outcome, not an error.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from web3 import Web3

from chain_client import ChainClient, DecodeError, TransientNetworkError
from config_manager import MonitorSettings, NATIVE_TOKEN

logger = logging.getLogger(__name__)

DEFAULT_DECIMALS = 18
DEFAULT_SYMBOL = "TOKEN"


@dataclass
class PriceQuote:
    amount: Decimal
    reference_value: Optional[Decimal]
    source: Optional[str] = None

    @property
    def is_known(self) -> bool:
        return self.reference_value is not None


def positive_decimal(value: Any) -> Optional[Decimal]:
    """Decimal(value) if it is finite and > 0, else None"""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    return number


class PriceResolver:
    def __init__(self, client: ChainClient, settings: MonitorSettings):
        self.client = client
        self.settings = settings
        self.timeout = settings.call_timeout
        self.reference_symbol = settings.reference_symbol
        self.wrapped_native = (
            Web3.to_checksum_address(settings.wrapped_native_address)
            if settings.wrapped_native_address else None
        )
        self.router = Web3.to_checksum_address(settings.router_address) if settings.router_address else None
        self.fallback_prices = {address.lower(): price for address, price in settings.fallback_prices.items()}

        self._decimals_cache: Dict[str, int] = {}
        self._symbol_cache: Dict[str, str] = {}
        self._cache_lock = threading.Lock()

    def is_native(self, token: Optional[str]) -> bool:
        if not token or token == NATIVE_TOKEN:
            return True
        return self.wrapped_native is not None and token.lower() == self.wrapped_native.lower()

    def _sources(self) -> List[Tuple[str, Callable[[Decimal, str], Optional[Decimal]]]]:
        return [
            ("pool", self.quote_from_pool),
            ("dexscreener", self.quote_from_dexscreener),
            ("coingecko", self.quote_from_coingecko),
            ("static", self.quote_from_static_table),
        ]

    def resolve(self, amount: Any, token: Optional[str]) -> PriceQuote:
        """Value `amount` of `token` in the reference currency; never raises"""
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            logger.warning(f"Cannot price non-numeric amount {amount!r}")
            return PriceQuote(Decimal(0), None)

        if self.is_native(token):
            return PriceQuote(amount, amount, "identity")

        if amount == 0:
            return PriceQuote(amount, Decimal(0), "zero")

        try:
            address = Web3.to_checksum_address(token)
        except (ValueError, TypeError):
            logger.warning(f"Cannot price unknown token {token!r}")
            return PriceQuote(amount, None)

        for source_name, source in self._sources():
            try:
                value = positive_decimal(source(amount, address))
            except Exception as e:
                logger.debug(f"Price source {source_name} failed for {address}: {e}")
                continue
            if value is not None:
                logger.debug(f"Priced {amount} of {address} at {value} {self.reference_symbol} via {source_name}")
                return PriceQuote(amount, value, source_name)

        logger.info(f"No price available for {amount} of {address}")
        return PriceQuote(amount, None)

    # token helpers (shared with sale valuation)

    def token_decimals(self, address: str) -> int:
        key = address.lower()
        with self._cache_lock:
            if key in self._decimals_cache:
                return self._decimals_cache[key]
        try:
            (decimals,) = self.client.call(address, "decimals()", [], [], ["uint8"])
        except (TransientNetworkError, DecodeError) as e:
            logger.debug(f"decimals() failed for {address}, assuming {DEFAULT_DECIMALS}: {e}")
            return DEFAULT_DECIMALS
        with self._cache_lock:
            self._decimals_cache[key] = int(decimals)
        return int(decimals)

    def token_symbol(self, address: str) -> str:
        key = address.lower()
        with self._cache_lock:
            if key in self._symbol_cache:
                return self._symbol_cache[key]
        try:
            (symbol,) = self.client.call(address, "symbol()", [], [], ["string"])
        except (TransientNetworkError, DecodeError) as e:
            logger.debug(f"symbol() failed for {address}: {e}")
            return DEFAULT_SYMBOL
        symbol = symbol.strip() or DEFAULT_SYMBOL
        with self._cache_lock:
            self._symbol_cache[key] = symbol
        return symbol

    # sources

    def quote_from_pool(self, amount: Decimal, address: str) -> Optional[Decimal]:
        """Native needed to buy `amount` of the token through the router's reserves"""
        if not self.router or not self.wrapped_native:
            return None

        token_decimals = self.token_decimals(address)
        amount_out = int((amount * (Decimal(10) ** token_decimals)).to_integral_value())
        if amount_out <= 0:
            return None

        (amounts,) = self.client.call(
            self.router,
            "getAmountsIn(uint256,address[])",
            ["uint256", "address[]"],
            [amount_out, [self.wrapped_native, address]],
            ["uint256[]"],
        )
        if not amounts or amounts[0] <= 0:
            return None

        native_decimals = self.token_decimals(self.wrapped_native)
        return Decimal(amounts[0]) / (Decimal(10) ** native_decimals)

    def _is_reference_quote(self, quote_token: Dict[str, Any]) -> bool:
        if self.wrapped_native:
            return str(quote_token.get("address", "")).lower() == self.wrapped_native.lower()
        symbol = str(quote_token.get("symbol", "")).upper()
        reference = self.reference_symbol.upper()
        return symbol in (reference, f"W{reference}")

    def quote_from_dexscreener(self, amount: Decimal, address: str) -> Optional[Decimal]:
        url = self.settings.dexscreener_url.format(address=address)
        response = requests.get(url, timeout=self.timeout)
        response.raise_for_status()

        pairs = (response.json() or {}).get("pairs") or []
        for pair in pairs:
            base_token = pair.get("baseToken") or {}
            if str(base_token.get("address", "")).lower() != address.lower():
                continue
            if not self._is_reference_quote(pair.get("quoteToken") or {}):
                continue
            price = positive_decimal(pair.get("priceNative"))
            if price is not None:
                return amount * price
        return None

    def quote_from_coingecko(self, amount: Decimal, address: str) -> Optional[Decimal]:
        platform = self.settings.coingecko_platform
        if not platform:
            return None

        vs_currency = self.reference_symbol.lower()
        response = requests.get(
            self.settings.coingecko_url.format(platform=platform),
            params={"contract_addresses": address.lower(), "vs_currencies": vs_currency},
            timeout=self.timeout,
        )
        response.raise_for_status()

        entry = (response.json() or {}).get(address.lower()) or {}
        price = positive_decimal(entry.get(vs_currency))
        return amount * price if price is not None else None

    def quote_from_static_table(self, amount: Decimal, address: str) -> Optional[Decimal]:
        price = self.fallback_prices.get(address.lower())
        return amount * price if price is not None else None
