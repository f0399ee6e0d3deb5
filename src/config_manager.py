#!/usr/bin/env python3
"""
Configuration Manager for Mint Watcher

Supports multiple chain profiles with:
1. Environment variable substitution (${VAR} and ${VAR:-default} patterns)
2. Profile validation
3. A typed MonitorSettings object handed to the core components

The core never reads configuration on its own; the CLI builds MonitorSettings
here and injects it.
"""

import os
import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional
from pathlib import Path

from dotenv import load_dotenv

# look for .env file in the repository root
load_dotenv(Path(__file__).parent.parent / '.env')

NATIVE_TOKEN = "native"

DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"
DEFAULT_PLACEHOLDER_IMAGE = "https://placehold.co/600x600?text=No+Image"
DEFAULT_ENS_LOOKUP_URL = "https://api.ens.vision/ens/owner/{address}"
DEFAULT_DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex/tokens/{address}"
DEFAULT_COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/token_price/{platform}"


@dataclass
class MonitorSettings:
    """Everything the polling core needs, resolved from one config profile"""

    endpoints: List[str]
    poll_overlap_blocks: int = 1
    flush_every_n_blocks: int = 10
    call_timeout: float = 5.0
    block_poll_interval: float = 2.0
    reference_symbol: str = "ETH"
    wrapped_native_address: Optional[str] = None
    router_address: Optional[str] = None
    coingecko_platform: Optional[str] = None
    coingecko_url: str = DEFAULT_COINGECKO_URL
    dexscreener_url: str = DEFAULT_DEXSCREENER_URL
    fallback_prices: Dict[str, Decimal] = field(default_factory=dict)
    ipfs_gateway: str = DEFAULT_IPFS_GATEWAY
    placeholder_image: str = DEFAULT_PLACEHOLDER_IMAGE
    marketplace_url_template: Optional[str] = None
    collection_url_template: Optional[str] = None
    destinations: Dict[str, str] = field(default_factory=dict)
    database_path: str = "databases/mintwatch.duckdb"
    ens_lookup_url: Optional[str] = DEFAULT_ENS_LOOKUP_URL
    heartbeat_webhook_url: Optional[str] = None
    heartbeat_frequency_days: int = 7


class ConfigManager:
    """Configuration manager supporting multiple chain profiles"""

    def __init__(self, config_file: Optional[str] = None, config_name_override: Optional[str] = None):
        self.config_file = config_file or os.getenv('MINTWATCH_CONFIG', 'config.json')
        self._config_data = None
        self._active_config_name = None
        self._active_config = None
        self._config_name_override = config_name_override
        self._load_config()
        self._load_active_config()

    def _config_path(self) -> Path:
        path = Path(self.config_file)
        if path.is_absolute() or path.exists():
            return path
        return Path(__file__).parent.parent / self.config_file

    def _load_config(self):
        """Load configuration from JSON file"""
        config_path = self._config_path()

        try:
            with open(config_path, 'r') as f:
                content = self._substitute_env_vars(f.read())
                self._config_data = json.loads(content)
        except FileNotFoundError:
            raise FileNotFoundError(f"Config file {config_path} not found")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {config_path}: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR} and ${VAR:-default} patterns with environment variables"""
        def replace_var(match):
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.getenv(var_name)
            if env_value is None:
                if default is None:
                    raise ValueError(f"Environment variable {var_name} is not set")
                return default
            return env_value

        pattern = r'\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}'
        return re.sub(pattern, replace_var, content)

    def _load_active_config(self):
        """Load the active profile based on override, ACTIVE_CONFIG env var, or the first profile"""
        if self._config_name_override:
            self._active_config_name = self._config_name_override
        else:
            self._active_config_name = os.getenv('ACTIVE_CONFIG')

        if not self._active_config_name:
            configs = self.get_available_configs()
            if not configs:
                raise ValueError("No configurations available and ACTIVE_CONFIG not set")
            self._active_config_name = list(configs.keys())[0]

        if self._active_config_name not in self.get_available_configs():
            available = list(self.get_available_configs().keys())
            raise ValueError(f"Active config '{self._active_config_name}' not found. Available: {available}")

        self._active_config = self.get_available_configs()[self._active_config_name]

        os.makedirs(self.get_data_dir(), exist_ok=True)

    def get_available_configs(self) -> Dict[str, Any]:
        """Get all available profiles"""
        return self._config_data.get("configs", {})

    def get_active_config_name(self) -> str:
        return self._active_config_name

    def get_active_config(self) -> Dict[str, Any]:
        return self._active_config.copy()

    def list_configs(self) -> Dict[str, str]:
        """List all available profiles with display names"""
        return {
            name: config.get('display_name', name)
            for name, config in self.get_available_configs().items()
        }

    def validate_config(self, config_name: Optional[str] = None) -> Dict[str, Any]:
        """Validate a profile and return validation results"""
        config = self.get_available_configs().get(config_name or self._active_config_name)

        if not config:
            return {"valid": False, "errors": ["Configuration not found"], "warnings": []}

        errors = []
        warnings = []

        def _is_http_url(s: str) -> bool:
            return isinstance(s, str) and s.startswith(('http://', 'https://'))

        def _is_address(s: Any) -> bool:
            return isinstance(s, str) and s.startswith('0x') and len(s) == 42

        rpc_urls = config.get('rpc_urls')
        rpc_url = config.get('rpc_url')
        if rpc_urls is not None:
            if not isinstance(rpc_urls, list) or not rpc_urls or not all(_is_http_url(u) for u in rpc_urls):
                errors.append("rpc_urls must be a non-empty list of HTTP/HTTPS URLs")
        elif rpc_url is not None:
            if not _is_http_url(rpc_url):
                errors.append("rpc_url must be a valid HTTP/HTTPS URL")
        else:
            errors.append("Missing required field: rpc_url or rpc_urls")

        for address_field in ('wrapped_native_address', 'router_address'):
            value = config.get(address_field)
            if value and not _is_address(value):
                errors.append(f"{address_field} must be a valid address (0x...)")

        if config.get('router_address') and not config.get('wrapped_native_address'):
            errors.append("router_address requires wrapped_native_address")

        for address, price in config.get('fallback_prices', {}).items():
            if not _is_address(address):
                errors.append(f"fallback_prices key {address} is not a valid address")
            try:
                if Decimal(str(price)) <= 0:
                    errors.append(f"fallback_prices[{address}] must be positive")
            except InvalidOperation:
                errors.append(f"fallback_prices[{address}] is not a number")

        destinations = config.get('destinations', {})
        if not destinations:
            warnings.append("No destinations configured; notifications will be dropped")
        for destination_id, webhook in destinations.items():
            if webhook and not webhook.startswith('https://discord.com/api/webhooks/'):
                warnings.append(f"destination {destination_id} should be a Discord webhook URL")

        if not config.get('router_address'):
            warnings.append("No router_address; on-chain pool quotes are disabled")
        if not config.get('coingecko_platform'):
            warnings.append("No coingecko_platform; CoinGecko quotes are disabled")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings,
            "config_name": config_name or self._active_config_name
        }

    # profile getters

    def get_display_name(self) -> str:
        return self._active_config.get('display_name', self._active_config_name)

    def get_rpc_urls(self) -> List[str]:
        """Get list of RPC URLs in preference order"""
        urls = self._active_config.get('rpc_urls')
        if isinstance(urls, list) and urls:
            return urls
        url = self._active_config.get('rpc_url')
        if isinstance(url, str) and url:
            return [url]
        raise ValueError("No RPC URL(s) configured")

    def get_data_dir(self) -> str:
        return self._active_config.get('data_dir', f"data/{self._active_config_name}")

    def get_database_path(self) -> str:
        return self._active_config.get('database_path', f"databases/{self._active_config_name}.duckdb")

    def get_monitoring_config(self) -> Dict[str, Any]:
        """Global monitoring section, overridable per profile"""
        merged = dict(self._config_data.get("monitoring", {}))
        merged.update(self._active_config.get("monitoring", {}))
        return merged

    def get_fallback_prices(self) -> Dict[str, Decimal]:
        prices = {}
        for address, price in self._active_config.get('fallback_prices', {}).items():
            prices[address.lower()] = Decimal(str(price))
        return prices

    def get_monitor_settings(self) -> MonitorSettings:
        """Build the injected settings for the polling core"""
        monitoring = self.get_monitoring_config()
        profile = self._active_config

        return MonitorSettings(
            endpoints=self.get_rpc_urls(),
            poll_overlap_blocks=max(0, int(monitoring.get('poll_overlap_blocks', 1))),
            flush_every_n_blocks=max(1, int(monitoring.get('flush_every_n_blocks', 10))),
            call_timeout=float(monitoring.get('call_timeout', 5)),
            block_poll_interval=float(monitoring.get('block_poll_interval', 2)),
            reference_symbol=profile.get('reference_symbol', 'ETH'),
            wrapped_native_address=profile.get('wrapped_native_address') or None,
            router_address=profile.get('router_address') or None,
            coingecko_platform=profile.get('coingecko_platform') or None,
            coingecko_url=profile.get('coingecko_url', DEFAULT_COINGECKO_URL),
            dexscreener_url=profile.get('dexscreener_url', DEFAULT_DEXSCREENER_URL),
            fallback_prices=self.get_fallback_prices(),
            ipfs_gateway=profile.get('ipfs_gateway', DEFAULT_IPFS_GATEWAY),
            placeholder_image=profile.get('placeholder_image', DEFAULT_PLACEHOLDER_IMAGE),
            marketplace_url_template=profile.get('marketplace_url_template'),
            collection_url_template=profile.get('collection_url_template'),
            destinations=dict(profile.get('destinations', {})),
            database_path=self.get_database_path(),
            ens_lookup_url=profile.get('ens_lookup_url', DEFAULT_ENS_LOOKUP_URL) or None,
            heartbeat_webhook_url=profile.get('heartbeat_webhook_url') or None,
            heartbeat_frequency_days=max(1, int(monitoring.get('heartbeat_frequency_days', 7))),
        )


# Global configuration manager instance (CLI only)
_config_manager_instance = None
_config_name_override = None


def get_config_manager() -> ConfigManager:
    """Get the process-wide configuration manager used by the CLI"""
    global _config_manager_instance

    if _config_manager_instance is None:
        _config_manager_instance = ConfigManager(config_name_override=_config_name_override)

    return _config_manager_instance


def set_global_config_override(config_name: Optional[str]):
    """Select a profile by name for subsequent get_config_manager() calls"""
    global _config_manager_instance, _config_name_override
    _config_name_override = config_name
    _config_manager_instance = None
