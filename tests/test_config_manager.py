import json
from decimal import Decimal

import pytest

from config_manager import ConfigManager, DEFAULT_IPFS_GATEWAY

from conftest import ROUTER_ADDRESS, USDC_ADDRESS, WETH_ADDRESS


@pytest.fixture
def write_config(tmp_path):
    def write(profiles, monitoring=None):
        for name, profile in profiles.items():
            profile.setdefault("data_dir", str(tmp_path / "data" / name))
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"monitoring": monitoring or {}, "configs": profiles}))
        return str(path)
    return write


def test_settings_built_from_profile(write_config, tmp_path):
    path = write_config({
        "mainnet": {
            "display_name": "Mainnet",
            "rpc_urls": ["https://a.example", "https://b.example"],
            "wrapped_native_address": WETH_ADDRESS,
            "fallback_prices": {USDC_ADDRESS: "0.0003"},
            "destinations": {"mint-alerts": "https://discord.com/api/webhooks/1/x"},
            "database_path": str(tmp_path / "db" / "mainnet.duckdb"),
            "monitoring": {"flush_every_n_blocks": 5},
        }
    }, monitoring={"poll_overlap_blocks": 2, "flush_every_n_blocks": 20})

    settings = ConfigManager(config_file=path, config_name_override="mainnet").get_monitor_settings()

    assert settings.endpoints == ["https://a.example", "https://b.example"]
    assert settings.poll_overlap_blocks == 2
    assert settings.flush_every_n_blocks == 5
    assert settings.fallback_prices == {USDC_ADDRESS.lower(): Decimal("0.0003")}
    assert settings.ipfs_gateway == DEFAULT_IPFS_GATEWAY
    assert settings.destinations == {"mint-alerts": "https://discord.com/api/webhooks/1/x"}
    assert settings.database_path.endswith("mainnet.duckdb")


def test_single_rpc_url(write_config):
    path = write_config({"chain": {"rpc_url": "https://only.example"}})

    assert ConfigManager(config_file=path, config_name_override="chain").get_rpc_urls() == ["https://only.example"]


def test_env_substitution(write_config, monkeypatch):
    monkeypatch.setenv("TEST_RPC_URL", "https://from-env.example")
    monkeypatch.delenv("TEST_MISSING", raising=False)
    path = write_config({"chain": {"rpc_urls": ["${TEST_RPC_URL}", "${TEST_MISSING:-https://default.example}"]}})

    urls = ConfigManager(config_file=path, config_name_override="chain").get_rpc_urls()

    assert urls == ["https://from-env.example", "https://default.example"]


def test_unset_env_var_without_default_is_an_error(write_config, monkeypatch):
    monkeypatch.delenv("TEST_UNSET_VAR", raising=False)
    path = write_config({"chain": {"rpc_url": "${TEST_UNSET_VAR}"}})

    with pytest.raises(ValueError):
        ConfigManager(config_file=path, config_name_override="chain")


def test_unknown_profile_is_an_error(write_config):
    path = write_config({"chain": {"rpc_url": "https://a.example"}})

    with pytest.raises(ValueError):
        ConfigManager(config_file=path, config_name_override="nope")


def test_validate_config(write_config):
    path = write_config({
        "good": {"rpc_url": "https://a.example", "wrapped_native_address": WETH_ADDRESS,
                 "router_address": ROUTER_ADDRESS, "coingecko_platform": "ethereum",
                 "destinations": {"a": "https://discord.com/api/webhooks/1/x"}},
        "bad": {"rpc_url": "ftp://nope", "router_address": ROUTER_ADDRESS,
                "fallback_prices": {USDC_ADDRESS: "-1"}},
    })
    manager = ConfigManager(config_file=path, config_name_override="good")

    good = manager.validate_config("good")
    bad = manager.validate_config("bad")

    assert good["valid"] and good["errors"] == [] and good["warnings"] == []
    assert not bad["valid"]
    assert "rpc_url must be a valid HTTP/HTTPS URL" in bad["errors"]
    assert "router_address requires wrapped_native_address" in bad["errors"]
    assert any("fallback_prices" in error for error in bad["errors"])
    assert manager.validate_config("missing")["valid"] is False


def test_list_configs(write_config):
    path = write_config({"a": {"rpc_url": "https://a.example", "display_name": "Chain A"},
                         "b": {"rpc_url": "https://b.example"}})

    assert ConfigManager(config_file=path, config_name_override="a").list_configs() == {"a": "Chain A", "b": "b"}
