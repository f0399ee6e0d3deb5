import random
from argparse import Namespace
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import watchlist_cli
from chain_client import StartupFatalError
from dedup_store import DedupStore, MINTED
from mint_watcher import MintWatcher, build_sink, pick_flex_token
from notification_sink import DiscordWebhookSink, LoggingSink
from watchlist_store import WatchEntry, WatchlistStore

from conftest import NFT_ADDRESS, USDC_ADDRESS


@pytest.fixture
def cli_store(db, settings, monkeypatch):
    store = WatchlistStore(db)
    config_manager = SimpleNamespace(get_monitor_settings=lambda: settings, get_display_name=lambda: "Test chain")
    monkeypatch.setattr(watchlist_cli, "_open_store", lambda: (config_manager, db, store))
    return store


def track_args(**overrides):
    args = dict(name="apes", address=NFT_ADDRESS, price="0.01", token=None, symbol=None, destination=None)
    args.update(overrides)
    return Namespace(**args)


def test_track_and_update(cli_store, capsys):
    watchlist_cli.cmd_watchlist_track(track_args(destination=["a", "a"]))
    watchlist_cli.cmd_watchlist_track(track_args(price="0.02", destination=["b"]))

    entry = cli_store.get("apes")
    assert str(entry.mint_price) == "0.02"
    assert entry.payment_token_symbol == "ETH"
    assert entry.destination_ids == ["a", "b"]
    assert "Updated apes" in capsys.readouterr().out


def test_track_with_token_payment(cli_store):
    watchlist_cli.cmd_watchlist_track(track_args(token=USDC_ADDRESS, symbol="USDC"))

    entry = cli_store.get("apes")
    assert not entry.pays_in_native
    assert entry.payment_token_symbol == "USDC"


@pytest.mark.parametrize("price", ["abc", "-1"])
def test_track_rejects_bad_price(cli_store, price):
    with pytest.raises(SystemExit):
        watchlist_cli.cmd_watchlist_track(track_args(price=price))
    assert cli_store.get("apes") is None


def test_track_rejects_bad_address(cli_store):
    with pytest.raises(SystemExit):
        watchlist_cli.cmd_watchlist_track(track_args(address="0x1234"))


def test_untrack_with_purge(cli_store, db):
    watchlist_cli.cmd_watchlist_track(track_args())
    dedup = DedupStore(db)
    dedup.mark_seen("apes", MINTED, 1)
    dedup.flush("apes")

    watchlist_cli.cmd_watchlist_untrack(Namespace(name="apes", purge=True))

    assert cli_store.get("apes") is None
    assert db.get_dedup_record("apes") is None


def test_untrack_unknown_contract_exits(cli_store):
    with pytest.raises(SystemExit):
        watchlist_cli.cmd_watchlist_untrack(Namespace(name="nope", purge=False))


def test_channel_commands(cli_store, capsys):
    watchlist_cli.cmd_watchlist_track(track_args())
    watchlist_cli.cmd_watchlist_add_channel(Namespace(name="apes", destination_id="sales-feed"))
    watchlist_cli.cmd_watchlist_add_channel(Namespace(name="apes", destination_id="unknown"))
    watchlist_cli.cmd_watchlist_untrack_channel(Namespace(name="apes", destination_id="unknown"))
    capsys.readouterr()

    watchlist_cli.cmd_watchlist_channels(Namespace(name="apes"))

    assert cli_store.get("apes").destination_ids == ["sales-feed"]
    assert "sales-feed" in capsys.readouterr().out


def test_command_registry_is_complete():
    assert set(watchlist_cli.WATCHLIST_COMMANDS) == {
        "list", "track", "untrack", "channels", "add-channel", "untrack-channel",
    }


def test_build_sink(settings):
    assert isinstance(build_sink(settings, disable_discord=True), LoggingSink)
    assert isinstance(build_sink(settings), DiscordWebhookSink)


def test_watcher_without_endpoints_cannot_start(settings, tmp_path):
    settings.endpoints = []

    with pytest.raises(StartupFatalError):
        MintWatcher(settings, str(tmp_path / "data"), disable_discord=True)


def test_reload_watchlist_diffs_running_pollers(settings, fake_client, tmp_path):
    watcher = MintWatcher(settings, str(tmp_path / "data"), disable_discord=True, client=fake_client)
    try:
        watcher.store.save(WatchEntry(name="apes", contract_address=NFT_ADDRESS, mint_price="0.01"))
        watcher.store.save(WatchEntry(name="punks", contract_address=USDC_ADDRESS, mint_price="0"))
        watcher.reload_watchlist()

        assert sorted(watcher.poller.watched_names()) == ["apes", "punks"]
        assert watcher.broadcaster.subscriber_count() == 2

        watcher.store.delete("punks")
        watcher.store.add_destination("apes", "mint-alerts")
        watcher.reload_watchlist()

        assert watcher.poller.watched_names() == ["apes"]
        assert watcher.broadcaster.subscriber_count() == 1
        assert watcher.poller.status()[0]["destinations"] == 1
    finally:
        watcher.poller.stop(timeout=5)


def test_flex_picks_a_minted_token(fake_db, entry):
    dedup = DedupStore(fake_db)
    for token_id in (4, 7):
        dedup.mark_seen(entry.name, MINTED, token_id)
    metadata = MagicMock()
    metadata.image_url.side_effect = lambda address, token_id: f"https://img.example/{token_id}.png"

    token_id, image = pick_flex_token(dedup, entry, metadata, rng=random.Random(3))

    assert token_id in (4, 7)
    assert image == f"https://img.example/{token_id}.png"
    metadata.image_url.assert_called_once_with(entry.contract_address, token_id)


def test_flex_without_mints(fake_db, entry):
    metadata = MagicMock()

    assert pick_flex_token(DedupStore(fake_db), entry, metadata) is None
    metadata.image_url.assert_not_called()
