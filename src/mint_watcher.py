#!/usr/bin/env python3
"""
Mint Watcher - NFT mint and sale notifier

Watches a list of token contracts and posts a notification whenever new tokens
are minted or a token is resold for the first time:
1. chain_client       - pick a working RPC endpoint, broadcast new blocks
2. watchlist_poller   - one poller per contract, scanning each new block
3. event_classifier   - Transfer logs -> new mints / sales (deduplicated)
4. notification_*     - value the event and deliver it to its destinations

Usage:
    mintwatch start [--no-discord] [--ping-now]
    mintwatch status
    mintwatch reset [name]
    mintwatch test-notify <name>
    mintwatch flex <name>
    mintwatch watchlist list|track|untrack|channels|add-channel|untrack-channel
    mintwatch config list|show|validate
"""

import argparse
import random
import signal
import sys
import time
from typing import Optional, Tuple

from logger_utils import setup_logging

logger = setup_logging()

from chain_client import BlockBroadcaster, ChainClient, StartupFatalError, select_chain_client
from config_manager import MonitorSettings, get_config_manager, set_global_config_override
from database_manager import MintWatchDB
from dedup_store import DedupStore, MINTED
from ens_lookup import EnsLookup
from event_classifier import EventClassifier
from notification_builder import NotificationBuilder
from notification_sink import DiscordWebhookSink, LoggingSink, NotificationSink
from ping_helper import PingHelper, format_status_content
from price_resolver import PriceResolver
from token_metadata import TokenMetadataFetcher
from watchlist_cli import WATCHLIST_COMMANDS
from watchlist_poller import WatchlistPoller
from watchlist_store import WatchEntry, WatchlistStore


def build_sink(settings: MonitorSettings, disable_discord: bool = False) -> NotificationSink:
    if disable_discord:
        return LoggingSink()
    return DiscordWebhookSink(
        settings.destinations,
        timeout=settings.call_timeout,
        ens=EnsLookup(settings.ens_lookup_url, timeout=settings.call_timeout),
    )


def build_notification_builder(client: ChainClient, settings: MonitorSettings) -> NotificationBuilder:
    resolver = PriceResolver(client, settings)
    metadata = TokenMetadataFetcher(
        client, settings.ipfs_gateway, settings.placeholder_image, timeout=settings.call_timeout
    )
    return NotificationBuilder(client, resolver, metadata, settings)


class MintWatcher:
    def __init__(self, settings: MonitorSettings, data_dir: str, disable_discord: bool = False,
                 client: Optional[ChainClient] = None):
        self.settings = settings
        self.running = False

        # raises StartupFatalError before anything else is set up
        self.client = client or select_chain_client(settings.endpoints, settings.call_timeout)

        self.db = MintWatchDB(settings.database_path)
        self.store = WatchlistStore(self.db)
        self.dedup = DedupStore(self.db, settings.flush_every_n_blocks)
        self.broadcaster = BlockBroadcaster(self.client, settings.block_poll_interval)
        self.poller = WatchlistPoller(
            broadcaster=self.broadcaster,
            classifier=EventClassifier(self.client, self.dedup),
            builder=build_notification_builder(self.client, settings),
            sink=build_sink(settings, disable_discord),
            dedup=self.dedup,
            overlap_blocks=settings.poll_overlap_blocks,
        )

        self.ping_helper = None
        if settings.heartbeat_webhook_url and not disable_discord:
            self.ping_helper = PingHelper(data_dir, settings.heartbeat_webhook_url, timeout=settings.call_timeout)

        self._reload_requested = False

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False

    def _reload_handler(self, signum, frame):
        self._reload_requested = True

    def reload_watchlist(self):
        """Diff the stored watchlist against the running pollers"""
        entries = {entry.name: entry for entry in self.store.list_all()}
        running = set(self.poller.watched_names())

        for name in running - set(entries):
            self.poller.stop_watching(name)
        for entry in entries.values():
            self.poller.update_entry(entry)

        logger.info(f"Watchlist reloaded: {len(entries)} contracts")

    def _maybe_send_ping(self, force: bool = False):
        if not self.ping_helper:
            return
        if force or self.ping_helper.should_send_ping(self.settings.heartbeat_frequency_days):
            content = format_status_content(self.poller.status(), self.broadcaster.last_block)
            self.ping_helper.send_ping(content, self.settings.heartbeat_frequency_days)

    def run(self, ping_now: bool = False):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        if hasattr(signal, "SIGHUP"):
            signal.signal(signal.SIGHUP, self._reload_handler)

        count = self.poller.load(self.store)
        if count == 0:
            logger.warning("Watchlist is empty; add contracts with `mintwatch watchlist track`")
        self.poller.start()
        self.running = True
        logger.info(f"Mint watcher running on {self.client.endpoint} with {count} contracts")

        self._maybe_send_ping(force=ping_now)
        try:
            ticks = 0
            while self.running:
                time.sleep(1)
                ticks += 1
                if self._reload_requested:
                    self._reload_requested = False
                    self.reload_watchlist()
                if ticks % 60 == 0:
                    self._maybe_send_ping()
        finally:
            logger.info("Stopping pollers...")
            self.poller.stop()
            logger.info("Mint watcher stopped")


def cmd_start(args):
    config_manager = get_config_manager()
    settings = config_manager.get_monitor_settings()
    try:
        watcher = MintWatcher(settings, config_manager.get_data_dir(), disable_discord=args.no_discord)
    except StartupFatalError as e:
        logger.critical(f"Cannot start: {e}")
        sys.exit(2)
    watcher.run(ping_now=args.ping_now)


def cmd_status(args):
    config_manager = get_config_manager()
    db = MintWatchDB(config_manager.get_database_path())
    store = WatchlistStore(db)
    dedup = DedupStore(db)
    stats = db.get_statistics()

    print(f"📊 Mint Watcher status: {config_manager.get_display_name()}")
    print(f"🔗 Configuration: {config_manager.get_active_config_name()}")
    print(f"📍 Database: {config_manager.get_database_path()}")
    print(f"⏰ Last dedup flush: {stats['last_flush'] or 'never'}")
    print()
    print(f"{'Contract':20} {'Minted':>8} {'Sold':>8} {'Dest':>5}  Address")
    for entry in store.list_all():
        minted, sold = dedup.counts(entry.name)
        print(f"{entry.name:20} {minted:>8} {sold:>8} {len(entry.destination_ids):>5}  {entry.contract_address}")


def cmd_reset(args):
    config_manager = get_config_manager()
    target = args.name or "ALL contracts"
    if not args.force:
        answer = input(f"Delete dedup history for {target}? Old events may be re-alerted. [y/N] ")
        if answer.strip().lower() != "y":
            print("Aborted")
            return
    DedupStore(MintWatchDB(config_manager.get_database_path())).forget(args.name)
    print(f"✅ Dedup history cleared for {target}")


def cmd_test_notify(args):
    config_manager = get_config_manager()
    settings = config_manager.get_monitor_settings()
    store = WatchlistStore(MintWatchDB(settings.database_path))
    entry = store.get(args.name)
    if entry is None:
        print(f"⚠️  No watched contract named {args.name}")
        sys.exit(1)

    try:
        client = select_chain_client(settings.endpoints, settings.call_timeout)
    except StartupFatalError as e:
        print(f"❌ {e}")
        sys.exit(2)

    payload = build_notification_builder(client, settings).build_simulated_mint(entry, token_id=args.token_id)
    delivered = build_sink(settings).deliver(entry.destination_ids, payload)
    print(f"✅ Test notification delivered to {len(delivered)}/{len(entry.destination_ids)} destinations")


def pick_flex_token(dedup: DedupStore, entry: WatchEntry, metadata: TokenMetadataFetcher,
                    rng: Optional[random.Random] = None) -> Optional[Tuple[int, str]]:
    """A random already-minted token of the contract and its image, or None if nothing was minted yet"""
    minted = dedup.ids(entry.name, MINTED)
    if not minted:
        return None
    token_id = (rng or random).choice(minted)
    return token_id, metadata.image_url(entry.contract_address, token_id)


def cmd_flex(args):
    config_manager = get_config_manager()
    settings = config_manager.get_monitor_settings()
    db = MintWatchDB(settings.database_path)
    entry = WatchlistStore(db).get(args.name)
    if entry is None:
        print(f"⚠️  No watched contract named {args.name}")
        sys.exit(1)

    try:
        client = select_chain_client(settings.endpoints, settings.call_timeout)
    except StartupFatalError as e:
        print(f"❌ {e}")
        sys.exit(2)

    metadata = TokenMetadataFetcher(client, settings.ipfs_gateway, settings.placeholder_image,
                                    timeout=settings.call_timeout)
    picked = pick_flex_token(DedupStore(db), entry, metadata)
    if picked is None:
        print(f"ℹ️  No mints recorded for {entry.name} yet")
        return
    token_id, image = picked
    print(f"🖼️  {entry.name} #{token_id}")
    print(f"   {image}")


def cmd_config(args):
    config_manager = get_config_manager()
    if args.config_command == 'list':
        active = config_manager.get_active_config_name()
        for name, display_name in config_manager.list_configs().items():
            marker = "*" if name == active else " "
            print(f"{marker} {name:30} {display_name}")
    elif args.config_command == 'show':
        settings = config_manager.get_monitor_settings()
        print(f"🔧 {config_manager.get_display_name()} ({config_manager.get_active_config_name()})")
        for field_name, value in vars(settings).items():
            if field_name in ('destinations', 'heartbeat_webhook_url') and value:
                value = "<configured>" if isinstance(value, str) else sorted(value)
            print(f"  {field_name:26} {value}")
    elif args.config_command == 'validate':
        result = config_manager.validate_config(args.config_name)
        for warning in result['warnings']:
            print(f"⚠️  {warning}")
        for error in result['errors']:
            print(f"❌ {error}")
        if result['valid']:
            print(f"✅ Configuration {result.get('config_name')} is valid")
        else:
            sys.exit(1)
    else:
        print("Usage: mintwatch config list|show|validate")
        sys.exit(1)


def main():
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    common.add_argument('--no-color', action='store_true', help='Disable colored output')
    common.add_argument('--config', type=str, help='Configuration profile to use (overrides ACTIVE_CONFIG)')

    parser = argparse.ArgumentParser(
        description="Mint Watcher - NFT mint and sale notifier",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[common],
        epilog="""
Examples:
  mintwatch start                          # watch every contract in the watchlist
  mintwatch start --no-discord             # log notifications instead of sending them
  mintwatch --config apechain status       # use a specific profile
  mintwatch watchlist track apes 0xBC4C...f13D 0.01 -d mint-alerts
  mintwatch watchlist add-channel apes sales-feed
  mintwatch test-notify apes               # send a simulated mint
  mintwatch flex apes                      # show a random minted token
  mintwatch reset apes                     # forget alerted token IDs for one contract
        """
    )
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    start_parser = subparsers.add_parser('start', parents=[common], help='Start watching')
    start_parser.add_argument('--no-discord', action='store_true', help='Log notifications instead of sending them')
    start_parser.add_argument('--ping-now', action='store_true', help='Send a heartbeat ping on start')

    subparsers.add_parser('status', parents=[common], help='Show watchlist and dedup state')

    reset_parser = subparsers.add_parser('reset', parents=[common], help='Clear dedup history')
    reset_parser.add_argument('name', nargs='?', help='Contract name (default: all)')
    reset_parser.add_argument('--force', action='store_true', help='Skip confirmation prompt')

    test_parser = subparsers.add_parser('test-notify', parents=[common], help='Send a simulated mint notification')
    test_parser.add_argument('name', help='Contract name')
    test_parser.add_argument('--token-id', type=int, default=1, help='Token ID used for the image lookup')

    flex_parser = subparsers.add_parser('flex', parents=[common], help='Show a random minted token and its image')
    flex_parser.add_argument('name', help='Contract name')

    config_parser = subparsers.add_parser('config', parents=[common], help='Configuration management')
    config_subparsers = config_parser.add_subparsers(dest='config_command', help='Config commands')
    config_subparsers.add_parser('list', help='List available profiles')
    config_subparsers.add_parser('show', help='Show the active profile')
    validate_parser = config_subparsers.add_parser('validate', help='Validate a profile')
    validate_parser.add_argument('config_name', nargs='?', help='Profile to validate (default: active)')

    watchlist_parser = subparsers.add_parser('watchlist', parents=[common], help='Manage watched contracts')
    watchlist_subparsers = watchlist_parser.add_subparsers(dest='watchlist_command', help='Watchlist commands')
    for cmd_name, cmd_info in WATCHLIST_COMMANDS.items():
        cmd_parser = watchlist_subparsers.add_parser(cmd_name, help=cmd_info['help'])
        for arg_names, arg_kwargs in cmd_info['args']:
            cmd_parser.add_argument(*arg_names, **arg_kwargs)

    args = parser.parse_args()

    setup_logging(verbose=args.verbose, no_color=args.no_color)
    if args.config:
        set_global_config_override(args.config)

    if args.command == 'start':
        cmd_start(args)
    elif args.command == 'status':
        cmd_status(args)
    elif args.command == 'reset':
        cmd_reset(args)
    elif args.command == 'test-notify':
        cmd_test_notify(args)
    elif args.command == 'flex':
        cmd_flex(args)
    elif args.command == 'config':
        cmd_config(args)
    elif args.command == 'watchlist':
        if not args.watchlist_command:
            watchlist_parser.print_help()
            sys.exit(1)
        WATCHLIST_COMMANDS[args.watchlist_command]['func'](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
