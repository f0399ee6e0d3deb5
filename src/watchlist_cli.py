"""
Watchlist CLI Commands for Mint Watcher

Manages the watched contracts through the mintwatch CLI:
- list watched contracts
- track / untrack a contract
- show, add and remove notification destinations

A running watcher picks up changes on SIGHUP.
"""

import logging
import sys
from decimal import Decimal, InvalidOperation

from config_manager import get_config_manager, NATIVE_TOKEN
from database_manager import MintWatchDB
from dedup_store import DedupStore
from watchlist_store import WatchEntry, WatchlistStore

logger = logging.getLogger(__name__)

RELOAD_HINT = "ℹ️  Send SIGHUP to a running watcher to apply this change"


def _open_store():
    config_manager = get_config_manager()
    db = MintWatchDB(config_manager.get_database_path())
    return config_manager, db, WatchlistStore(db)


def cmd_watchlist_list(args):
    """List all watched contracts"""
    try:
        config_manager, db, store = _open_store()
        entries = store.list_all()
        dedup = DedupStore(db)

        print(f"📋 Watchlist for: {config_manager.get_display_name()}")
        if not entries:
            print("  (empty)")
            return

        for entry in entries:
            minted, sold = dedup.counts(entry.name)
            print(f"  {entry.name:20} {entry.contract_address}")
            print(f"  {'':20} price {entry.mint_price} {entry.payment_token_symbol} "
                  f"({entry.payment_token}) | {minted} minted, {sold} sold | "
                  f"{len(entry.destination_ids)} destinations")
    except Exception as e:
        print(f"❌ Failed to list watchlist: {e}")
        sys.exit(1)


def cmd_watchlist_track(args):
    """Start tracking a contract"""
    try:
        price = Decimal(str(args.price))
        if price < 0:
            raise InvalidOperation
    except InvalidOperation:
        print(f"❌ Invalid mint price: {args.price}")
        sys.exit(1)

    try:
        config_manager, db, store = _open_store()
        settings = config_manager.get_monitor_settings()

        existing = store.get(args.name)
        destinations = list(existing.destination_ids) if existing else []
        destinations.extend(args.destination or [])

        token = args.token or NATIVE_TOKEN
        symbol = args.symbol or (settings.reference_symbol if token == NATIVE_TOKEN else "TOKEN")

        entry = WatchEntry(
            name=args.name,
            contract_address=args.address,
            mint_price=price,
            payment_token=token,
            payment_token_symbol=symbol,
            destination_ids=destinations,
        )
        store.save(entry)

        verb = "Updated" if existing else "Tracking"
        print(f"✅ {verb} {entry.name} at {entry.contract_address} "
              f"(mint price {entry.mint_price} {entry.payment_token_symbol})")
        print(RELOAD_HINT)
    except ValueError as e:
        print(f"❌ Invalid watch entry: {e}")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Failed to track contract: {e}")
        sys.exit(1)


def cmd_watchlist_untrack(args):
    """Stop tracking a contract"""
    try:
        _, db, store = _open_store()
        if not store.delete(args.name):
            print(f"⚠️  No watched contract named {args.name}")
            sys.exit(1)
        if args.purge:
            DedupStore(db).forget(args.name)
            print(f"🗑️  Removed dedup history for {args.name}")
        print(f"✅ Stopped tracking {args.name}")
        print(RELOAD_HINT)
    except Exception as e:
        print(f"❌ Failed to untrack contract: {e}")
        sys.exit(1)


def cmd_watchlist_channels(args):
    """Show destinations for a contract"""
    try:
        config_manager, _, store = _open_store()
        entry = store.get(args.name)
        if entry is None:
            print(f"⚠️  No watched contract named {args.name}")
            sys.exit(1)

        configured = config_manager.get_monitor_settings().destinations
        print(f"📣 Destinations for {entry.name}:")
        if not entry.destination_ids:
            print("  (none)")
        for destination_id in entry.destination_ids:
            marker = "✅" if configured.get(destination_id) else "❓ no webhook configured"
            print(f"  {destination_id:30} {marker}")
    except Exception as e:
        print(f"❌ Failed to show destinations: {e}")
        sys.exit(1)


def cmd_watchlist_add_channel(args):
    """Add a destination to a contract"""
    try:
        _, _, store = _open_store()
        entry = store.add_destination(args.name, args.destination_id)
        if entry is None:
            print(f"⚠️  No watched contract named {args.name}")
            sys.exit(1)
        print(f"✅ {entry.name} now notifies: {', '.join(entry.destination_ids)}")
        print(RELOAD_HINT)
    except Exception as e:
        print(f"❌ Failed to add destination: {e}")
        sys.exit(1)


def cmd_watchlist_untrack_channel(args):
    """Remove a destination from a contract"""
    try:
        _, _, store = _open_store()
        entry = store.remove_destination(args.name, args.destination_id)
        if entry is None:
            print(f"⚠️  No watched contract named {args.name}")
            sys.exit(1)
        remaining = ', '.join(entry.destination_ids) or '(none)'
        print(f"✅ Removed {args.destination_id} from {entry.name}; remaining: {remaining}")
        print(RELOAD_HINT)
    except Exception as e:
        print(f"❌ Failed to remove destination: {e}")
        sys.exit(1)


# watchlist command registry
WATCHLIST_COMMANDS = {
    'list': {
        'func': cmd_watchlist_list,
        'help': 'List watched contracts',
        'args': []
    },
    'track': {
        'func': cmd_watchlist_track,
        'help': 'Start tracking a contract (or update an existing one)',
        'args': [
            (['name'], {'help': 'Unique name for this contract'}),
            (['address'], {'help': 'Contract address'}),
            (['price'], {'help': 'Mint price per token, in payment token units'}),
            (['--token'], {'help': 'Payment token address (default: native currency)'}),
            (['--symbol'], {'help': 'Payment token display symbol'}),
            (['--destination', '-d'], {'action': 'append', 'help': 'Destination ID (repeatable)'}),
        ]
    },
    'untrack': {
        'func': cmd_watchlist_untrack,
        'help': 'Stop tracking a contract',
        'args': [
            (['name'], {'help': 'Contract name'}),
            (['--purge'], {'action': 'store_true', 'help': 'Also delete its dedup history'}),
        ]
    },
    'channels': {
        'func': cmd_watchlist_channels,
        'help': 'Show destinations for a contract',
        'args': [
            (['name'], {'help': 'Contract name'}),
        ]
    },
    'add-channel': {
        'func': cmd_watchlist_add_channel,
        'help': 'Add a destination to a contract',
        'args': [
            (['name'], {'help': 'Contract name'}),
            (['destination_id'], {'help': 'Destination ID from the config profile'}),
        ]
    },
    'untrack-channel': {
        'func': cmd_watchlist_untrack_channel,
        'help': 'Remove a destination from a contract',
        'args': [
            (['name'], {'help': 'Contract name'}),
            (['destination_id'], {'help': 'Destination ID'}),
        ]
    },
}
