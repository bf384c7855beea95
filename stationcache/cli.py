#!/usr/bin/env python3
"""
Station cache command line

Usage:
    stationcache build [--force] [--skip-enhancement] [--resume | --restart]
    stationcache status
    stationcache search QUERY [--country USA] [--quality HDTV] [--limit 20]
    stationcache rebuild-combined
    stationcache serve [--host 0.0.0.0] [--port 5000]
"""

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict

from .builder import UserDatabaseBuilder
from .cancellation import CancellationToken
from .checkpoint import USER_CACHING, CheckpointManager
from .config import BuilderConfig
from .databases import BaseDatabase, CombinedCache, UserDatabase
from .exceptions import StationCacheError
from .ledger import LedgerStore
from .models import ProgressEvent, RecoveryChoice
from .search import database_breakdown, search_stations, video_type
from .settings_manager import SettingsManager

logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


class LogProgress:
    """Progress callback that logs every `every` items and the last one"""

    def __init__(self, every: int = 100):
        self.every = every

    def __call__(self, event: ProgressEvent):
        if event.index % self.every == 0 or event.index == event.total:
            logger.info(f"Progress [{event.phase}]: {event.index}/{event.total} "
                        f"({event.percent}%) {event.item}")


def prompt_recovery(summary: Dict[str, Any]) -> RecoveryChoice:
    """Ask what to do with an interrupted session"""
    print("\nAn interrupted user caching session was found:")
    print(f"  Started:      {summary['start_time']}")
    print(f"  Last update:  {summary['last_update']}")
    print(f"  Markets:      {summary['markets_processed']}/{summary['markets_total']}")
    print(f"  Resume phase: {summary['resume_phase']}")
    print("\n  1) Resume where it left off")
    print("  2) Start over (previous progress is backed up)")
    print("  3) Cancel")
    choices = {'1': RecoveryChoice.RESUME, '2': RecoveryChoice.RESTART, '3': RecoveryChoice.CANCEL}
    while True:
        answer = input("Choice [1]: ").strip() or '1'
        if answer in choices:
            return choices[answer]
        print("Please enter 1, 2 or 3")


def install_signal_handlers(token: CancellationToken):
    """First signal requests a graceful stop, a second one force-quits"""

    def _signal_handler(signum, frame):
        if not token.cancelled:
            logger.info("\n\nReceived interrupt signal. Saving progress and stopping...")
            token.cancel(signal.Signals(signum).name)
            return
        logger.info("Force quitting...")
        os._exit(1)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def load_config(args) -> BuilderConfig:
    config = BuilderConfig.load(SettingsManager(args.settings) if args.settings else None)
    if args.cache_dir:
        config.cache_dir = Path(args.cache_dir)
    if getattr(args, 'markets', None):
        config.markets_file = Path(args.markets)
    return config


# ============================================
# COMMANDS
# ============================================

def cmd_build(args) -> int:
    config = load_config(args)
    token = CancellationToken()
    install_signal_handlers(token)

    if args.resume:
        chooser = lambda summary: RecoveryChoice.RESUME
    elif args.restart:
        chooser = lambda summary: RecoveryChoice.RESTART
    elif sys.stdin.isatty():
        chooser = prompt_recovery
    else:
        chooser = lambda summary: RecoveryChoice.RESUME

    builder = UserDatabaseBuilder(config, token=token, progress=LogProgress())
    try:
        summary = builder.run(force_refresh=args.force, chooser=chooser,
                              skip_enhancement=args.skip_enhancement)
    finally:
        builder.close()

    if summary.outcome == 'interrupted':
        return EXIT_INTERRUPTED
    return 0


def cmd_status(args) -> int:
    config = load_config(args)
    config.ensure_dirs()
    with LedgerStore(config.ledger_file) as ledger:
        base = BaseDatabase(config.base_stations_file, config.base_markets_file)
        user = UserDatabase(config.user_stations_file, config.backup_dir, config.max_user_backups)
        combined = CombinedCache(config.combined_stations_file, base, user, ledger, config.backup_dir)
        breakdown = database_breakdown(base, user, combined)
        ledger_stats = ledger.stats()

    logger.info("=" * 60)
    logger.info("Station Cache Status")
    logger.info(f"Base stations: {breakdown['base_stations']}")
    logger.info(f"User stations: {breakdown['user_stations']}")
    logger.info(f"Effective total: {breakdown['total_stations']}")
    logger.info(f"Countries: {', '.join(breakdown['countries']) or 'none'}")
    logger.info(f"Markets cached: {ledger_stats['markets_completed']} "
                f"(failed: {ledger_stats['markets_failed']})")
    logger.info(f"Lineups cached: {ledger_stats['lineups_cached']}")

    checkpoint = CheckpointManager(config.checkpoint_file(USER_CACHING), USER_CACHING)
    if checkpoint.load() is not None:
        info = checkpoint.summary()
        state = 'running' if checkpoint.owner_is_alive() else 'interrupted'
        logger.info(f"Harvest {state}: {info['markets_processed']}/{info['markets_total']} markets, "
                    f"resume phase {info['resume_phase']}")
    logger.info("=" * 60)
    return 0


def cmd_search(args) -> int:
    config = load_config(args)
    config.ensure_dirs()
    with LedgerStore(config.ledger_file) as ledger:
        base = BaseDatabase(config.base_stations_file, config.base_markets_file)
        user = UserDatabase(config.user_stations_file, config.backup_dir, config.max_user_backups)
        stations = CombinedCache(config.combined_stations_file, base, user, ledger,
                                 config.backup_dir).effective_stations()

    result = search_stations(stations, args.query, country=args.country, quality=args.quality,
                             page=args.page, per_page=args.limit)
    for station in result['results']:
        countries = ','.join(station.get('availableIn') or []) or 'UNK'
        print(f"{station.get('name') or ''}\t{station.get('callSign') or ''}\t"
              f"{video_type(station) or 'Unknown'}\t{station.get('stationId')}\t{countries}")
    print(f"{result['total']} matches (page {result['page']}/{result['total_pages']})")
    return 0


def cmd_rebuild_combined(args) -> int:
    config = load_config(args)
    config.ensure_dirs()
    with LedgerStore(config.ledger_file) as ledger:
        base = BaseDatabase(config.base_stations_file, config.base_markets_file)
        user = UserDatabase(config.user_stations_file, config.backup_dir, config.max_user_backups)
        stations = CombinedCache(config.combined_stations_file, base, user, ledger,
                                 config.backup_dir).force_rebuild()
    logger.info(f"Combined database rebuilt with {len(stations)} stations")
    return 0


def cmd_serve(args) -> int:
    from .app import create_app

    app = create_app(load_config(args))
    logger.info(f"Serving station API on {args.host}:{args.port}")
    app.run(host=args.host, port=args.port)
    return 0


# ============================================
# MAIN ENTRY POINT
# ============================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='stationcache',
        description='Incremental station database builder',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Harvest every market in the markets file not already covered
  stationcache build

  # Re-harvest everything, ignoring the market and lineup ledgers
  stationcache build --force

  # Continue an interrupted harvest without prompting
  stationcache build --resume
        """
    )
    parser.add_argument('--settings', help='Path to settings JSON (default: $SETTINGS_PATH or data/settings.json)')
    parser.add_argument('--cache-dir', help='Override cache.dir')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', required=True)

    build = subparsers.add_parser('build', help='Harvest new markets into the user database')
    build.add_argument('--markets', help='Override markets.file')
    build.add_argument('--force', action='store_true', help='Re-harvest cached markets and lineups')
    build.add_argument('--skip-enhancement', action='store_true', help='Skip the station enhancement phase')
    recovery = build.add_mutually_exclusive_group()
    recovery.add_argument('--resume', action='store_true', help='Resume an interrupted session without asking')
    recovery.add_argument('--restart', action='store_true', help='Discard an interrupted session without asking')
    build.set_defaults(func=cmd_build)

    status = subparsers.add_parser('status', help='Show database and harvest status')
    status.set_defaults(func=cmd_status)

    search = subparsers.add_parser('search', help='Search stations by name or call sign')
    search.add_argument('query')
    search.add_argument('--country', help='Only stations available in this country')
    search.add_argument('--quality', help='Only stations with this video type (HDTV, SDTV, UHDTV)')
    search.add_argument('--page', type=int, default=1)
    search.add_argument('--limit', type=int, default=20, help='Results per page (0 for all)')
    search.set_defaults(func=cmd_search)

    rebuild = subparsers.add_parser('rebuild-combined', help='Force a rebuild of the combined database')
    rebuild.set_defaults(func=cmd_rebuild_combined)

    serve = subparsers.add_parser('serve', help='Run the read-only HTTP API')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=5000)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        return args.func(args)
    except StationCacheError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
