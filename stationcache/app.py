#!/usr/bin/env python3
"""
Station cache web API
Read-only endpoints over the base, user and combined station databases
"""

import logging
from contextlib import contextmanager

from flask import Flask, jsonify, request
from flask_cors import CORS

from .checkpoint import USER_CACHING, CheckpointManager
from .config import BuilderConfig
from .databases import BaseDatabase, CombinedCache, UserDatabase
from .exceptions import StationCacheError
from .ledger import LedgerStore
from .search import database_breakdown, find_station, search_stations

logger = logging.getLogger(__name__)


@contextmanager
def open_databases(config: BuilderConfig):
    """Per-request database handles; sqlite connections are not shared across threads"""
    ledger = LedgerStore(config.ledger_file)
    try:
        base = BaseDatabase(config.base_stations_file, config.base_markets_file)
        user = UserDatabase(config.user_stations_file, config.backup_dir, config.max_user_backups)
        combined = CombinedCache(config.combined_stations_file, base, user, ledger, config.backup_dir)
        yield ledger, base, user, combined
    finally:
        ledger.close()


def create_app(config: BuilderConfig = None) -> Flask:
    app = Flask(__name__)
    CORS(app)
    config = config or BuilderConfig.load()
    app.config['BUILDER_CONFIG'] = config

    @app.route('/api/health')
    def health_check():
        """Health check endpoint"""
        try:
            with open_databases(config) as (ledger, base, user, combined):
                count = len(combined.effective_stations())
            return jsonify({
                'status': 'healthy',
                'database': 'available' if count else 'empty',
                'stations_count': count
            })
        except StationCacheError as e:
            logger.error(f"Health check failed: {e}")
            return jsonify({
                'status': 'error',
                'message': str(e)
            }), 500

    @app.route('/api/stats')
    def get_database_stats():
        """Get database statistics"""
        try:
            with open_databases(config) as (ledger, base, user, combined):
                stats = database_breakdown(base, user, combined)
                stats.update(ledger.stats())
                stats['last_harvest'] = ledger.get_metadata('last_harvest')
            return jsonify(stats)
        except StationCacheError as e:
            logger.error(f"Stats error: {e}")
            return jsonify({'error': str(e)}), 500

    @app.route('/api/search/stations', methods=['GET'])
    def search():
        """Search for stations in the effective database"""
        query = request.args.get('q', '').strip()
        if not query:
            return jsonify({'error': 'Search query required'}), 400

        try:
            page = int(request.args.get('page', 1))
            limit = int(request.args.get('limit', 50))
        except ValueError:
            return jsonify({'error': 'page and limit must be integers'}), 400
        if limit == -1:  # -1 means unlimited
            limit = 0

        try:
            with open_databases(config) as (ledger, base, user, combined):
                stations = combined.effective_stations()
            return jsonify(search_stations(
                stations, query,
                country=request.args.get('country', ''),
                quality=request.args.get('quality', ''),
                page=page,
                per_page=limit,
            ))
        except StationCacheError as e:
            logger.error(f"Search error: {e}")
            return jsonify({'error': str(e)}), 500

    @app.route('/api/station/<station_id>')
    def get_station_details(station_id):
        """Get detailed information about a specific station"""
        try:
            with open_databases(config) as (ledger, base, user, combined):
                station = find_station(combined.effective_stations(), station_id)
                if station is None:
                    return jsonify({'error': 'Station not found'}), 404

                station = dict(station)
                trace = (station.get('lineupTracing') or [None])[0]
                if trace and trace.get('lineupId'):
                    station['lineup_markets'] = [
                        market.key for market in ledger.markets_for_lineup(trace['lineupId'])
                    ]
            return jsonify(station)
        except StationCacheError as e:
            logger.error(f"Station details error: {e}")
            return jsonify({'error': str(e)}), 500

    @app.route('/api/harvest/status')
    def harvest_status():
        """Interrupted-session information"""
        checkpoint = CheckpointManager(config.checkpoint_file(USER_CACHING), USER_CACHING)
        try:
            if checkpoint.load() is None:
                return jsonify({'interrupted': False})
            status = checkpoint.summary()
            status['interrupted'] = True
            status['running'] = checkpoint.owner_is_alive()
            return jsonify(status)
        except StationCacheError as e:
            logger.error(f"Harvest status error: {e}")
            return jsonify({'error': str(e)}), 500

    return app
