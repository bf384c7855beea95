"""
Market / lineup completion ledger.

A single SQLite file records which markets and lineups the user database
already covers. Entries written during a harvest go into the pending_*
tables and are promoted only after the finalizer has merged that harvest's
stations into the user database, so an abandoned run never leaves a lineup
marked cached without its stations.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from .exceptions import ResourceError
from .models import Lineup, Market

logger = logging.getLogger(__name__)

# ============================================
# SCHEMA
# ============================================

CREATE_SCHEMA_SQL = """
-- Markets recorded complete (or failed) by a finalized harvest
CREATE TABLE IF NOT EXISTS markets (
    country TEXT NOT NULL,
    postal_code TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    lineups_found INTEGER DEFAULT 0,
    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (country, postal_code)
);

-- Lineups whose stations are in the user database
CREATE TABLE IF NOT EXISTS lineups (
    lineup_id TEXT PRIMARY KEY,
    name TEXT,
    location TEXT,
    type TEXT,
    stations_found INTEGER DEFAULT 0,
    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Lineup-Market relationships
CREATE TABLE IF NOT EXISTS lineup_markets (
    lineup_id TEXT NOT NULL,
    country TEXT NOT NULL,
    postal_code TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (lineup_id, country, postal_code)
);

-- Entries written by the harvest in progress
CREATE TABLE IF NOT EXISTS pending_markets (
    country TEXT NOT NULL,
    postal_code TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    lineups_found INTEGER DEFAULT 0,
    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (country, postal_code)
);

CREATE TABLE IF NOT EXISTS pending_lineups (
    lineup_id TEXT PRIMARY KEY,
    name TEXT,
    location TEXT,
    type TEXT,
    stations_found INTEGER DEFAULT 0,
    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS pending_lineup_markets (
    lineup_id TEXT NOT NULL,
    country TEXT NOT NULL,
    postal_code TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (lineup_id, country, postal_code)
);

-- Metadata table
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Processing log
CREATE TABLE IF NOT EXISTS processing_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    process_type TEXT NOT NULL,
    target_id TEXT,
    status TEXT,
    message TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_lineup_markets_market ON lineup_markets(country, postal_code);
CREATE INDEX IF NOT EXISTS idx_processing_log_type ON processing_log(process_type);
"""

MARKET_COLUMNS = "country, postal_code, status, lineups_found, processed_at"
LINEUP_COLUMNS = "lineup_id, name, location, type, stations_found, processed_at"
LINEUP_MARKET_COLUMNS = "lineup_id, country, postal_code, created_at"

MARKET_COMPLETED = 'completed'
MARKET_FAILED = 'failed'


class LedgerStore:
    """Ledger operations - single threaded"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
            self.conn.execute("PRAGMA busy_timeout = 30000")
            self.conn.execute("PRAGMA journal_mode = WAL")
            self.conn.execute("PRAGMA synchronous = NORMAL")
            self.create_schema()
        except (OSError, sqlite3.Error) as e:
            raise ResourceError(f"Cannot open ledger {self.db_path}: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def create_schema(self):
        """Create ledger schema"""
        self.conn.executescript(CREATE_SCHEMA_SQL)
        self.conn.commit()

    # Markets

    def is_market_cached(self, market: Market) -> bool:
        """True if a finalized harvest completed this market"""
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT 1 FROM markets
            WHERE country = ? AND postal_code = ? AND status = ?
        """, (market.country, market.postal_code, MARKET_COMPLETED))
        return cursor.fetchone() is not None

    def cached_market_keys(self) -> Set[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT country, postal_code FROM markets WHERE status = ?", (MARKET_COMPLETED,))
        return {f"{row[0]},{row[1]}" for row in cursor.fetchall()}

    def record_market_processed(self, market: Market, lineups_found: int,
                                status: str = MARKET_COMPLETED, pending: bool = True):
        """Insert or replace a market entry"""
        table = 'pending_markets' if pending else 'markets'
        self.conn.execute(f"""
            INSERT OR REPLACE INTO {table} ({MARKET_COLUMNS})
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
        """, (market.country, market.postal_code, status, lineups_found))
        self.log('market', market.key, status, f"{lineups_found} lineups found")

    # Lineups

    def is_lineup_cached(self, lineup_id: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("SELECT 1 FROM lineups WHERE lineup_id = ?", (lineup_id,))
        return cursor.fetchone() is not None

    def record_lineup_processed(self, lineup: Lineup, market: Market, stations_found: int):
        """Record a fetched lineup and map it to the market it came from"""
        self.conn.execute(f"""
            INSERT OR REPLACE INTO pending_lineups ({LINEUP_COLUMNS})
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
        """, (lineup.lineup_id, lineup.name, lineup.location, lineup.type, stations_found))
        self.link_lineup_market(lineup.lineup_id, market)
        self.log('lineup', lineup.lineup_id, 'processed',
                 f"from {market.country}/{market.postal_code} ({stations_found} stations)")

    def link_lineup_market(self, lineup_id: str, market: Market):
        """Map lineup to market"""
        self.conn.execute(f"""
            INSERT OR IGNORE INTO pending_lineup_markets ({LINEUP_MARKET_COLUMNS})
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        """, (lineup_id, market.country, market.postal_code))

    def markets_for_lineup(self, lineup_id: str) -> List[Market]:
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT country, postal_code FROM lineup_markets
            WHERE lineup_id = ? ORDER BY country, postal_code
        """, (lineup_id,))
        return [Market(country=row[0], postal_code=row[1]) for row in cursor.fetchall()]

    def zero_station_lineups(self) -> List[str]:
        """Lineups recorded with no stations; these are never re-fetched without --force"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT lineup_id FROM lineups WHERE stations_found = 0 ORDER BY lineup_id")
        return [row[0] for row in cursor.fetchall()]

    # Pending entries

    def pending_counts(self) -> Tuple[int, int]:
        cursor = self.conn.cursor()
        markets = cursor.execute("SELECT COUNT(*) FROM pending_markets").fetchone()[0]
        lineups = cursor.execute("SELECT COUNT(*) FROM pending_lineups").fetchone()[0]
        return markets, lineups

    def promote_pending(self) -> Tuple[int, int]:
        """Move this harvest's entries into the permanent tables"""
        markets, lineups = self.pending_counts()
        with self.conn:
            self.conn.execute(f"INSERT OR REPLACE INTO markets ({MARKET_COLUMNS}) "
                              f"SELECT {MARKET_COLUMNS} FROM pending_markets")
            self.conn.execute(f"INSERT OR REPLACE INTO lineups ({LINEUP_COLUMNS}) "
                              f"SELECT {LINEUP_COLUMNS} FROM pending_lineups")
            self.conn.execute(f"INSERT OR IGNORE INTO lineup_markets ({LINEUP_MARKET_COLUMNS}) "
                              f"SELECT {LINEUP_MARKET_COLUMNS} FROM pending_lineup_markets")
            self._clear_pending()
        logger.info(f"Ledger updated: {markets} markets, {lineups} lineups committed")
        return markets, lineups

    def discard_pending(self) -> Tuple[int, int]:
        """Drop entries from an abandoned harvest"""
        markets, lineups = self.pending_counts()
        with self.conn:
            self._clear_pending()
        if markets or lineups:
            logger.info(f"Discarded {markets} pending markets and {lineups} pending lineups")
        return markets, lineups

    def _clear_pending(self):
        self.conn.execute("DELETE FROM pending_markets")
        self.conn.execute("DELETE FROM pending_lineups")
        self.conn.execute("DELETE FROM pending_lineup_markets")

    # Metadata and log

    def get_metadata(self, key: str) -> Optional[str]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM metadata WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row[0] if row else None

    def update_metadata(self, key: str, value: str):
        """Update metadata"""
        self.conn.execute("""
            INSERT OR REPLACE INTO metadata (key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
        """, (key, value))

    def log(self, process_type: str, target_id: str, status: str, message: str = ''):
        self.conn.execute("""
            INSERT INTO processing_log (process_type, target_id, status, message)
            VALUES (?, ?, ?, ?)
        """, (process_type, target_id, status, message))

    def stats(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        completed = cursor.execute("SELECT COUNT(*) FROM markets WHERE status = ?",
                                   (MARKET_COMPLETED,)).fetchone()[0]
        failed = cursor.execute("SELECT COUNT(*) FROM markets WHERE status = ?",
                                (MARKET_FAILED,)).fetchone()[0]
        lineups = cursor.execute("SELECT COUNT(*) FROM lineups").fetchone()[0]
        pending_markets, pending_lineups = self.pending_counts()
        return {
            'markets_completed': completed,
            'markets_failed': failed,
            'lineups_cached': lineups,
            'pending_markets': pending_markets,
            'pending_lineups': pending_lineups,
        }

    def commit(self):
        """Commit transaction"""
        try:
            self.conn.commit()
        except sqlite3.Error as e:
            raise ResourceError(f"Cannot write ledger {self.db_path}: {e}") from e

    def close(self):
        """Close connection"""
        self.conn.close()
