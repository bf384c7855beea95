"""
The three station collections.

* UserDatabase: the only collection the builder mutates, with rolling backups
* BaseDatabase: read-only reference data plus its market list and lineage index
* CombinedCache: disposable merge(base, user), rebuilt lazily when stale
"""

import csv
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Set

from .exceptions import ResourceError
from .ledger import LedgerStore
from .merge import merge
from .models import Market
from .stations import Station, load_clean_station_file, write_json_atomic

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S_%f'


def _mtime(path: Path) -> Optional[float]:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None


def _has_data(path: Path) -> bool:
    return path.exists() and path.stat().st_size > 0


# ============================================
# USER DATABASE
# ============================================

class UserDatabase:
    """User-harvested stations"""

    REMEDIATION = "Rebuild the user database with 'build --force' or restore a clean backup"

    def __init__(self, path: Path, backup_dir: Path, max_backups: int = 5):
        self.path = Path(path)
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups

    def exists(self) -> bool:
        return _has_data(self.path)

    def load(self) -> List[Station]:
        return load_clean_station_file(self.path, self.REMEDIATION)

    def count(self) -> int:
        return len(self.load())

    def backups(self) -> List[Path]:
        """Backups, newest first"""
        if not self.backup_dir.exists():
            return []
        pattern = f'{self.path.name}.backup.*'
        return sorted(self.backup_dir.glob(pattern), key=lambda p: p.name, reverse=True)

    def backup(self) -> Optional[Path]:
        """Copy the current file to a timestamped backup and prune old ones"""
        if not self.path.exists():
            return None
        timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup_path = self.backup_dir / f'{self.path.name}.backup.{timestamp}'
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(str(self.path), str(backup_path))
        except OSError as e:
            raise ResourceError(f"Cannot back up {self.path}: {e}") from e
        logger.info(f"User database backed up to {backup_path}")
        self.prune_backups()
        return backup_path

    def prune_backups(self) -> int:
        removed = 0
        for old in self.backups()[self.max_backups:]:
            old.unlink()
            removed += 1
        if removed:
            logger.debug(f"Pruned {removed} old user database backups")
        return removed

    def restore(self, backup_path: Path):
        shutil.copy2(str(backup_path), str(self.path))
        logger.warning(f"User database restored from {backup_path}")

    def write(self, stations: List[Station]):
        """Back up the current file, write the new one, restore the backup on failure"""
        backup_path = self.backup()
        try:
            write_json_atomic(self.path, stations)
        except ResourceError:
            if backup_path is not None:
                self.restore(backup_path)
            raise


# ============================================
# BASE DATABASE
# ============================================

class BaseDatabase:
    """Read-only reference stations shipped with the tool"""

    REMEDIATION = "Replace the base database with a clean-format release"

    def __init__(self, stations_path: Path, markets_path: Path):
        self.stations_path = Path(stations_path)
        self.markets_path = Path(markets_path)
        self._stations: Optional[List[Station]] = None
        self._lineup_ids: Optional[Set[str]] = None
        self._market_keys: Optional[Set[str]] = None

    def exists(self) -> bool:
        return _has_data(self.stations_path)

    def load(self) -> List[Station]:
        if self._stations is None:
            self._stations = load_clean_station_file(self.stations_path, self.REMEDIATION)
        return self._stations

    def lineup_ids(self) -> Set[str]:
        """Every lineupId referenced by a base station's lineage"""
        if self._lineup_ids is None:
            lineup_ids = set()
            for station in self.load():
                for trace in station.get('lineupTracing') or []:
                    lineup_id = trace.get('lineupId')
                    if lineup_id:
                        lineup_ids.add(str(lineup_id))
            self._lineup_ids = lineup_ids
            logger.debug(f"Base lineage index: {len(lineup_ids)} lineups")
        return self._lineup_ids

    def contains_lineup(self, lineup_id: str) -> bool:
        return lineup_id in self.lineup_ids()

    def market_keys(self) -> Set[str]:
        if self._market_keys is None:
            self._market_keys = {m.key for m in read_markets_csv(self.markets_path)} \
                if self.markets_path.exists() else set()
        return self._market_keys

    def contains_market(self, market: Market) -> bool:
        return market.key in self.market_keys()


def read_markets_csv(path: Path) -> List[Market]:
    """Read 'country,zip' rows, skipping a header and blank or duplicate lines"""
    markets = []
    seen = set()
    with open(path, 'r', newline='') as f:
        reader = csv.reader(f)
        for row in reader:
            if len(row) < 2:
                continue
            country, postal_code = row[0].strip(), row[1].strip()
            if not country or not postal_code or country.lower() == 'country':
                continue
            market = Market(country=country, postal_code=postal_code)
            if market.key in seen:
                continue
            seen.add(market.key)
            markets.append(market)
    return markets


# ============================================
# COMBINED CACHE
# ============================================

class CombinedCache:
    """merge(base, user), stored on disk and rebuilt when either source changes"""

    BASE_MTIME_KEY = 'combined_base_mtime'
    USER_MTIME_KEY = 'combined_user_mtime'

    def __init__(self, path: Path, base: BaseDatabase, user: UserDatabase,
                 ledger: LedgerStore, backup_dir: Optional[Path] = None):
        self.path = Path(path)
        self.base = base
        self.user = user
        self.ledger = ledger
        self.backup_dir = Path(backup_dir) if backup_dir else self.path.parent

    def is_fresh(self) -> bool:
        if not _has_data(self.path):
            return False
        base_mtime = _mtime(self.base.stations_path)
        user_mtime = _mtime(self.user.path)

        saved_base = self.ledger.get_metadata(self.BASE_MTIME_KEY)
        saved_user = self.ledger.get_metadata(self.USER_MTIME_KEY)
        if saved_base == str(base_mtime) and saved_user == str(user_mtime):
            return True

        combined_mtime = _mtime(self.path)
        return all(m is None or combined_mtime > m for m in (base_mtime, user_mtime))

    def invalidate(self):
        if self.path.exists():
            self.path.unlink()
            logger.info("Combined cache invalidated")
        self.ledger.update_metadata(self.BASE_MTIME_KEY, '')
        self.ledger.update_metadata(self.USER_MTIME_KEY, '')
        self.ledger.commit()

    def rebuild(self) -> List[Station]:
        base_stations = self.base.load() if self.base.exists() else []
        user_stations = self.user.load() if self.user.exists() else []
        combined = merge(base_stations, user_stations)
        write_json_atomic(self.path, combined)

        self.ledger.update_metadata(self.BASE_MTIME_KEY, str(_mtime(self.base.stations_path)))
        self.ledger.update_metadata(self.USER_MTIME_KEY, str(_mtime(self.user.path)))
        self.ledger.commit()
        logger.info(f"Combined cache rebuilt: {len(base_stations)} base + {len(user_stations)} user "
                    f"= {len(combined)} stations")
        return combined

    def force_rebuild(self) -> List[Station]:
        """Back up the existing combined file, then rebuild it"""
        if self.path.exists():
            timestamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            backup_path = self.backup_dir / f'{self.path.name}.backup.{timestamp}'
            shutil.copy2(str(self.path), str(backup_path))
            logger.info(f"Combined cache backed up to {backup_path}")
        return self.rebuild()

    def effective_stations(self) -> List[Station]:
        """Stations a search should see: base only, user only, or the combined view"""
        has_base = self.base.exists()
        has_user = self.user.exists()
        if has_base and has_user:
            if self.is_fresh():
                return load_clean_station_file(self.path, "Run 'rebuild-combined'")
            return self.rebuild()
        if has_base:
            return self.base.load()
        if has_user:
            return self.user.load()
        return []
