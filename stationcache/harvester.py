"""
Market/lineup harvesting loop.

For each market: one lineup fetch, then per lineup the skip tiers in fixed
order (session, user ledger, base lineage). Only a lineup that survives all
three costs a station fetch. Tagged stations are appended to a JSONL scratch
file as they arrive instead of being held in memory.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Set

from .api_client import ChannelsApiClient
from .cancellation import CancellationToken
from .checkpoint import CheckpointManager
from .databases import BaseDatabase
from .exceptions import ApiError, ResourceError
from .ledger import MARKET_FAILED, LedgerStore
from .models import (HarvestStats, Lineup, Market, Phase, ProgressCallback,
                     ProgressEvent, no_progress)
from .stations import append_jsonl, tag_harvested_station, truncate_torn_tail

logger = logging.getLogger(__name__)


class HarvestSession:
    """Lineups fetched during the current run, plus its counters"""

    def __init__(self, lineups: Optional[Iterable[str]] = None, stats: Optional[HarvestStats] = None):
        self.lineups: Set[str] = set(lineups or [])
        self.stats = stats or HarvestStats()

    def __contains__(self, lineup_id: str) -> bool:
        return lineup_id in self.lineups

    def __len__(self) -> int:
        return len(self.lineups)

    def add(self, lineup_id: str):
        self.lineups.add(lineup_id)


class Harvester:
    """Harvests stations for a list of markets into a scratch file"""

    def __init__(self, client: ChannelsApiClient, ledger: LedgerStore, base: BaseDatabase,
                 checkpoint: CheckpointManager, session: HarvestSession, scratch_path: Path,
                 token: Optional[CancellationToken] = None, force_refresh: bool = False,
                 progress: ProgressCallback = no_progress):
        self.client = client
        self.ledger = ledger
        self.base = base
        self.checkpoint = checkpoint
        self.session = session
        self.scratch_path = Path(scratch_path)
        self.token = token or CancellationToken()
        self.force_refresh = force_refresh
        self.progress = progress

    @property
    def stats(self) -> HarvestStats:
        return self.session.stats

    def run(self, markets: List[Market]) -> Path:
        """
        Process markets in order, appending to the scratch file.

        Raises:
            HarvestCancelled: the token fired; completed markets are already
                in the checkpoint
            AuthenticationError: credentials failed; the run can be resumed
            ResourceError: the scratch file could not be written
        """
        total = len(markets)
        truncate_torn_tail(self.scratch_path)
        try:
            handle = open(self.scratch_path, 'a')
        except OSError as e:
            raise ResourceError(f"Cannot open scratch file {self.scratch_path}: {e}") from e

        with handle:
            for index, market in enumerate(markets, 1):
                self.token.raise_if_cancelled()
                self.progress(ProgressEvent(Phase.MARKET_PROCESSING.value, market.key, index, total))

                success = self.process_market(market, handle)

                self.ledger.commit()
                self.checkpoint.record_market_done(market.key, success)
                self.checkpoint.update_session_lineups(self.session.lineups, self.stats)

        logger.info(f"Market processing complete: {self.stats.markets_succeeded} succeeded, "
                    f"{self.stats.markets_failed} failed")
        return self.scratch_path

    def process_market(self, market: Market, handle) -> bool:
        """Harvest one market; returns False if it was recorded failed"""
        try:
            lineups = self.client.list_lineups(market.country, market.postal_code)
        except ApiError as e:
            logger.warning(f"API error for {market.country}/{market.postal_code}: {e}")
            self._market_failed(market)
            return False

        if not lineups:
            logger.warning(f"No lineups found for {market.country}/{market.postal_code} "
                           f"(check if postcode is valid)")
            self._market_failed(market)
            return False

        before = self.stats.stations_harvested
        for lineup in lineups:
            self.process_lineup(market, lineup, handle)

        self.ledger.record_market_processed(market, len(lineups))
        self.stats.markets_succeeded += 1
        logger.info(f"Market {market.country}/{market.postal_code}: {len(lineups)} lineups, "
                    f"{self.stats.stations_harvested - before} stations")
        return True

    def _market_failed(self, market: Market):
        self.ledger.record_market_processed(market, 0, status=MARKET_FAILED)
        self.stats.markets_failed += 1

    def process_lineup(self, market: Market, lineup: Lineup, handle):
        lineup_id = lineup.lineup_id

        if lineup_id in self.session:
            logger.debug(f"Session skip: {lineup_id} (already processed in this session)")
            self.stats.lineups_skipped_session += 1
            self.ledger.link_lineup_market(lineup_id, market)
            return

        if not self.force_refresh and self.ledger.is_lineup_cached(lineup_id):
            logger.debug(f"Database skip: {lineup_id} (in user database)")
            self.stats.lineups_skipped_user += 1
            self.ledger.link_lineup_market(lineup_id, market)
            return

        if not self.force_refresh and self.base.contains_lineup(lineup_id):
            logger.debug(f"Base skip: {lineup_id} (in base database)")
            self.stats.lineups_skipped_base += 1
            self.ledger.link_lineup_market(lineup_id, market)
            return

        self.token.raise_if_cancelled()
        try:
            raw_stations = self.client.list_stations(lineup_id)
        except ApiError as e:
            logger.warning(f"Station fetch failed for lineup {lineup_id}: {e}")
            self.stats.lineups_failed += 1
            self.ledger.record_lineup_processed(lineup, market, 0)
            self.session.add(lineup_id)
            return

        if not raw_stations:
            logger.debug(f"Lineup {lineup_id} returned no stations")
            self.stats.lineups_empty += 1
            self.ledger.record_lineup_processed(lineup, market, 0)
            self.session.add(lineup_id)
            return

        stations = [tag_harvested_station(raw, market, lineup) for raw in raw_stations]
        try:
            append_jsonl(handle, stations)
        except OSError as e:
            raise ResourceError(f"Cannot write scratch file {self.scratch_path}: {e}") from e

        self.ledger.record_lineup_processed(lineup, market, len(stations))
        self.session.add(lineup_id)
        self.stats.lineups_fetched += 1
        self.stats.stations_harvested += len(stations)
        logger.debug(f"Processed: {lineup_id} ({len(stations)} stations)")
