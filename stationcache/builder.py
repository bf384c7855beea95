"""
User database builder: drives analysis, harvest, deduplication, enhancement
and finalization, and owns the interrupted-session protocol.
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .analyzer import MarketAnalyzer
from .api_client import ChannelsApiClient
from .auth import auth_for_token
from .cancellation import CancellationToken
from .checkpoint import PHASE_COMPLETED, USER_CACHING, CheckpointManager
from .config import BuilderConfig
from .databases import BaseDatabase, CombinedCache, UserDatabase, read_markets_csv
from .enhancer import StationEnhancer
from .exceptions import (AuthenticationError, ConcurrentRunError, ConfigurationError,
                         HarvestCancelled, StationCacheError)
from .finalizer import CacheFinalizer
from .harvester import Harvester, HarvestSession
from .ledger import LedgerStore
from .merge import deduplicate_scratch
from .models import (BuildSummary, FinalizeResult, Market, NoWorkNeeded, Phase,
                     PhaseStatus, ProgressCallback, RecoveryChoice, ScratchFiles, WorkPlan,
                     no_progress)

logger = logging.getLogger(__name__)

RecoveryChooser = Callable[[Dict[str, Any]], RecoveryChoice]


def always_resume(summary: Dict[str, Any]) -> RecoveryChoice:
    return RecoveryChoice.RESUME


class UserDatabaseBuilder:
    """Incremental, resumable builder for the user station database"""

    def __init__(self, config: BuilderConfig, client: Optional[ChannelsApiClient] = None,
                 token: Optional[CancellationToken] = None,
                 progress: ProgressCallback = no_progress):
        self.config = config
        config.ensure_dirs()

        self.token = token or CancellationToken()
        self.progress = progress
        self.client = client or ChannelsApiClient(
            base_url=config.channels_url,
            auth=auth_for_token(config.channels_token),
            timeout=config.api_timeout,
        )

        self.ledger = LedgerStore(config.ledger_file)
        self.base = BaseDatabase(config.base_stations_file, config.base_markets_file)
        self.user_db = UserDatabase(config.user_stations_file, config.backup_dir, config.max_user_backups)
        self.combined = CombinedCache(config.combined_stations_file, self.base, self.user_db,
                                      self.ledger, config.backup_dir)
        self.checkpoint = CheckpointManager(config.checkpoint_file(USER_CACHING), USER_CACHING)
        self.analyzer = MarketAnalyzer(self.ledger, self.base)
        self.scratch = ScratchFiles(
            raw=config.raw_scratch_file,
            deduplicated=config.scratch_file,
            enhanced=config.enhanced_scratch_file,
        )
        self.session = HarvestSession()
        self.force_refresh = False
        self.unique_stations = 0
        self.duplicates_merged = 0
        self.enhanced_count = 0

    def close(self):
        self.ledger.close()

    # ------------------------------------------------------------------
    # Interrupted sessions
    # ------------------------------------------------------------------

    def check_for_interrupted_session(self, kind: str = USER_CACHING,
                                      chooser: Optional[RecoveryChooser] = None) -> RecoveryChoice:
        """
        Look for a checkpoint left by an earlier run and apply the chosen
        recovery.

        Raises:
            ConcurrentRunError: the checkpoint's owner process is still alive
        """
        checkpoint = self.checkpoint if kind == USER_CACHING else \
            CheckpointManager(self.config.checkpoint_file(kind), kind)

        if checkpoint.load() is None:
            return RecoveryChoice.FRESH

        if checkpoint.owner_is_alive():
            raise ConcurrentRunError(kind, checkpoint.pid, checkpoint.path)

        if checkpoint.determine_resume_phase() == PHASE_COMPLETED:
            logger.info("Found a checkpoint for a finished run, removing it")
            checkpoint.finalize('stale')
            return RecoveryChoice.FRESH

        summary = checkpoint.summary()
        logger.info("=" * 60)
        logger.info("Interrupted session found")
        logger.info(f"  Started: {summary['start_time']}")
        logger.info(f"  Last update: {summary['last_update']}")
        logger.info(f"  Markets: {summary['markets_processed']}/{summary['markets_total']}")
        logger.info(f"  Resume phase: {summary['resume_phase']}")
        logger.info("=" * 60)

        choice = (chooser or always_resume)(summary)
        if choice == RecoveryChoice.RESTART:
            self.restart(checkpoint)
        elif choice == RecoveryChoice.CANCEL:
            logger.info("Leaving the interrupted session untouched")
        return choice

    def restart(self, checkpoint: Optional[CheckpointManager] = None):
        """Back up the checkpoint and drop everything the abandoned run produced"""
        (checkpoint or self.checkpoint).backup()
        self.ledger.discard_pending()
        self.scratch.remove()

    def _restore_session(self):
        self.session = HarvestSession(self.checkpoint.session_lineups, self.checkpoint.stats)
        self.force_refresh = self.checkpoint.force_refresh
        enhancement = self.checkpoint.phase_info(Phase.STATION_ENHANCEMENT)
        self.unique_stations = enhancement.get('unique_stations', 0)
        self.duplicates_merged = enhancement.get('duplicates_merged', 0)
        logger.info(f"Resuming with {len(self.session)} lineups already processed this session")

    def _flush_session(self):
        self.ledger.commit()
        if self.checkpoint.data is not None:
            self.checkpoint.update_session_lineups(self.session.lineups, self.session.stats)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def load_markets(self, path: Optional[Path] = None) -> List[Market]:
        path = Path(path) if path else self.config.markets_file
        if not path.exists():
            raise ConfigurationError('markets.file', f"markets file not found: {path}")
        markets = read_markets_csv(path)
        logger.info(f"Loaded {len(markets)} markets from {path}")
        return markets

    def analyze_markets(self, force_refresh: bool = False) -> Union[WorkPlan, NoWorkNeeded]:
        self.force_refresh = force_refresh
        return self.analyzer.analyze(self.load_markets(), force_refresh)

    def _resume_work_plan(self) -> Union[WorkPlan, NoWorkNeeded]:
        remaining = self.checkpoint.remaining_markets(self.load_markets(self.checkpoint.markets_file),
                                                      self.config.market_safety_buffer)
        if remaining is None:
            return NoWorkNeeded()
        return self.analyzer.analyze(remaining, self.force_refresh, resumed=True)

    def run_harvest(self, work_plan: WorkPlan):
        """Harvest the plan's markets into the raw scratch file"""
        if self.checkpoint.data is None:
            self.scratch.remove()
            self.checkpoint.init_operation(work_plan.to_process, self.force_refresh,
                                           self.config.markets_file)
        else:
            self.checkpoint.advance_phase(Phase.MARKET_PROCESSING, total_markets=work_plan.to_process)

        if not self.client.auth.prepare_for_batch():
            raise AuthenticationError("Authentication failed before harvest; resume once credentials are fixed")

        logger.info("=" * 60)
        logger.info(f"Processing {work_plan.to_process} markets")
        logger.info("=" * 60)

        harvester = Harvester(
            client=self.client,
            ledger=self.ledger,
            base=self.base,
            checkpoint=self.checkpoint,
            session=self.session,
            scratch_path=self.scratch.raw,
            token=self.token,
            force_refresh=self.force_refresh,
            progress=self.progress,
        )
        try:
            harvester.run(work_plan.markets)
        finally:
            self._flush_session()

        self.checkpoint.mark_phase_completed(Phase.MARKET_PROCESSING)
        return self.scratch.raw

    def deduplicate(self, raw_path=None):
        """Collapse the raw scratch file; output feeds the enhancement pass"""
        raw_path = raw_path or self.scratch.raw
        self.unique_stations, self.duplicates_merged = deduplicate_scratch(raw_path, self.scratch.deduplicated)
        self.checkpoint.advance_phase(Phase.STATION_ENHANCEMENT,
                                      unique_stations=self.unique_stations,
                                      duplicates_merged=self.duplicates_merged)
        return self.scratch.deduplicated

    def enhance(self, scratch_path=None, enabled: bool = True):
        scratch_path = scratch_path or self.scratch.deduplicated
        if not (enabled and self.config.enhancement_enabled):
            logger.info("Skipping enhancement phase")
            self.checkpoint.mark_phase_completed(Phase.STATION_ENHANCEMENT)
            return scratch_path

        if not self.client.auth.prepare_for_batch():
            raise AuthenticationError("Authentication failed before enhancement; resume once credentials are fixed")

        logger.info("=" * 60)
        logger.info("Station enhancement")
        logger.info("=" * 60)

        enhancer = StationEnhancer(
            client=self.client,
            checkpoint=self.checkpoint,
            output_path=self.scratch.enhanced,
            token=self.token,
            safety_buffer=self.config.enhancement_safety_buffer,
            checkpoint_interval=self.config.enhancement_checkpoint_interval,
            delay=self.config.enhancement_delay,
            progress=self.progress,
        )
        try:
            return enhancer.run(scratch_path)
        finally:
            self.enhanced_count = enhancer.enhanced_count

    def finalize(self, scratch_path=None) -> FinalizeResult:
        scratch_path = scratch_path or self.scratch.deduplicated
        finalizer = CacheFinalizer(self.user_db, self.combined, self.ledger, self.checkpoint)
        result = finalizer.finalize(scratch_path)
        self.checkpoint.finalize('completed')
        self.scratch.remove()
        return result

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self, force_refresh: bool = False, chooser: Optional[RecoveryChooser] = None,
            skip_enhancement: bool = False) -> BuildSummary:
        """
        Run or resume the whole workflow.

        Returns a summary whose outcome is 'completed', 'no_work', 'cancelled'
        (the user declined to resume) or 'interrupted' (the token fired;
        progress is saved).
        """
        started = time.time()
        summary = BuildSummary(outcome='completed')

        choice = self.check_for_interrupted_session(USER_CACHING, chooser)
        if choice == RecoveryChoice.CANCEL:
            summary.outcome = 'cancelled'
            return summary

        if choice == RecoveryChoice.RESUME:
            self.checkpoint.claim()
            self._restore_session()
            phase = self.checkpoint.determine_resume_phase()
        else:
            self.session = HarvestSession()
            self.unique_stations = self.duplicates_merged = self.enhanced_count = 0
            self.force_refresh = force_refresh
            self.ledger.discard_pending()
            self.scratch.remove()
            phase = Phase.MARKET_PROCESSING.value

        try:
            if phase == Phase.MARKET_PROCESSING.value:
                if choice == RecoveryChoice.RESUME:
                    plan = self._resume_work_plan()
                else:
                    plan = self.analyze_markets(force_refresh)

                if isinstance(plan, NoWorkNeeded) and self.checkpoint.data is None:
                    logger.info("All markets are already cached, nothing to do")
                    summary.outcome = 'no_work'
                    summary.work_plan = WorkPlan(markets=[], already_cached=plan.already_cached,
                                                 base_skipped=plan.base_skipped)
                    return summary

                if isinstance(plan, WorkPlan):
                    summary.work_plan = plan
                    self.run_harvest(plan)
                else:
                    self.checkpoint.mark_phase_completed(Phase.MARKET_PROCESSING)
                phase = Phase.STATION_ENHANCEMENT.value

            if phase == Phase.STATION_ENHANCEMENT.value:
                enhancement_started = self.checkpoint.phase_status(Phase.STATION_ENHANCEMENT) \
                    == PhaseStatus.IN_PROGRESS
                if not (enhancement_started and self.scratch.deduplicated.exists()):
                    self.deduplicate()
                self.enhance(enabled=not skip_enhancement)

            summary.finalize = self.finalize()
        except HarvestCancelled:
            summary.outcome = 'interrupted'
            logger.info("Harvest interrupted; progress saved, run again to resume")
        except StationCacheError:
            summary.outcome = 'failed'
            raise
        finally:
            summary.stats = self.session.stats
            summary.unique_stations = self.unique_stations
            summary.duplicates_merged = self.duplicates_merged
            summary.enhanced_count = self.enhanced_count
            summary.duration_seconds = time.time() - started
            log_summary(summary)

        return summary


def log_summary(summary: BuildSummary):
    """Incremental update summary, reported even after partial failure"""
    stats = summary.stats
    logger.info("=" * 60)
    logger.info(f"User database update {summary.outcome}")
    if summary.work_plan is not None:
        logger.info(f"Markets to process: {summary.work_plan.to_process}")
        logger.info(f"Markets already cached: {summary.work_plan.already_cached}")
        logger.info(f"Markets skipped (base database): {summary.work_plan.base_skipped}")
    logger.info(f"Markets succeeded: {stats.markets_succeeded}")
    logger.info(f"Markets failed: {stats.markets_failed}")
    logger.info(f"Lineups fetched: {stats.lineups_fetched} "
                f"(failed: {stats.lineups_failed}, empty: {stats.lineups_empty})")
    logger.info(f"Lineups skipped: session {stats.lineups_skipped_session}, "
                f"user database {stats.lineups_skipped_user}, base database {stats.lineups_skipped_base}")
    logger.info(f"Stations harvested: {stats.stations_harvested}")
    logger.info(f"Unique stations: {summary.unique_stations} "
                f"({summary.duplicates_merged} duplicates merged)")
    logger.info(f"Stations enhanced: {summary.enhanced_count}")
    if summary.finalize is not None:
        logger.info(f"New stations added: {summary.finalize.added_count}")
        logger.info(f"User database total: {summary.finalize.user_db_total}")
    logger.info(f"Duration: {summary.human_duration}")
    logger.info("=" * 60)
