"""
Phase-aware checkpoint for the harvest workflow.

One JSON document per operation kind, rewritten atomically on every update.
The document records phase statuses, completed/failed markets in completion
order, the session lineup set and the enhancement cursor, which is enough to
resume after a crash or an interrupt.
"""

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .exceptions import ResourceError
from .models import HarvestStats, Market, Phase, PhaseStatus
from .stations import write_json_atomic

logger = logging.getLogger(__name__)

USER_CACHING = 'user_caching'

PHASE_COMPLETED = 'completed'


def _now() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def pid_is_alive(pid: Optional[int]) -> bool:
    """True if `pid` names a live process other than this one"""
    if not pid or pid == os.getpid():
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class CheckpointManager:
    """Checkpoint for one operation kind - tracks progress for resumability"""

    def __init__(self, path: Path, operation: str = USER_CACHING):
        self.path = Path(path)
        self.operation = operation
        self.data: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[Dict[str, Any]]:
        """
        Load the checkpoint for this operation.

        A corrupted document is set aside as a timestamped backup and treated
        as absent. A document for another operation kind is ignored.
        """
        self.data = None
        if not self.path.exists():
            return None

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Checkpoint {self.path} is unreadable ({e}), setting it aside")
            self.backup()
            return None

        if not isinstance(data, dict) or 'operation' not in data:
            logger.warning(f"Checkpoint {self.path} has no operation field, setting it aside")
            self.backup()
            return None

        if data['operation'] != self.operation:
            logger.debug(f"Ignoring checkpoint for operation {data['operation']}")
            return None

        self.data = data
        return data

    def init_operation(self, total_markets: int, force_refresh: bool,
                       markets_file: Optional[Path]) -> Dict[str, Any]:
        """Create a fresh checkpoint owned by this process"""
        now = _now()
        self.data = {
            'operation': self.operation,
            'start_time': now,
            'current_phase': Phase.MARKET_PROCESSING.value,
            'phase_progress': {
                Phase.MARKET_PROCESSING.value: {
                    'status': PhaseStatus.IN_PROGRESS.value,
                    'total_markets': total_markets,
                    'processed_markets': 0,
                    'completed_markets': [],
                    'failed_markets': [],
                },
                Phase.STATION_ENHANCEMENT.value: {
                    'status': PhaseStatus.NOT_STARTED.value,
                    'total_stations': 0,
                    'enhanced_stations': 0,
                    'current_station_index': 0,
                },
                Phase.CACHE_FINALIZATION.value: {
                    'status': PhaseStatus.NOT_STARTED.value,
                },
            },
            'session_lineups': [],
            'force_refresh': force_refresh,
            'markets_file': str(markets_file) if markets_file else None,
            'stats': HarvestStats().to_dict(),
            'pid': os.getpid(),
            'last_update': now,
        }
        self.save()
        logger.info(f"Progress tracking initialized: {self.path}")
        return self.data

    def save(self):
        """Atomically rewrite the checkpoint"""
        if self.data is None:
            return
        self.data['last_update'] = _now()
        write_json_atomic(self.path, self.data, indent=2)

    def claim(self):
        """Take ownership of a resumed checkpoint"""
        self.data['pid'] = os.getpid()
        self.save()

    def finalize(self, outcome: str = 'completed'):
        """Delete the checkpoint once the operation has finished"""
        logger.info(f"Operation {self.operation} finished: {outcome}")
        if self.path.exists():
            try:
                self.path.unlink()
            except OSError as e:
                raise ResourceError(f"Cannot remove checkpoint {self.path}: {e}") from e
        self.data = None

    def backup(self) -> Optional[Path]:
        """Rename the checkpoint to <name>.backup.<timestamp>"""
        if not self.path.exists():
            return None
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        backup_path = self.path.with_name(f'{self.path.name}.backup.{timestamp}')
        try:
            shutil.move(str(self.path), str(backup_path))
        except OSError as e:
            raise ResourceError(f"Cannot back up checkpoint {self.path}: {e}") from e
        logger.info(f"Previous progress backed up to {backup_path}")
        self.data = None
        return backup_path

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _phase(self, phase: Phase) -> Dict[str, Any]:
        return self.data['phase_progress'].setdefault(phase.value, {})

    def phase_info(self, phase: Phase) -> Dict[str, Any]:
        if not self.data:
            return {}
        return dict(self.data.get('phase_progress', {}).get(phase.value, {}))

    def phase_status(self, phase: Phase) -> PhaseStatus:
        if not self.data:
            return PhaseStatus.NOT_STARTED
        status = self.data.get('phase_progress', {}).get(phase.value, {}).get('status')
        try:
            return PhaseStatus(status)
        except ValueError:
            return PhaseStatus.NOT_STARTED

    @property
    def pid(self) -> Optional[int]:
        return self.data.get('pid') if self.data else None

    @property
    def force_refresh(self) -> bool:
        return bool(self.data and self.data.get('force_refresh'))

    @property
    def markets_file(self) -> Optional[str]:
        return self.data.get('markets_file') if self.data else None

    @property
    def session_lineups(self) -> List[str]:
        return list(self.data.get('session_lineups') or []) if self.data else []

    @property
    def completed_markets(self) -> List[str]:
        return list(self._phase(Phase.MARKET_PROCESSING).get('completed_markets') or [])

    @property
    def failed_markets(self) -> List[str]:
        return list(self._phase(Phase.MARKET_PROCESSING).get('failed_markets') or [])

    @property
    def stats(self) -> HarvestStats:
        return HarvestStats.from_dict(self.data.get('stats') if self.data else None)

    def owner_is_alive(self) -> bool:
        return pid_is_alive(self.pid)

    def summary(self) -> Dict[str, Any]:
        """Display-friendly view of an interrupted session"""
        markets = self._phase(Phase.MARKET_PROCESSING)
        enhancement = self._phase(Phase.STATION_ENHANCEMENT)
        return {
            'operation': self.data.get('operation'),
            'start_time': self.data.get('start_time'),
            'last_update': self.data.get('last_update'),
            'current_phase': self.data.get('current_phase'),
            'resume_phase': self.determine_resume_phase(),
            'markets_processed': markets.get('processed_markets', 0),
            'markets_total': markets.get('total_markets', 0),
            'markets_failed': len(markets.get('failed_markets') or []),
            'stations_enhanced': enhancement.get('enhanced_stations', 0),
            'station_index': enhancement.get('current_station_index', 0),
            'stations_total': enhancement.get('total_stations', 0),
            'session_lineups': len(self.data.get('session_lineups') or []),
            'pid': self.data.get('pid'),
        }

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def record_market_done(self, key: str, success: bool):
        """Append a market to completed_markets or failed_markets"""
        progress = self._phase(Phase.MARKET_PROCESSING)
        bucket = 'completed_markets' if success else 'failed_markets'
        other = 'failed_markets' if success else 'completed_markets'

        # A market re-run from the safety buffer moves to the end of its list
        for name in (bucket, other):
            entries = progress.setdefault(name, [])
            if key in entries:
                entries.remove(key)
        progress[bucket].append(key)
        progress['processed_markets'] = progress.get('processed_markets', 0) + 1
        self.save()

    def advance_phase(self, phase: Phase, **metadata):
        """Enter `phase`, marking it in progress and storing extra fields on it"""
        self.data['current_phase'] = phase.value
        progress = self._phase(phase)
        progress['status'] = PhaseStatus.IN_PROGRESS.value
        progress.update(metadata)
        self.save()

    def mark_phase_completed(self, phase: Phase):
        self._phase(phase)['status'] = PhaseStatus.COMPLETED.value
        self.save()

    def update_session_lineups(self, lineups: Iterable[str], stats: Optional[HarvestStats] = None):
        self.data['session_lineups'] = sorted(lineups)
        if stats is not None:
            self.data['stats'] = stats.to_dict()
        self.save()

    def update_enhancement_progress(self, index: int, enhanced: int):
        progress = self._phase(Phase.STATION_ENHANCEMENT)
        progress['current_station_index'] = index
        progress['enhanced_stations'] = enhanced
        self.save()

    # ------------------------------------------------------------------
    # Resume decisions
    # ------------------------------------------------------------------

    def determine_resume_phase(self) -> str:
        """Phase to continue from, or 'completed'"""
        if not self.data:
            return Phase.MARKET_PROCESSING.value

        markets = self.phase_status(Phase.MARKET_PROCESSING)
        enhancement = self.phase_status(Phase.STATION_ENHANCEMENT)
        finalization = self.phase_status(Phase.CACHE_FINALIZATION)

        if finalization == PhaseStatus.IN_PROGRESS:
            return Phase.CACHE_FINALIZATION.value
        if enhancement == PhaseStatus.IN_PROGRESS:
            return Phase.STATION_ENHANCEMENT.value
        if enhancement == PhaseStatus.NOT_STARTED and markets == PhaseStatus.COMPLETED:
            return Phase.STATION_ENHANCEMENT.value
        if markets in (PhaseStatus.IN_PROGRESS, PhaseStatus.NOT_STARTED):
            return Phase.MARKET_PROCESSING.value
        if enhancement == PhaseStatus.COMPLETED and finalization == PhaseStatus.NOT_STARTED:
            return Phase.CACHE_FINALIZATION.value
        return PHASE_COMPLETED

    def remaining_markets(self, markets: List[Market], safety_buffer: int = 2) -> Optional[List[Market]]:
        """
        Markets still to harvest after an interruption.

        The last `safety_buffer` completed markets are queued again because
        their stations may not have reached the scratch file. Failed markets
        and the remaining completed ones are skipped.

        Returns:
            Markets in the configured order, or None if market processing
            already completed
        """
        if self.phase_status(Phase.MARKET_PROCESSING) == PhaseStatus.COMPLETED:
            return None

        completed = self.completed_markets
        safe_count = max(0, len(completed) - safety_buffer)
        safe_completed = completed[:safe_count]
        if len(completed) > safe_count:
            logger.info(f"Market safety buffer applied: reprocessing last "
                        f"{len(completed) - safe_count} completed markets "
                        f"({len(completed)} completed -> {safe_count} safe)")

        skip = set(safe_completed) | set(self.failed_markets)
        return [market for market in markets if market.key not in skip]

    def enhancement_resume_point(self, safety_buffer: int = 50) -> Tuple[int, int]:
        """
        Returns:
            (start index, estimated enhanced count) for the enhancement pass
        """
        if self.phase_status(Phase.STATION_ENHANCEMENT) != PhaseStatus.IN_PROGRESS:
            return 0, 0

        progress = self._phase(Phase.STATION_ENHANCEMENT)
        last_index = int(progress.get('current_station_index') or 0)
        enhanced = int(progress.get('enhanced_stations') or 0)

        start = max(0, last_index - safety_buffer)
        estimated = enhanced * start // last_index if last_index > 0 else 0
        if last_index:
            logger.info(f"Enhancement safety buffer applied: last recorded station {last_index} "
                        f"-> resuming at {start}")
        return start, estimated
