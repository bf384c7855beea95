"""Data classes shared across the builder phases"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


class Phase(str, Enum):
    """Harvest phases, in execution order"""
    MARKET_PROCESSING = "market_processing"
    STATION_ENHANCEMENT = "station_enhancement"
    CACHE_FINALIZATION = "cache_finalization"


class PhaseStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class RecoveryChoice(Enum):
    """Outcome of the interrupted-session check"""
    FRESH = "fresh"        # no interrupted session
    RESUME = "resume"
    RESTART = "restart"    # old checkpoint backed up
    CANCEL = "cancel"


@dataclass(frozen=True)
class Market:
    """A (country, postal code) harvesting unit"""
    country: str
    postal_code: str

    @property
    def key(self) -> str:
        return f"{self.country},{self.postal_code}"

    @classmethod
    def from_key(cls, key: str) -> 'Market':
        country, postal_code = key.split(',', 1)
        return cls(country=country, postal_code=postal_code)


@dataclass
class Lineup:
    """Lineup information"""
    lineup_id: str
    name: str = ''
    location: str = ''
    type: str = ''

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> Optional['Lineup']:
        lineup_id = data.get('lineupId')
        if not lineup_id:
            return None
        return cls(
            lineup_id=str(lineup_id),
            name=data.get('name') or '',
            location=data.get('location') or '',
            type=data.get('type') or '',
        )


@dataclass
class LineageEntry:
    """Where a station was first discovered"""
    lineup_id: str
    lineup_name: str
    country: str
    location: str
    type: str
    discovered_order: int = 1
    is_primary: bool = True

    @classmethod
    def for_lineup(cls, lineup: Lineup, market: Market) -> 'LineageEntry':
        return cls(
            lineup_id=lineup.lineup_id,
            lineup_name=lineup.name,
            country=market.country,
            location=lineup.location,
            type=lineup.type,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lineupId': self.lineup_id,
            'lineupName': self.lineup_name,
            'country': self.country,
            'location': self.location,
            'type': self.type,
            'discoveredOrder': self.discovered_order,
            'isPrimary': self.is_primary,
        }


@dataclass
class WorkPlan:
    """Markets that need harvesting, plus analysis counters"""
    markets: List[Market]
    already_cached: int = 0
    base_skipped: int = 0
    resumed: bool = False

    @property
    def to_process(self) -> int:
        return len(self.markets)


@dataclass
class NoWorkNeeded:
    """Every configured market is already covered"""
    already_cached: int = 0
    base_skipped: int = 0
    to_process: int = 0


@dataclass
class HarvestStats:
    """Counters reported in the end-of-harvest summary"""
    markets_succeeded: int = 0
    markets_failed: int = 0
    lineups_fetched: int = 0
    lineups_failed: int = 0
    lineups_empty: int = 0
    lineups_skipped_session: int = 0
    lineups_skipped_user: int = 0
    lineups_skipped_base: int = 0
    stations_harvested: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'HarvestStats':
        stats = cls()
        for key, value in (data or {}).items():
            if hasattr(stats, key):
                setattr(stats, key, int(value))
        return stats


@dataclass
class FinalizeResult:
    added_count: int
    user_db_total: int
    batch_count: int = 0


@dataclass
class BuildSummary:
    """What a full build run did"""
    outcome: str
    work_plan: Optional[WorkPlan] = None
    stats: HarvestStats = field(default_factory=HarvestStats)
    unique_stations: int = 0
    duplicates_merged: int = 0
    enhanced_count: int = 0
    finalize: Optional[FinalizeResult] = None
    duration_seconds: float = 0.0

    @property
    def human_duration(self) -> str:
        seconds = int(self.duration_seconds)
        return f"{seconds // 3600:02d}h {seconds % 3600 // 60:02d}m {seconds % 60:02d}s"


@dataclass
class ProgressEvent:
    """One progress tick: the CLI decides how to present it"""
    phase: str
    item: str
    index: int
    total: int

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return self.index * 100 // self.total


ProgressCallback = Callable[[ProgressEvent], None]


def no_progress(event: ProgressEvent) -> None:
    pass


@dataclass
class ScratchFiles:
    """Scratch files owned by one harvest run"""
    raw: Path
    deduplicated: Path
    enhanced: Path

    def remove(self):
        for path in (self.raw, self.deduplicated, self.enhanced):
            if path.exists():
                path.unlink()
