"""
Station record helpers: clean-format validation, harvest tagging and
atomic JSON file I/O.

Station records stay plain dicts so that every field the API returns
(preferredImage, videoQuality, bcastLangs, ...) passes through untouched.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List

from .exceptions import DataIntegrityError, ResourceError
from .models import LineageEntry, Lineup, Market

logger = logging.getLogger(__name__)

Station = Dict[str, Any]

# Legacy single-country fields replaced by availableIn/lineupTracing
LEGACY_FIELDS = ('country', 'originLineupId', 'originLineupName', 'originLocation', 'originType')


def is_clean_format(station: Station) -> bool:
    return isinstance(station.get('availableIn'), list)


def count_legacy(stations: Iterable[Station]) -> int:
    return sum(1 for station in stations if not is_clean_format(station))


def validate_clean_format(stations: List[Station], path, remediation: str = '') -> None:
    """Reject any record without an availableIn array"""
    legacy = count_legacy(stations)
    if legacy:
        raise DataIntegrityError(
            path,
            f"{legacy} legacy-format records found (availableIn array required)",
            remediation,
        )


def tag_harvested_station(raw: Station, market: Market, lineup: Lineup) -> Station:
    """Stamp a freshly fetched station with its user-source provenance"""
    station = {k: v for k, v in raw.items() if k not in LEGACY_FIELDS}
    station.update({
        'source': 'user',
        'availableIn': [market.country],
        'multiCountry': False,
        'lineupTracing': [LineageEntry.for_lineup(lineup, market).to_dict()],
    })
    return station


# ============================================
# FILE I/O
# ============================================

def write_json_atomic(path: Path, data: Any, indent: int = None) -> None:
    """Write JSON to a temp file in the same directory, fsync, then rename"""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=indent)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise ResourceError(f"Cannot write {path}: {e}") from e


def load_station_file(path: Path, missing_ok: bool = True) -> List[Station]:
    """Load a JSON array of station records"""
    path = Path(path)
    if not path.exists() or path.stat().st_size == 0:
        if missing_ok:
            return []
        raise DataIntegrityError(path, "Station file is missing or empty")
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise DataIntegrityError(path, f"Invalid JSON ({e})") from e
    if not isinstance(data, list):
        raise DataIntegrityError(path, f"Expected a JSON array, found {type(data).__name__}")
    return data


def load_clean_station_file(path: Path, remediation: str = '') -> List[Station]:
    stations = load_station_file(path)
    validate_clean_format(stations, path, remediation)
    return stations


def append_jsonl(handle, records: Iterable[Station]) -> int:
    """Append records one per line and flush them to disk"""
    count = 0
    for record in records:
        handle.write(json.dumps(record, separators=(',', ':')))
        handle.write('\n')
        count += 1
    handle.flush()
    os.fsync(handle.fileno())
    return count


def iter_jsonl(path: Path) -> Iterator[Station]:
    """Yield complete JSON objects from a JSONL file, stopping at a torn tail line"""
    path = Path(path)
    if not path.exists():
        return
    with open(path, 'r') as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Ignoring truncated record at {path.name}:{line_number}")
                return
            yield record


def truncate_torn_tail(path: Path) -> int:
    """
    Cut a JSONL file back to its last newline so appends start on a fresh line.

    Returns the number of bytes dropped.
    """
    path = Path(path)
    if not path.exists():
        return 0
    try:
        with open(path, 'rb+') as f:
            data = f.read()
            keep = data.rfind(b'\n') + 1
            dropped = len(data) - keep
            if dropped:
                f.truncate(keep)
                f.flush()
                os.fsync(f.fileno())
    except OSError as e:
        raise ResourceError(f"Cannot repair {path}: {e}") from e
    if dropped:
        logger.warning(f"Dropped {dropped} bytes of a torn record at the end of {path.name}")
    return dropped


def station_countries(stations: Iterable[Station]) -> List[str]:
    countries = set()
    for station in stations:
        for country in station.get('availableIn') or []:
            if country:
                countries.add(country)
    return sorted(countries)
