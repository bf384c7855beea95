"""
Station merge rule.

Records are grouped by stationId in first-seen order. A group collapses into
a single record built from its first member: availableIn becomes the sorted
union of the group, multiCountry is recomputed, and only the first lineage
trace survives, so records keep a fixed size across repeated merges.

The same rule serves three callers: deduplicating a harvest's raw output,
appending a batch to the user database and building the combined view.
"""

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .exceptions import DataIntegrityError
from .stations import Station, count_legacy, iter_jsonl, station_countries, write_json_atomic

logger = logging.getLogger(__name__)

COMBINED_SOURCE = 'combined'


def _primary_trace(members: List[Station]) -> Optional[Dict]:
    """The first member's first trace; a group whose first member was never traced gets none"""
    tracing = members[0].get('lineupTracing') or []
    if not tracing:
        return None
    trace = dict(tracing[0])
    trace['discoveredOrder'] = 1
    trace['isPrimary'] = True
    return trace


def _merge_group(members: List[Station]) -> Station:
    station = dict(members[0])

    available_in = station_countries(members)
    station['availableIn'] = available_in
    station['multiCountry'] = len(available_in) > 1

    trace = _primary_trace(members)
    station['lineupTracing'] = [trace] if trace else []

    if len(members) > 1:
        sources = {member.get('source') for member in members}
        station['source'] = sources.pop() if len(sources) == 1 else COMBINED_SOURCE

    return station


def _sort_key(station: Station) -> Tuple[str, str]:
    return (station.get('name') or '', str(station.get('stationId')))


def group_by_station_id(stations: Iterable[Station]) -> 'OrderedDict[str, List[Station]]':
    groups: 'OrderedDict[str, List[Station]]' = OrderedDict()
    skipped = 0
    for station in stations:
        station_id = station.get('stationId')
        if station_id is None or station_id == '':
            skipped += 1
            continue
        groups.setdefault(str(station_id), []).append(station)
    if skipped:
        logger.warning(f"Dropped {skipped} records without a stationId")
    return groups


def merge(existing: List[Station], incoming: List[Station]) -> List[Station]:
    """
    Merge two station collections into one record per stationId.

    Members of `existing` come first in every group, so their fields and
    lineage win over the incoming batch.

    Raises:
        DataIntegrityError: if either side contains legacy-format records
    """
    for label, collection in (('existing stations', existing), ('incoming stations', incoming)):
        legacy = count_legacy(collection)
        if legacy:
            raise DataIntegrityError(
                label,
                f"{legacy} legacy-format records found (availableIn array required)",
            )

    groups = group_by_station_id(list(existing) + list(incoming))
    merged = [_merge_group(members) for members in groups.values()]
    merged.sort(key=_sort_key)
    return merged


def normalize(stations: List[Station]) -> List[Station]:
    return merge(stations, [])


def deduplicate_scratch(raw_path: Path, output_path: Path) -> Tuple[int, int]:
    """
    Collapse a harvest's JSONL scratch file into a deduplicated JSON array.

    Returns:
        (unique station count, number of duplicate records merged away)
    """
    raw = list(iter_jsonl(raw_path))
    legacy = count_legacy(raw)
    if legacy:
        raise DataIntegrityError(
            raw_path,
            f"{legacy} legacy-format records found (availableIn array required)",
            "Delete the scratch file and restart the harvest",
        )

    merged = normalize(raw)
    write_json_atomic(output_path, merged)

    duplicates = len(raw) - len(merged)
    logger.info(f"Deduplicated {len(raw)} raw records into {len(merged)} unique stations "
                f"({duplicates} duplicates merged)")
    return len(merged), duplicates
