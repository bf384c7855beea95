"""
Station enhancement pass.

Backfills empty display names by call-sign lookup. Records are written in
input order to a JSONL side file, and the checkpoint cursor is advanced
every `checkpoint_interval` stations, after the batch reaches disk. A resumed
pass rewinds by `safety_buffer` stations and truncates the side file to
match. The scratch file is replaced only once the side file holds a
complete, well-formed copy.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

from .api_client import ChannelsApiClient
from .cancellation import CancellationToken
from .checkpoint import CheckpointManager
from .exceptions import ApiError, DataIntegrityError, HarvestCancelled, ResourceError
from .models import Phase, ProgressCallback, ProgressEvent, no_progress
from .stations import Station, append_jsonl, iter_jsonl, load_clean_station_file, write_json_atomic

logger = logging.getLogger(__name__)


class StationEnhancer:
    """Resumable name backfill over the deduplicated scratch file"""

    def __init__(self, client: Optional[ChannelsApiClient], checkpoint: CheckpointManager,
                 output_path: Path, token: Optional[CancellationToken] = None,
                 safety_buffer: int = 50, checkpoint_interval: int = 25, delay: float = 0.05,
                 progress: ProgressCallback = no_progress):
        self.client = client
        self.checkpoint = checkpoint
        self.output_path = Path(output_path)
        self.token = token or CancellationToken()
        self.safety_buffer = safety_buffer
        self.checkpoint_interval = max(1, checkpoint_interval)
        self.delay = delay
        self.progress = progress
        self.enhanced_count = 0

    def needs_enhancement(self, station: Station) -> bool:
        if self.client is None:
            return False
        call_sign = station.get('callSign')
        name = station.get('name')
        return bool(call_sign) and not (name or '').strip()

    def enhance_station(self, station: Station) -> Station:
        """Return the station with its name filled in, or unchanged"""
        try:
            details = self.client.lookup_station_by_call_sign(station['callSign'], station.get('stationId'))
        except ApiError as e:
            logger.debug(f"Lookup failed for {station.get('callSign')}: {e}")
            return station

        name = (details or {}).get('name')
        if not isinstance(name, str) or not name.strip():
            return station

        enhanced = dict(station)
        enhanced['name'] = name
        return enhanced

    def run(self, scratch_path: Path) -> Path:
        """
        Enhance every record of `scratch_path` and atomically replace it.

        Raises:
            HarvestCancelled: progress up to the last written station is kept
            DataIntegrityError: the enhanced output is incomplete or malformed;
                the scratch file is left untouched
        """
        scratch_path = Path(scratch_path)
        stations = load_clean_station_file(scratch_path, "Delete the scratch file and restart the harvest")
        total = len(stations)

        start, self.enhanced_count = self.checkpoint.enhancement_resume_point(self.safety_buffer)
        written = self._count_output_records()
        if start > written:
            logger.info(f"Enhanced output holds {written} stations, resuming at {written} instead of {start}")
            start = written
            self.enhanced_count = min(self.enhanced_count, written)
        self._truncate_output(start)

        self.checkpoint.advance_phase(Phase.STATION_ENHANCEMENT, total_stations=total)
        to_check = sum(1 for s in stations[start:] if self.needs_enhancement(s))
        logger.info(f"Enhancing stations {start}..{total} ({to_check} need a name lookup)")

        pending: List[Station] = []
        processed = start
        try:
            handle = open(self.output_path, 'a')
        except OSError as e:
            raise ResourceError(f"Cannot open {self.output_path}: {e}") from e

        with handle:
            try:
                for index in range(start, total):
                    self.token.raise_if_cancelled()
                    station = stations[index]
                    self.progress(ProgressEvent(Phase.STATION_ENHANCEMENT.value,
                                                station.get('callSign') or str(station.get('stationId')),
                                                index + 1, total))

                    result = station
                    looked_up = self.needs_enhancement(station)
                    if looked_up:
                        result = self.enhance_station(station)
                        if result is not station:
                            self.enhanced_count += 1

                    pending.append(result)
                    processed = index + 1
                    if processed % self.checkpoint_interval == 0:
                        self._flush(handle, pending, processed)

                    if looked_up:
                        self.token.sleep(self.delay)
            except HarvestCancelled:
                self._flush(handle, pending, processed)
                raise
            self._flush(handle, pending, processed)

        self._replace_scratch(scratch_path, total)
        self.checkpoint.mark_phase_completed(Phase.STATION_ENHANCEMENT)
        logger.info(f"Enhanced {self.enhanced_count} of {total} stations")
        return scratch_path

    def _flush(self, handle, pending: List[Station], processed: int):
        """Write buffered records, then advance the checkpoint cursor"""
        if pending:
            try:
                append_jsonl(handle, pending)
            except OSError as e:
                raise ResourceError(f"Cannot write {self.output_path}: {e}") from e
            pending.clear()
        self.checkpoint.update_enhancement_progress(processed, self.enhanced_count)

    def _count_output_records(self) -> int:
        return sum(1 for _ in iter_jsonl(self.output_path))

    def _truncate_output(self, keep: int):
        """Keep only the first `keep` complete records of the side file"""
        if keep == 0:
            if self.output_path.exists():
                self.output_path.unlink()
            return

        records = []
        for record in iter_jsonl(self.output_path):
            if len(records) == keep:
                break
            records.append(record)

        tmp_path = self.output_path.with_name(f'{self.output_path.name}.tmp')
        try:
            with open(tmp_path, 'w') as f:
                append_jsonl(f, records)
            os.replace(tmp_path, self.output_path)
        except OSError as e:
            raise ResourceError(f"Cannot rewrite {self.output_path}: {e}") from e

    def _replace_scratch(self, scratch_path: Path, expected: int):
        records = list(iter_jsonl(self.output_path))
        malformed = sum(1 for r in records if not isinstance(r, dict) or not r.get('stationId'))
        if malformed or len(records) != expected:
            raise DataIntegrityError(
                self.output_path,
                f"Enhanced output malformed ({len(records)} records, {malformed} invalid, "
                f"{expected} expected)",
                f"{scratch_path} was left untouched; resume to retry enhancement",
            )
        write_json_atomic(scratch_path, records)
        self.output_path.unlink()
