"""Folds an enhanced harvest batch into the user database"""

import logging
from datetime import datetime, timezone
from pathlib import Path

from .checkpoint import CheckpointManager
from .databases import CombinedCache, UserDatabase
from .ledger import LedgerStore
from .merge import merge
from .models import FinalizeResult, Phase
from .stations import load_clean_station_file

logger = logging.getLogger(__name__)


class CacheFinalizer:
    """Merges a batch into the user database and commits the harvest's ledger entries"""

    def __init__(self, user_db: UserDatabase, combined: CombinedCache,
                 ledger: LedgerStore, checkpoint: CheckpointManager):
        self.user_db = user_db
        self.combined = combined
        self.ledger = ledger
        self.checkpoint = checkpoint

    def finalize(self, batch_path: Path) -> FinalizeResult:
        """
        Merge the batch with the existing user stations (never a plain
        concatenation), back up and rewrite the user database, invalidate the
        combined cache (rebuilt immediately when a base database exists) and
        promote pending ledger entries.

        The checkpoint is left for the caller to delete.
        """
        self.checkpoint.advance_phase(Phase.CACHE_FINALIZATION)

        batch = load_clean_station_file(batch_path, "Delete the scratch file and restart the harvest")
        existing = self.user_db.load() if self.user_db.exists() else []

        if batch:
            merged = merge(existing, batch)
            self.user_db.write(merged)
            self.combined.invalidate()
            if self.combined.base.exists():
                self.combined.rebuild()
            total = len(merged)
        else:
            logger.info("No new stations harvested, user database unchanged")
            total = len(existing)

        self.ledger.promote_pending()
        self.ledger.update_metadata('last_harvest', datetime.now(timezone.utc).isoformat())
        self.ledger.commit()

        self.checkpoint.mark_phase_completed(Phase.CACHE_FINALIZATION)

        result = FinalizeResult(added_count=total - len(existing), user_db_total=total,
                                batch_count=len(batch))
        logger.info(f"User database: {result.added_count} new stations added "
                    f"(batch of {len(batch)}), total {total}")
        return result
