"""Classifies configured markets before a harvest"""

import logging
from enum import Enum
from typing import List, Union

from .databases import BaseDatabase
from .ledger import LedgerStore
from .models import Market, NoWorkNeeded, WorkPlan

logger = logging.getLogger(__name__)


class MarketState(Enum):
    NEEDS_HARVEST = "needs_harvest"
    CACHED = "cached"
    BASE = "base"


class MarketAnalyzer:
    """Decides which markets need a harvest"""

    def __init__(self, ledger: LedgerStore, base: BaseDatabase):
        self.ledger = ledger
        self.base = base

    def classify(self, market: Market, force_refresh: bool = False) -> MarketState:
        if force_refresh:
            return MarketState.NEEDS_HARVEST
        if self.ledger.is_market_cached(market):
            return MarketState.CACHED
        if self.base.contains_market(market):
            return MarketState.BASE
        return MarketState.NEEDS_HARVEST

    def analyze(self, markets: List[Market], force_refresh: bool = False,
                resumed: bool = False) -> Union[WorkPlan, NoWorkNeeded]:
        """
        Split `markets` into cached, base-covered and to-harvest.

        Base-covered markets are recorded complete in the ledger right away,
        so the next run finds them as cached.
        """
        to_harvest = []
        already_cached = 0
        base_skipped = 0

        for market in markets:
            state = self.classify(market, force_refresh)
            if state == MarketState.CACHED:
                already_cached += 1
            elif state == MarketState.BASE:
                base_skipped += 1
                self.ledger.record_market_processed(market, 0, pending=False)
            else:
                to_harvest.append(market)
        self.ledger.commit()

        logger.info(f"Market analysis: {len(markets)} configured, {already_cached} already cached, "
                    f"{base_skipped} covered by base, {len(to_harvest)} to process")

        if not to_harvest:
            return NoWorkNeeded(already_cached=already_cached, base_skipped=base_skipped)
        return WorkPlan(markets=to_harvest, already_cached=already_cached,
                        base_skipped=base_skipped, resumed=resumed)
