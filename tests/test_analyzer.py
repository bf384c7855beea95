from stationcache.analyzer import MarketAnalyzer
from stationcache.databases import BaseDatabase
from stationcache.ledger import LedgerStore
from stationcache.models import Market, NoWorkNeeded, WorkPlan


def _analyzer(config, write_markets, base_markets):
    write_markets(config.base_markets_file, base_markets)
    ledger = LedgerStore(config.ledger_file)
    base = BaseDatabase(config.base_stations_file, config.base_markets_file)
    return MarketAnalyzer(ledger, base), ledger


def test_base_market_skipped_and_new_market_planned(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [("US", "10001")])
    markets = [Market("US", "10001"), Market("US", "90210")]

    plan = analyzer.analyze(markets, force_refresh=False)

    assert isinstance(plan, WorkPlan)
    assert plan.markets == [Market("US", "90210")]
    assert plan.already_cached == 0
    assert plan.base_skipped == 1
    assert plan.to_process == 1


def test_base_market_recorded_complete_immediately(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [("US", "10001")])

    analyzer.analyze([Market("US", "10001"), Market("US", "90210")])

    assert ledger.is_market_cached(Market("US", "10001"))
    assert not ledger.is_market_cached(Market("US", "90210"))


def test_second_analysis_counts_absorbed_market_as_cached(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [("US", "10001")])
    markets = [Market("US", "10001"), Market("US", "90210")]
    analyzer.analyze(markets)

    plan = analyzer.analyze(markets)

    assert plan.already_cached == 1
    assert plan.base_skipped == 0


def test_nothing_to_do_is_distinct_outcome(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [("USA", "10001")])
    ledger.record_market_processed(Market("USA", "60601"), 3, pending=False)
    ledger.commit()

    result = analyzer.analyze([Market("USA", "10001"), Market("USA", "60601")])

    assert isinstance(result, NoWorkNeeded)
    assert result.already_cached == 1
    assert result.base_skipped == 1
    assert result.to_process == 0


def test_pending_market_is_not_cached(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [])
    ledger.record_market_processed(Market("USA", "60601"), 3)
    ledger.commit()

    plan = analyzer.analyze([Market("USA", "60601")])

    assert plan.markets == [Market("USA", "60601")]


def test_failed_market_is_retried(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [])
    ledger.record_market_processed(Market("USA", "60601"), 0, status="failed", pending=False)
    ledger.commit()

    plan = analyzer.analyze([Market("USA", "60601")])

    assert plan.markets == [Market("USA", "60601")]


def test_force_refresh_plans_everything(config, write_markets):
    analyzer, ledger = _analyzer(config, write_markets, [("USA", "10001")])
    ledger.record_market_processed(Market("USA", "60601"), 3, pending=False)
    ledger.commit()
    markets = [Market("USA", "10001"), Market("USA", "60601")]

    plan = analyzer.analyze(markets, force_refresh=True)

    assert plan.markets == markets
    assert plan.already_cached == 0
    assert plan.base_skipped == 0
