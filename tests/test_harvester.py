import json

import pytest

from stationcache.cancellation import CancellationToken
from stationcache.checkpoint import CheckpointManager
from stationcache.databases import BaseDatabase
from stationcache.exceptions import HarvestCancelled
from stationcache.harvester import Harvester, HarvestSession
from stationcache.ledger import LedgerStore
from stationcache.models import Lineup, Market
from stationcache.stations import truncate_torn_tail


@pytest.fixture
def ledger(config):
    store = LedgerStore(config.ledger_file)
    yield store
    store.close()


@pytest.fixture
def checkpoint(config):
    manager = CheckpointManager(config.checkpoint_file("user_caching"))
    manager.init_operation(0, force_refresh=False, markets_file=config.markets_file)
    return manager


def _harvester(config, client, ledger, checkpoint, session=None, token=None, force_refresh=False):
    base = BaseDatabase(config.base_stations_file, config.base_markets_file)
    return Harvester(
        client=client,
        ledger=ledger,
        base=base,
        checkpoint=checkpoint,
        session=session or HarvestSession(),
        scratch_path=config.raw_scratch_file,
        token=token,
        force_refresh=force_refresh,
    )


def _scratch(config):
    if not config.raw_scratch_file.exists():
        return []
    return [json.loads(line) for line in config.raw_scratch_file.read_text().splitlines() if line]


def test_stations_are_tagged_with_provenance(config, fake_client, ledger, checkpoint):
    fake_client.add_market("USA", "90210", ["L1"])
    fake_client.stations["L1"] = [{"stationId": "100", "name": "KABC", "callSign": "KABC",
                                   "country": "USA", "preferredImage": {"uri": "http://x/logo.png"}}]

    _harvester(config, fake_client, ledger, checkpoint).run([Market("USA", "90210")])

    [station] = _scratch(config)
    assert station["source"] == "user"
    assert station["availableIn"] == ["USA"]
    assert station["multiCountry"] is False
    assert station["preferredImage"] == {"uri": "http://x/logo.png"}
    assert "country" not in station
    assert station["lineupTracing"] == [{
        "lineupId": "L1",
        "lineupName": "L1 name",
        "country": "USA",
        "location": "Somewhere",
        "type": "CABLE",
        "discoveredOrder": 1,
        "isPrimary": True,
    }]


def test_base_lineup_costs_no_station_fetch(config, fake_client, ledger, checkpoint, write_json, make_station):
    write_json(config.base_stations_file, [make_station("1", name="Base", source="base", lineup_id="BASE-L")])
    fake_client.add_market("USA", "90210", ["BASE-L", "NEW-L"])
    fake_client.stations["NEW-L"] = [{"stationId": "2", "name": "New"}]
    harvester = _harvester(config, fake_client, ledger, checkpoint)

    harvester.run([Market("USA", "90210")])

    assert fake_client.station_calls == ["NEW-L"]
    assert harvester.stats.lineups_skipped_base == 1
    ledger.promote_pending()
    assert ledger.markets_for_lineup("BASE-L") == [Market("USA", "90210")]


def test_cached_lineup_skipped_but_linked_to_market(config, fake_client, ledger, checkpoint):
    ledger.record_lineup_processed(Lineup("OLD-L"), Market("USA", "10001"), 12)
    ledger.promote_pending()
    fake_client.add_market("USA", "90210", ["OLD-L"])
    harvester = _harvester(config, fake_client, ledger, checkpoint)

    harvester.run([Market("USA", "90210")])

    assert fake_client.station_calls == []
    assert harvester.stats.lineups_skipped_user == 1
    ledger.promote_pending()
    assert ledger.markets_for_lineup("OLD-L") == [Market("USA", "10001"), Market("USA", "90210")]


def test_force_refresh_refetches_cached_lineups(config, fake_client, ledger, checkpoint):
    ledger.record_lineup_processed(Lineup("OLD-L"), Market("USA", "10001"), 12)
    ledger.promote_pending()
    fake_client.add_market("USA", "10001", ["OLD-L"])
    fake_client.stations["OLD-L"] = [{"stationId": "1", "name": "A"}]

    _harvester(config, fake_client, ledger, checkpoint, force_refresh=True).run([Market("USA", "10001")])

    assert fake_client.station_calls == ["OLD-L"]


def test_lineup_shared_by_markets_fetched_once_per_session(config, fake_client, ledger, checkpoint):
    fake_client.add_market("USA", "10001", ["SHARED", "A-ONLY"])
    fake_client.add_market("USA", "10002", ["SHARED"])
    fake_client.stations["SHARED"] = [{"stationId": "1", "name": "A"}]
    fake_client.stations["A-ONLY"] = [{"stationId": "2", "name": "B"}]
    harvester = _harvester(config, fake_client, ledger, checkpoint)

    harvester.run([Market("USA", "10001"), Market("USA", "10002")])

    assert fake_client.station_calls == ["SHARED", "A-ONLY"]
    assert harvester.stats.lineups_skipped_session == 1
    assert harvester.session.lineups == {"SHARED", "A-ONLY"}


def test_session_restored_from_checkpoint_skips_lineups(config, fake_client, ledger, checkpoint):
    fake_client.add_market("USA", "10001", ["DONE", "TODO"])
    fake_client.stations["TODO"] = [{"stationId": "2", "name": "B"}]
    session = HarvestSession(lineups=["DONE"])

    _harvester(config, fake_client, ledger, checkpoint, session=session).run([Market("USA", "10001")])

    assert fake_client.station_calls == ["TODO"]


def test_failed_market_recorded_and_run_continues(config, fake_client, ledger, checkpoint):
    fake_client.failing_markets.add(("USA", "00000"))
    fake_client.add_market("USA", "90210", ["L1"])
    fake_client.stations["L1"] = [{"stationId": "1", "name": "A"}]
    harvester = _harvester(config, fake_client, ledger, checkpoint)

    harvester.run([Market("USA", "00000"), Market("USA", "90210")])

    assert harvester.stats.markets_failed == 1
    assert harvester.stats.markets_succeeded == 1
    assert checkpoint.failed_markets == ["USA,00000"]
    assert checkpoint.completed_markets == ["USA,90210"]
    assert len(_scratch(config)) == 1


def test_market_without_lineups_is_failed(config, fake_client, ledger, checkpoint):
    harvester = _harvester(config, fake_client, ledger, checkpoint)

    harvester.run([Market("USA", "99999")])

    assert checkpoint.failed_markets == ["USA,99999"]
    ledger.promote_pending()
    assert ledger.stats()["markets_failed"] == 1


def test_failed_lineup_is_recorded_processed(config, fake_client, ledger, checkpoint):
    fake_client.add_market("USA", "10001", ["BROKEN"])
    fake_client.failing_lineups.add("BROKEN")
    harvester = _harvester(config, fake_client, ledger, checkpoint)

    harvester.run([Market("USA", "10001")])

    assert harvester.stats.lineups_failed == 1
    assert "BROKEN" in harvester.session
    assert checkpoint.completed_markets == ["USA,10001"]


def test_zero_station_lineup_is_never_retried_without_force(config, fake_client, ledger, checkpoint):
    # Known limitation: an empty lineup stays cached with zero stations
    fake_client.add_market("USA", "10001", ["EMPTY"])
    _harvester(config, fake_client, ledger, checkpoint).run([Market("USA", "10001")])
    ledger.promote_pending()
    assert ledger.zero_station_lineups() == ["EMPTY"]

    fake_client.stations["EMPTY"] = [{"stationId": "1", "name": "Now populated"}]
    fake_client.station_calls.clear()
    _harvester(config, fake_client, ledger, checkpoint).run([Market("USA", "10001")])

    assert fake_client.station_calls == []


def test_cancellation_stops_before_next_fetch(config, fake_client, ledger, checkpoint):
    token = CancellationToken()
    fake_client.add_market("USA", "10001", ["L1"])
    fake_client.add_market("USA", "10002", ["L2", "L3"])
    for lineup_id in ("L1", "L2", "L3"):
        fake_client.stations[lineup_id] = [{"stationId": lineup_id.lower(), "name": lineup_id}]
    fake_client.on_station_fetch = lambda lineup_id: token.cancel() if lineup_id == "L2" else None
    harvester = _harvester(config, fake_client, ledger, checkpoint, token=token)

    with pytest.raises(HarvestCancelled):
        harvester.run([Market("USA", "10001"), Market("USA", "10002"), Market("USA", "10003")])

    assert fake_client.station_calls == ["L1", "L2"]
    assert ("USA", "10003") not in fake_client.lineup_calls
    assert checkpoint.completed_markets == ["USA,10001"]
    assert checkpoint.session_lineups == ["L1"]


def test_append_after_torn_line_keeps_every_record(config, fake_client, ledger, checkpoint):
    config.raw_scratch_file.parent.mkdir(parents=True, exist_ok=True)
    config.raw_scratch_file.write_text('{"stationId":"1","name":"Earlier"}\n{"stationId":"2')
    fake_client.add_market("USA", "90210", ["L1", "L2"])
    fake_client.stations["L1"] = [{"stationId": "100", "name": "KABC"}]
    fake_client.stations["L2"] = [{"stationId": "200", "name": "KTLA"}]

    _harvester(config, fake_client, ledger, checkpoint).run([Market("USA", "90210")])

    assert [s["stationId"] for s in _scratch(config)] == ["1", "100", "200"]


def test_truncate_torn_tail(tmp_path):
    path = tmp_path / "raw.jsonl"
    assert truncate_torn_tail(path) == 0

    path.write_text('{"a":1}\n')
    assert truncate_torn_tail(path) == 0
    assert path.read_text() == '{"a":1}\n'

    path.write_text('{"a":1}\n{"b"')
    assert truncate_torn_tail(path) == 4
    assert path.read_text() == '{"a":1}\n'

    path.write_text('{"b"')
    assert truncate_torn_tail(path) == 4
    assert path.read_text() == ''
