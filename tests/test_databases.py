import json
import os

import pytest

from stationcache.checkpoint import CheckpointManager
from stationcache.databases import BaseDatabase, CombinedCache, UserDatabase, read_markets_csv
from stationcache.exceptions import DataIntegrityError, ResourceError
from stationcache.finalizer import CacheFinalizer
from stationcache.ledger import LedgerStore
from stationcache.models import Lineup, Market, Phase, PhaseStatus


@pytest.fixture
def ledger(config):
    store = LedgerStore(config.ledger_file)
    yield store
    store.close()


@pytest.fixture
def user_db(config):
    return UserDatabase(config.user_stations_file, config.backup_dir, max_backups=3)


@pytest.fixture
def base(config):
    return BaseDatabase(config.base_stations_file, config.base_markets_file)


@pytest.fixture
def combined(config, base, user_db, ledger):
    return CombinedCache(config.combined_stations_file, base, user_db, ledger, config.backup_dir)


def test_legacy_user_database_names_path_and_remedy(config, user_db, write_json):
    write_json(config.user_stations_file, [{"stationId": "1", "name": "Old", "country": "USA"}])

    with pytest.raises(DataIntegrityError) as excinfo:
        user_db.load()

    message = str(excinfo.value)
    assert str(config.user_stations_file) in message
    assert "1 legacy-format records found" in message
    assert "build --force" in message


def test_backups_are_pruned(config, user_db, make_station):
    for i in range(5):
        user_db.write([make_station(str(i), name=f"S{i}")])

    assert len(user_db.backups()) == 3


def test_failed_write_restores_previous_file(config, user_db, make_station, monkeypatch):
    user_db.write([make_station("1", name="Keep me")])

    def broken_write(path, data, indent=None):
        path.write_text("[{\"stationId\": ")
        raise ResourceError("disk full")

    monkeypatch.setattr("stationcache.databases.write_json_atomic", broken_write)

    with pytest.raises(ResourceError):
        user_db.write([make_station("2", name="Lost")])

    assert [s["name"] for s in user_db.load()] == ["Keep me"]


def test_base_lineup_index(base, write_json, make_station):
    station = make_station("1", name="A", source="base", lineup_id="L1")
    station["lineupTracing"].append(dict(station["lineupTracing"][0], lineupId="L2"))
    write_json(base.stations_path, [station])

    assert base.lineup_ids() == {"L1", "L2"}
    assert base.contains_lineup("L2")
    assert not base.contains_lineup("L3")


def test_read_markets_csv_skips_header_blank_and_duplicates(tmp_path):
    path = tmp_path / "markets.csv"
    path.write_text("country,zip\nUSA,10001\n\nCAN, M5V \nUSA,10001\nbad\n")

    assert read_markets_csv(path) == [Market("USA", "10001"), Market("CAN", "M5V")]


def test_effective_stations_falls_back_to_single_source(config, combined, write_json, make_station):
    assert combined.effective_stations() == []

    write_json(config.base_stations_file, [make_station("1", name="Base", source="base")])
    assert [s["stationId"] for s in combined.effective_stations()] == ["1"]
    assert not config.combined_stations_file.exists()


def test_combined_rebuilt_lazily_and_invalidated(config, combined, write_json, make_station):
    write_json(config.base_stations_file, [make_station("1", name="A", source="base")])
    write_json(config.user_stations_file, [make_station("1", name="A", countries=["CAN"]),
                                           make_station("2", name="B")])

    stations = combined.effective_stations()

    assert {s["stationId"]: s["source"] for s in stations} == {"1": "combined", "2": "user"}
    assert combined.is_fresh()

    combined.invalidate()
    assert not combined.is_fresh()
    assert len(combined.effective_stations()) == 2
    assert combined.is_fresh()


def test_combined_stale_after_user_file_changes(config, combined, write_json, make_station):
    write_json(config.base_stations_file, [make_station("1", name="A", source="base")])
    write_json(config.user_stations_file, [make_station("2", name="B")])
    combined.rebuild()

    write_json(config.user_stations_file, [make_station("2", name="B"), make_station("3", name="C")])
    future = config.combined_stations_file.stat().st_mtime + 10
    os.utime(config.user_stations_file, (future, future))

    assert not combined.is_fresh()
    assert len(combined.effective_stations()) == 3


def test_force_rebuild_backs_up_combined(config, combined, write_json, make_station):
    write_json(config.base_stations_file, [make_station("1", name="A", source="base")])
    write_json(config.user_stations_file, [make_station("2", name="B")])
    combined.rebuild()

    combined.force_rebuild()

    assert len(list(config.backup_dir.glob("combined_stations.json.backup.*"))) == 1


# Finalizer

def _finalizer(config, user_db, combined, ledger):
    checkpoint = CheckpointManager(config.checkpoint_file("user_caching"))
    checkpoint.init_operation(1, force_refresh=False, markets_file=config.markets_file)
    return CacheFinalizer(user_db, combined, ledger, checkpoint), checkpoint


def test_finalize_merges_with_existing(config, user_db, combined, ledger, write_json, make_station):
    user_db.write([make_station("1", name="A"), make_station("2", name="B")])
    batch = write_json(config.scratch_file, [make_station("2", name="B", countries=["CAN"]),
                                             make_station("3", name="C")])
    finalizer, checkpoint = _finalizer(config, user_db, combined, ledger)

    result = finalizer.finalize(batch)

    stations = {s["stationId"]: s for s in user_db.load()}
    assert sorted(stations) == ["1", "2", "3"]
    assert stations["2"]["availableIn"] == ["CAN", "USA"]
    assert result.added_count == 1
    assert result.user_db_total == 3
    assert result.batch_count == 2
    assert checkpoint.phase_status(Phase.CACHE_FINALIZATION) == PhaseStatus.COMPLETED


def test_finalize_twice_never_duplicates(config, user_db, combined, ledger, write_json, make_station):
    batch = write_json(config.scratch_file, [make_station("1", name="A"), make_station("2", name="B")])
    finalizer, _ = _finalizer(config, user_db, combined, ledger)

    finalizer.finalize(batch)
    finalizer.finalize(batch)

    assert sorted(s["stationId"] for s in user_db.load()) == ["1", "2"]


def test_finalize_promotes_pending_and_rebuilds_combined(config, user_db, combined, ledger,
                                                            write_json, make_station):
    write_json(config.base_stations_file, [make_station("9", name="Base", source="base")])
    user_db.write([make_station("1", name="A")])
    combined.rebuild()
    ledger.record_market_processed(Market("USA", "10001"), 1)
    ledger.record_lineup_processed(Lineup("L1"), Market("USA", "10001"), 1)
    batch = write_json(config.scratch_file, [make_station("2", name="B", lineup_id="L1")])
    finalizer, _ = _finalizer(config, user_db, combined, ledger)

    finalizer.finalize(batch)

    assert ledger.is_market_cached(Market("USA", "10001"))
    assert ledger.is_lineup_cached("L1")
    assert ledger.pending_counts() == (0, 0)
    assert ledger.get_metadata("last_harvest")
    assert combined.is_fresh()
    assert sorted(s["stationId"] for s in json.loads(config.combined_stations_file.read_text())) == ["1", "2", "9"]


def test_empty_batch_leaves_user_database_alone(config, user_db, combined, ledger, write_json, make_station):
    user_db.write([make_station("1", name="A")])
    before = len(user_db.backups())
    batch = write_json(config.scratch_file, [])
    finalizer, _ = _finalizer(config, user_db, combined, ledger)

    result = finalizer.finalize(batch)

    assert result.added_count == 0
    assert result.user_db_total == 1
    assert len(user_db.backups()) == before


def test_finalize_rejects_legacy_batch(config, user_db, combined, ledger, write_json):
    batch = write_json(config.scratch_file, [{"stationId": "1", "country": "USA"}])
    finalizer, _ = _finalizer(config, user_db, combined, ledger)

    with pytest.raises(DataIntegrityError):
        finalizer.finalize(batch)

    assert not config.user_stations_file.exists()
    assert json.loads(batch.read_text()) == [{"stationId": "1", "country": "USA"}]
