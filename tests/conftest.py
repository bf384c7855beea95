import json
from pathlib import Path

import pytest

from stationcache.auth import AuthProvider
from stationcache.config import BuilderConfig
from stationcache.exceptions import TransientNetworkError
from stationcache.models import Lineup


class FakeChannelsClient:
    """In-memory stand-in for ChannelsApiClient that records every call"""

    def __init__(self):
        self.auth = AuthProvider()
        self.lineups = {}
        self.stations = {}
        self.lookups = {}
        self.failing_markets = set()
        self.failing_lineups = set()
        self.lineup_calls = []
        self.station_calls = []
        self.lookup_calls = []
        self.on_station_fetch = None

    def add_market(self, country, postal_code, lineup_ids):
        self.lineups[(country, postal_code)] = [
            Lineup(lineup_id=lineup_id, name=f"{lineup_id} name", location="Somewhere", type="CABLE")
            for lineup_id in lineup_ids
        ]

    def list_lineups(self, country, postal_code):
        self.lineup_calls.append((country, postal_code))
        if (country, postal_code) in self.failing_markets:
            raise TransientNetworkError(f"HTTP 500 for {country}/{postal_code}")
        return list(self.lineups.get((country, postal_code), []))

    def list_stations(self, lineup_id):
        self.station_calls.append(lineup_id)
        if self.on_station_fetch is not None:
            self.on_station_fetch(lineup_id)
        if lineup_id in self.failing_lineups:
            raise TransientNetworkError(f"HTTP 502 for {lineup_id}")
        return [dict(s) for s in self.stations.get(lineup_id, [])]

    def lookup_station_by_call_sign(self, call_sign, station_id=None):
        self.lookup_calls.append(call_sign)
        return self.lookups.get(call_sign)


@pytest.fixture
def fake_client():
    return FakeChannelsClient()


@pytest.fixture
def config(tmp_path):
    cfg = BuilderConfig(
        cache_dir=tmp_path / "cache",
        markets_file=tmp_path / "markets.csv",
        channels_url="http://dvr.local:8089",
        enhancement_delay=0.0,
    )
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def make_station():
    def _make(station_id, name="", countries=("USA",), source="user", lineup_id="USA-LINEUP-1",
              call_sign=None, **extra):
        station = {
            "stationId": station_id,
            "name": name,
            "callSign": call_sign if call_sign is not None else f"K{station_id}",
            "source": source,
            "availableIn": list(countries),
            "multiCountry": len(set(countries)) > 1,
            "lineupTracing": [{
                "lineupId": lineup_id,
                "lineupName": f"{lineup_id} name",
                "country": countries[0] if countries else "",
                "location": "Somewhere",
                "type": "CABLE",
                "discoveredOrder": 1,
                "isPrimary": True,
            }],
        }
        station.update(extra)
        return station
    return _make


@pytest.fixture
def write_json():
    def _write(path, data):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data))
        return path
    return _write


@pytest.fixture
def write_markets():
    def _write(path, markets, header=True):
        lines = ["country,zip"] if header else []
        lines.extend(f"{country},{postal}" for country, postal in markets)
        Path(path).write_text("\n".join(lines) + "\n")
        return path
    return _write
