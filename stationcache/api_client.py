"""
Channels DVR lineup/station API client.

Every call checks credentials first and turns transport failures into
TransientNetworkError and unusable bodies into MalformedResponseError, so
the harvester can record the market or lineup as failed and move on.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .auth import AuthProvider
from .exceptions import AuthenticationError, MalformedResponseError, TransientNetworkError
from .models import Lineup

logger = logging.getLogger(__name__)

# Channels DVR API endpoint
CHANNELS_DVR_BASE_URL = "https://api.getchannels.com"


def normalize_postal_code(country: str, postal_code: str) -> str:
    """Normalize postal codes to the form the lineup endpoint expects"""
    country = country.upper()
    postal_code = postal_code.strip()

    if country == 'USA':
        digits_only = ''.join(c for c in postal_code if c.isdigit())
        return digits_only[:5] if len(digits_only) >= 5 else digits_only.zfill(5)

    if country == 'CAN':
        cleaned = postal_code.replace(' ', '').replace('-', '').upper()
        return cleaned[:3]

    if country == 'GBR':
        # Outward code only
        cleaned = ' '.join(postal_code.upper().split())
        if ' ' in cleaned:
            return cleaned.split()[0]
        # Inward code is always digit + two letters
        if len(cleaned) >= 5 and cleaned[-3].isdigit():
            return cleaned[:-3]
        return cleaned

    return postal_code


class ChannelsApiClient:
    """Fetches lineups and stations - one request at a time"""

    def __init__(self, base_url: Optional[str] = None, auth: Optional[AuthProvider] = None,
                 timeout: int = 30, session: Optional[requests.Session] = None):
        self.base_url = (base_url or CHANNELS_DVR_BASE_URL).rstrip('/')
        self.auth = auth or AuthProvider()
        self.timeout = timeout
        self.session = session or requests.Session()

    def _get_json(self, path: str) -> Any:
        if not self.auth.ensure_authenticated():
            raise AuthenticationError("Authentication failed; fix credentials and resume the harvest")

        headers = {}
        token = self.auth.get_access_token()
        if token:
            headers['Authorization'] = f"Bearer {token}"

        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientNetworkError(f"Request to {url} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(f"HTTP {response.status_code} from {url}")
        if response.status_code != 200:
            raise TransientNetworkError(f"HTTP {response.status_code} from {url}")

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid JSON from {url}") from e

    def list_lineups(self, country: str, postal_code: str) -> List[Lineup]:
        """Lineups available in a market; an empty list means none were found"""
        postal = normalize_postal_code(country, postal_code)
        data = self._get_json(f"/tms/lineups/{quote(country.upper())}/{quote(postal)}")
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponseError(f"Expected a lineup list for {country}/{postal_code}")

        lineups = []
        for item in data:
            lineup = Lineup.from_api(item) if isinstance(item, dict) else None
            if lineup is not None:
                lineups.append(lineup)
        return lineups

    def list_stations(self, lineup_id: str) -> List[Dict[str, Any]]:
        """Raw station records carried by a lineup"""
        data = self._get_json(f"/dvr/guide/stations/{quote(lineup_id)}")
        if data is None:
            return []
        if not isinstance(data, list):
            raise MalformedResponseError(f"Expected a station list for lineup {lineup_id}")
        return [item for item in data if isinstance(item, dict) and item.get('stationId')]

    def lookup_station_by_call_sign(self, call_sign: str,
                                    station_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Look up station details by call sign.

        When `station_id` is given only the exact match is returned; otherwise
        the first result is.
        """
        if not call_sign:
            return None
        data = self._get_json(f"/tms/stations/{quote(call_sign)}")

        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list) or not data:
            return None

        for station in data:
            if not isinstance(station, dict):
                continue
            if station_id is None or str(station.get('stationId')) == str(station_id):
                return station
        logger.debug(f"No matching station_id in {len(data)} results for {call_sign}")
        return None
