"""Station search, reverse lookup and database breakdown"""

import logging
from typing import Any, Dict, List, Optional

from .databases import BaseDatabase, CombinedCache, UserDatabase
from .stations import Station, station_countries

logger = logging.getLogger(__name__)

# Treated as equivalent when filtering by quality
UHD_QUALITIES = {'UHDTV', '4K', 'UHDTV/4K'}


def video_type(station: Station) -> str:
    quality = station.get('videoQuality') or {}
    if isinstance(quality, dict):
        return quality.get('videoType') or ''
    return ''


def _matches_quality(station: Station, quality: str) -> bool:
    value = video_type(station).upper()
    wanted = quality.upper()
    if wanted in UHD_QUALITIES:
        return value in UHD_QUALITIES
    return value == wanted


def _rank(station: Station, query: str) -> int:
    name = (station.get('name') or '').lower()
    call_sign = (station.get('callSign') or '').lower()
    if name == query:
        return 1
    if call_sign == query:
        return 2
    if name.startswith(query):
        return 3
    return 4


def search_stations(stations: List[Station], query: str, country: Optional[str] = None,
                    quality: Optional[str] = None, page: int = 1, per_page: int = 50) -> Dict[str, Any]:
    """
    Case-insensitive substring search on name, call sign or exact stationId.

    Exact name and call-sign matches sort first. `per_page` of 0 returns
    every match on a single page.
    """
    term = query.strip().lower()
    country = (country or '').upper()

    matches = []
    for station in stations:
        name = (station.get('name') or '').lower()
        call_sign = (station.get('callSign') or '').lower()
        if term and term not in name and term not in call_sign and term != str(station.get('stationId')):
            continue
        if country and country != 'ALL' and country not in (station.get('availableIn') or []):
            continue
        if quality and not _matches_quality(station, quality):
            continue
        matches.append(station)

    matches.sort(key=lambda s: (_rank(s, term), s.get('name') or ''))

    total = len(matches)
    page = max(1, page)
    if per_page > 0:
        total_pages = max(1, (total + per_page - 1) // per_page)
        results = matches[(page - 1) * per_page:page * per_page]
    else:
        total_pages = 1
        results = matches

    return {
        'query': query,
        'count': len(results),
        'total': total,
        'page': page,
        'total_pages': total_pages,
        'results': results,
    }


def find_station(stations: List[Station], station_id: str) -> Optional[Station]:
    """Reverse lookup by stationId"""
    for station in stations:
        if str(station.get('stationId')) == str(station_id):
            return station
    return None


def database_breakdown(base: BaseDatabase, user: UserDatabase, combined: CombinedCache) -> Dict[str, Any]:
    base_stations = base.load() if base.exists() else []
    user_stations = user.load() if user.exists() else []
    effective = combined.effective_stations()

    return {
        'base_stations': len(base_stations),
        'user_stations': len(user_stations),
        'total_stations': len(effective),
        'combined_fresh': combined.is_fresh(),
        'countries': station_countries(effective),
        'multi_country_stations': sum(1 for s in effective if s.get('multiCountry')),
        'stations_with_logos': sum(1 for s in effective if (s.get('preferredImage') or {}).get('uri')),
    }
