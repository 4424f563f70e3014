import math
from datetime import date, datetime
from typing import Dict, Optional, Tuple

import requests

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
KAKAO_ADDRESS_URL = "https://dapi.kakao.com/v2/local/search/address.json"
KAKAO_KEYWORD_URL = "https://dapi.kakao.com/v2/local/search/keyword.json"
FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
ARCHIVE_URL = "https://archive-api.open-meteo.com/v1/archive"
USER_AGENT = "MatchArchive/1.0"
FORECAST_DAYS = 16
HOURLY_FIELDS = "temperature_2m,relative_humidity_2m,precipitation,snowfall,weather_code,wind_speed_10m"

WEATHER_CODES: Dict[int, Tuple[str, str]] = {
    0: ("Clear", "sun"),
    1: ("Mostly clear", "sun"),
    2: ("Partly cloudy", "cloud-sun"),
    3: ("Overcast", "cloud"),
    45: ("Fog", "cloud-fog"),
    48: ("Dense fog", "cloud-fog"),
    51: ("Light drizzle", "cloud-drizzle"),
    53: ("Drizzle", "cloud-drizzle"),
    55: ("Heavy drizzle", "cloud-drizzle"),
    61: ("Light rain", "cloud-rain"),
    63: ("Rain", "cloud-rain"),
    65: ("Heavy rain", "cloud-rain"),
    66: ("Light freezing rain", "cloud-rain"),
    67: ("Freezing rain", "cloud-rain"),
    71: ("Light snow", "cloud-snow"),
    73: ("Snow", "cloud-snow"),
    75: ("Heavy snow", "cloud-snow"),
    77: ("Snow grains", "cloud-snow"),
    80: ("Showers", "cloud-rain"),
    81: ("Showers", "cloud-rain"),
    82: ("Heavy showers", "cloud-rain"),
    85: ("Snow showers", "cloud-snow"),
    86: ("Heavy snow showers", "cloud-snow"),
    95: ("Thunderstorm", "cloud-lightning"),
    96: ("Thunderstorm with hail", "cloud-lightning"),
    99: ("Severe thunderstorm with hail", "cloud-lightning"),
}


def weather_info(code: int) -> Tuple[str, str]:
    return WEATHER_CODES.get(code, ("Unknown", "cloud"))


def _round_half_up(value) -> int:
    return int(math.floor(value + 0.5))


def _get_json(url: str, params=None, headers=None, timeout: int = 10):
    try:
        response = requests.get(url, params=params, headers=headers, timeout=timeout)
    except requests.RequestException:
        return None
    if response.status_code != 200:
        return None
    try:
        return response.json()
    except ValueError:
        return None


def _first_coordinates(documents, lat_key, lng_key) -> Optional[Tuple[float, float]]:
    if not documents or not isinstance(documents, list):
        return None
    first = documents[0]
    try:
        return float(first[lat_key]), float(first[lng_key])
    except (KeyError, TypeError, ValueError):
        return None


def geocode_with_kakao(address: str, api_key: str) -> Optional[Tuple[float, float]]:
    headers = {"Authorization": f"KakaoAK {api_key}"}
    for url in (KAKAO_ADDRESS_URL, KAKAO_KEYWORD_URL):
        payload = _get_json(url, params={"query": address}, headers=headers)
        if isinstance(payload, dict):
            found = _first_coordinates(payload.get("documents"), "y", "x")
            if found:
                return found
    return None


def geocode_with_nominatim(address: str, url: str = NOMINATIM_URL) -> Optional[Tuple[float, float]]:
    payload = _get_json(
        url,
        params={"format": "json", "q": address, "limit": 1},
        headers={"User-Agent": USER_AGENT},
    )
    return _first_coordinates(payload, "lat", "lon")


def geocode_address(address: str, kakao_api_key: Optional[str] = None,
                    nominatim_url: str = NOMINATIM_URL) -> Optional[Tuple[float, float]]:
    """Return ``(latitude, longitude)`` for an address, or None."""
    if not address or not address.strip():
        return None
    address = address.strip()
    if kakao_api_key:
        found = geocode_with_kakao(address, kakao_api_key)
        if found:
            return found
    return geocode_with_nominatim(address, nominatim_url)


def get_weather(latitude: float, longitude: float, when: datetime, today: Optional[date] = None,
                forecast_url: str = FORECAST_URL, archive_url: str = ARCHIVE_URL,
                timezone: str = "Asia/Seoul") -> Optional[dict]:
    """Hourly weather at the match time.

    Past dates come from the archive API, dates up to 16 days ahead from the
    forecast API. Anything further out has no data.
    """
    today = today or date.today()
    days_ahead = (when.date() - today).days
    if days_ahead > FORECAST_DAYS:
        return None
    historical = days_ahead < 0
    day = when.date().isoformat()
    params = {
        "latitude": latitude,
        "longitude": longitude,
        "hourly": HOURLY_FIELDS,
        "timezone": timezone,
    }
    if historical:
        params["start_date"] = day
        params["end_date"] = day
    payload = _get_json(archive_url if historical else forecast_url, params=params)
    if not isinstance(payload, dict):
        return None
    hourly = payload.get("hourly") or {}
    times = hourly.get("time") or []
    if not times:
        return None
    hour = when.hour
    if historical:
        index = hour
    else:
        target = f"{day}T{hour:02d}:00"
        if target in times:
            index = times.index(target)
        else:
            index = next((i for i, t in enumerate(times) if t.startswith(day)), -1)
            if index != -1:
                index = min(index + hour, len(times) - 1)
    if index < 0 or index >= len(times):
        return None

    def value(key, default=0):
        series = hourly.get(key) or []
        if index < len(series) and series[index] is not None:
            return series[index]
        return default

    code = int(value("weather_code"))
    description, icon = weather_info(code)
    return {
        "temperature": _round_half_up(value("temperature_2m")),
        "weather_code": code,
        "precipitation": value("precipitation"),
        "snowfall": value("snowfall"),
        "wind_speed": _round_half_up(value("wind_speed_10m")),
        "humidity": value("relative_humidity_2m"),
        "description": description,
        "icon": icon,
    }
