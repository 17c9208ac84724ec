"""Informational tools available to the assistant in every turn."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from typing import Any

from langchain_core.tools import tool

from .tools import ToolDefinition

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT_SECONDS = 30
_BRIGHTDATA_ENDPOINT = "https://api.brightdata.com/request"
_SERP_MAX_RESULTS = 5
_RESULT_KEYS = ("organic", "organic_results", "results")
_RESULT_FIELD_SIGNALS = ("url", "link", "title", "description", "snippet")
_GEOCODING_ENDPOINT = "https://geocoding-api.open-meteo.com/v1/search"
_FORECAST_ENDPOINT = "https://api.open-meteo.com/v1/forecast"

# WMO weather interpretation codes, grouped.
_WEATHER_CODES: dict[range, str] = {
    range(0, 1): "clear sky",
    range(1, 4): "partly cloudy",
    range(45, 49): "fog",
    range(51, 58): "drizzle",
    range(61, 68): "rain",
    range(71, 78): "snow",
    range(80, 83): "rain showers",
    range(85, 87): "snow showers",
    range(95, 100): "thunderstorm",
}


def _http_json(
    url: str,
    *,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> Any:
    """Issue a GET (or a JSON POST when ``payload`` is given) and decode the JSON reply.

    Raises:
        RuntimeError: If the HTTP request fails or the response is not valid JSON.
    """
    request_headers = {"Accept": "application/json", **(headers or {})}
    data: bytes | None = None
    if payload is not None:
        request_headers["Content-Type"] = "application/json"
        data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        method="POST" if payload is not None else "GET",
        headers=request_headers,
        data=data,
    )
    try:
        with urllib.request.urlopen(request, timeout=_HTTP_TIMEOUT_SECONDS) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        logger.error("HTTP %d from %s", exc.code, url)
        raise RuntimeError(f"HTTP {exc.code} from {url}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        logger.error("URL error reaching %s: %s", url, exc.reason)
        raise RuntimeError(f"Failed to reach {url}: {exc.reason}") from exc
    except json.JSONDecodeError as exc:
        logger.error("Invalid JSON response from %s", url)
        raise RuntimeError(f"Invalid JSON response from {url}") from exc


def _serp_results(payload: Any) -> list[dict[str, Any]]:
    """Breadth-first search for the list of organic result objects in a SERP payload."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuntimeError("Bright Data response was not valid JSON") from exc
    queue: deque[Any] = deque([payload])
    while queue:
        node = queue.popleft()
        if isinstance(node, dict):
            for key in _RESULT_KEYS:
                if isinstance(node.get(key), list):
                    return [item for item in node[key] if isinstance(item, dict)]
            queue.extend(value for value in node.values() if isinstance(value, (dict, list)))
        elif isinstance(node, list):
            entries = [item for item in node if isinstance(item, dict)]
            if any(signal in entry for entry in entries[:5] for signal in _RESULT_FIELD_SIGNALS):
                return entries
            queue.extend(item for item in node if isinstance(item, (dict, list)))
    return []


def _pick(entry: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


@tool("web_search")
def web_search(query: str) -> str:
    """Search the web and return up to five results as JSON with url, title and snippet.

    Use this for current information, documentation, or assets (for example image
    URLs) the user asks about.

    Args:
        query: The search query string.
    """
    api_key = os.getenv("BRIGHTDATA_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("web_search requires BRIGHTDATA_API_KEY")
    zone = os.getenv("BRIGHTDATA_SERP_ZONE", "").strip()
    if not zone:
        raise RuntimeError("web_search requires BRIGHTDATA_SERP_ZONE")
    country = os.getenv("BRIGHTDATA_SERP_COUNTRY", "us").strip() or "us"
    logger.debug("web_search query=%r zone=%s country=%s", query, zone, country)
    raw = _http_json(
        _BRIGHTDATA_ENDPOINT,
        payload={
            "zone": zone,
            "url": f"https://www.google.com/search?{urllib.parse.urlencode({'q': query})}",
            "format": "json",
            "country": country,
            "method": "GET",
        },
        headers={"Authorization": f"Bearer {api_key}"},
    )
    results: list[dict[str, str]] = []
    for entry in _serp_results(raw):
        compact = {
            "url": _pick(entry, "url", "link", "displayed_link"),
            "title": _pick(entry, "title", "name", "headline"),
            "snippet": _pick(entry, "snippet", "description", "text", "body"),
        }
        if any(compact.values()):
            results.append(compact)
        if len(results) >= _SERP_MAX_RESULTS:
            break
    logger.debug("web_search returned %d results for query=%r", len(results), query)
    return json.dumps({"query": query, "results": results}, indent=2)


def describe_weather_code(code: int | None) -> str:
    if code is None:
        return "unknown"
    for codes, label in _WEATHER_CODES.items():
        if code in codes:
            return label
    return "unknown"


@tool("get_weather")
def get_weather(location: str) -> str:
    """Look up the current weather for a city or place name.

    Args:
        location: City or place name, e.g. "Lisbon" or "San Francisco".
    """
    query = urllib.parse.urlencode({"name": location, "count": 1, "format": "json"})
    geocoded = _http_json(f"{_GEOCODING_ENDPOINT}?{query}")
    matches = geocoded.get("results") if isinstance(geocoded, dict) else None
    if not matches:
        return json.dumps({"location": location, "error": "location not found"})
    place = matches[0]
    forecast_query = urllib.parse.urlencode(
        {
            "latitude": place["latitude"],
            "longitude": place["longitude"],
            "current": "temperature_2m,weather_code,wind_speed_10m",
        }
    )
    forecast = _http_json(f"{_FORECAST_ENDPOINT}?{forecast_query}")
    current = forecast.get("current", {}) if isinstance(forecast, dict) else {}
    return json.dumps(
        {
            "location": ", ".join(part for part in (place.get("name"), place.get("country")) if part),
            "temperature_c": current.get("temperature_2m"),
            "wind_speed_kmh": current.get("wind_speed_10m"),
            "conditions": describe_weather_code(current.get("weather_code")),
        }
    )


def informational_tools() -> list[ToolDefinition[Any, str]]:
    """Tool definitions for the web-search and lookup capabilities."""
    return [ToolDefinition(tool=web_search), ToolDefinition(tool=get_weather)]
