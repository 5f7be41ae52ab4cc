import asyncio
import logging
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx

from .config import (
    DEFAULT_CENTER,
    GEOCODER_COUNTRY,
    GEOCODER_LIMIT,
    MAPBOX_ACCESS_TOKEN,
    MAPBOX_BASE_URL,
    SEARCH_BBOX,
    SEARCH_DEBOUNCE_SECONDS,
    SEARCH_MIN_LENGTH,
    UNKNOWN_LOCATION,
)
from .errors import GeocodeUnavailable
from .geo import LatLng, format_duration, meters_to_km
from .schemas import RouteResult, Suggestion

logger = logging.getLogger(__name__)

SEARCH_TYPES = "place,locality,neighborhood,address,poi,region,district"
REVERSE_TYPES = "address,poi,place,locality,neighborhood"

CONNECTIVITY_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.NetworkError)


class GeocodeClient:
    """Forward search, reverse geocoding and driving directions.

    Provider failures never reach the caller: search degrades to an empty
    list, reverse geocoding to ``UNKNOWN_LOCATION`` and routing to ``None``.
    ``search_with_status`` also reports whether that particular search could
    not reach the provider at all.
    """

    def __init__(
        self,
        access_token: str = MAPBOX_ACCESS_TOKEN,
        base_url: str = MAPBOX_BASE_URL,
        *,
        proximity: tuple[float, float] = DEFAULT_CENTER,
        country: str = GEOCODER_COUNTRY,
        limit: int = GEOCODER_LIMIT,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.proximity = proximity
        self.country = country
        self.limit = limit
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.access_token:
            raise GeocodeUnavailable("Mapbox access token not available")
        params = {**params, "access_token": self.access_token}
        try:
            response = await self._http.get(path, params=params)
            response.raise_for_status()
            payload = response.json()
        except CONNECTIVITY_ERRORS as exc:
            raise GeocodeUnavailable(f"Provider unreachable: {exc}", offline=True) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise GeocodeUnavailable(f"Provider error on {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise GeocodeUnavailable(f"Unexpected {type(payload).__name__} body from {path}")
        return payload

    async def search(self, query: str) -> list[Suggestion]:
        suggestions, _ = await self.search_with_status(query)
        return suggestions

    async def search_with_status(self, query: str) -> tuple[list[Suggestion], bool]:
        """Suggestions plus whether the provider was unreachable for this query."""
        query = (query or "").strip()
        if len(query) < SEARCH_MIN_LENGTH:
            return [], False
        lng, lat = self.proximity
        params = {
            "proximity": f"{lng},{lat}",
            "country": self.country,
            "bbox": ",".join(str(v) for v in SEARCH_BBOX),
            "types": SEARCH_TYPES,
            "language": "en",
            "autocomplete": "true",
            "fuzzyMatch": "true",
            "limit": self.limit,
        }
        try:
            payload = await self._request(f"/geocoding/v5/mapbox.places/{quote(query, safe='')}.json", params)
        except GeocodeUnavailable as exc:
            logger.warning("Search for %r failed: %s", query, exc)
            return [], exc.offline

        suggestions = []
        for feature in (payload.get("features") or [])[: self.limit]:
            center = feature.get("center") or (feature.get("geometry") or {}).get("coordinates")
            if not center or len(center) < 2:
                continue
            suggestions.append(
                Suggestion(
                    label=feature.get("place_name") or feature.get("text") or query,
                    text=feature.get("text") or "",
                    longitude=center[0],
                    latitude=center[1],
                )
            )
        return suggestions, False

    async def reverse_geocode(self, lat: float, lng: float) -> str:
        try:
            payload = await self._request(
                f"/geocoding/v5/mapbox.places/{lng},{lat}.json", {"types": REVERSE_TYPES}
            )
        except GeocodeUnavailable as exc:
            logger.warning("Reverse geocoding (%s, %s) failed: %s", lat, lng, exc)
            return UNKNOWN_LOCATION

        features = payload.get("features") or []
        if not features:
            return UNKNOWN_LOCATION
        # Most specific feature comes first
        feature = features[0]
        return feature.get("place_name") or feature.get("text") or UNKNOWN_LOCATION

    async def compute_route(self, origin: LatLng, destination: LatLng) -> Optional[RouteResult]:
        path = (
            f"/directions/v5/mapbox/driving/"
            f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
        )
        params = {
            "geometries": "geojson",
            "overview": "full",
            "steps": "true",
            "annotations": "duration,distance",
        }
        try:
            payload = await self._request(path, params)
        except GeocodeUnavailable as exc:
            logger.warning("Route calculation failed: %s", exc)
            return None

        routes = payload.get("routes") or []
        if not routes:
            logger.info("No routes found between %s and %s", origin, destination)
            return None
        route = routes[0]
        geometry = route.get("geometry") or {}
        if not geometry.get("coordinates"):
            return None
        total_minutes = round((route.get("duration") or 0) / 60)
        return RouteResult(
            geometry=geometry,
            duration_label=format_duration(total_minutes),
            total_minutes=total_minutes,
            distance_km=meters_to_km(route.get("distance") or 0),
        )


class SuggestionSearch:
    """Search-as-you-type over a GeocodeClient.

    Keystrokes are debounced; a response is dropped when a later request
    has already been applied.
    """

    def __init__(
        self,
        client: GeocodeClient,
        on_results: Callable[[list[Suggestion], str], None],
        delay: float = SEARCH_DEBOUNCE_SECONDS,
    ):
        self._client = client
        self._on_results = on_results
        self._delay = delay
        self._timer: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._issued = 0
        self._applied = 0
        self.suggestions: list[Suggestion] = []
        self.status = "closed"

    def update(self, query: str) -> Optional[asyncio.Task]:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        if len((query or "").strip()) < SEARCH_MIN_LENGTH:
            # Invalidate anything still in flight
            self._issued += 1
            self._applied = self._issued
            self._apply([], "closed")
            return None
        self._timer = asyncio.get_running_loop().create_task(self._debounced(query))
        return self._timer

    async def _debounced(self, query: str) -> None:
        await asyncio.sleep(self._delay)
        self._issued += 1
        task = asyncio.get_running_loop().create_task(self._fetch(query, self._issued))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        await asyncio.shield(task)

    async def _fetch(self, query: str, seq: int) -> None:
        suggestions, offline = await self._client.search_with_status(query)
        if seq < self._applied:
            logger.debug("Discarding stale suggestions for %r", query)
            return
        self._applied = seq
        if suggestions:
            self._apply(suggestions, "results")
        else:
            self._apply([], "offline" if offline else "empty")

    def _apply(self, suggestions: list[Suggestion], status: str) -> None:
        self.suggestions = suggestions
        self.status = status
        self._on_results(suggestions, status)

    async def drain(self) -> None:
        if self._timer is not None:
            # A cancelled timer comes back as a result, not an exception
            await asyncio.gather(self._timer, return_exceptions=True)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        for task in list(self._inflight):
            task.cancel()
