import httpx
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .config import settings
from .errors import (
    PolygonNotFoundError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
)
from .logging_config import get_logger
from .models import Observation, SatelliteImage

logger = get_logger(__name__)

POLYGON_NAME_PREFIX = "fieldsync-"


def polygon_name(field_id: str) -> str:
    """Deterministic provider-side name, used to find a polygon we already registered"""
    return f"{POLYGON_NAME_PREFIX}{field_id}"


def _unix(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


class AgroApiClient:
    """Client for the OpenWeatherMap Agro API (polygons, imagery search, NDVI history)"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout
        # Injected by tests (httpx.MockTransport)
        self.transport = transport

    @property
    def base_url(self) -> str:
        return (self._base_url or settings.AGRO_API_BASE).rstrip("/")

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or settings.AGRO_API_KEY

    @property
    def timeout(self) -> float:
        return self._timeout or settings.PROVIDER_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        if self._api_key:
            return True
        return settings.agro_configured

    async def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        allow_404: bool = False,
        **kwargs,
    ):
        """
        Make a request to the Agro API

        Args:
            endpoint: API endpoint (e.g., '/polygons')
            method: HTTP method
            allow_404: Return None instead of raising when the resource is absent
            **kwargs: Additional arguments for httpx request

        Returns:
            Decoded JSON body, or None for empty / allowed-404 responses
        """
        if not self.configured:
            raise ProviderNotConfiguredError()

        params = {"appid": self.api_key, **kwargs.pop("params", {})}
        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, params=params, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Agro API timeout", extra={"extra": {"endpoint": endpoint, "method": method}})
            raise ProviderUnavailableError(f"Agro API timed out: {endpoint}") from e
        except httpx.TransportError as e:
            logger.warning(
                "Agro API unreachable",
                extra={"extra": {"endpoint": endpoint, "method": method, "error": str(e)}},
            )
            raise ProviderUnavailableError(f"Agro API unreachable: {e}") from e

        if response.status_code == 404:
            if allow_404:
                return None
            raise PolygonNotFoundError(f"Agro API resource not found: {endpoint}", 404)
        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "Agro API unavailable",
                extra={"extra": {"endpoint": endpoint, "status_code": response.status_code}},
            )
            raise ProviderUnavailableError(f"Agro API returned {response.status_code}")
        if response.status_code == 401:
            raise ProviderError("Agro API rejected the API key", 401)
        if response.status_code >= 400:
            raise ProviderError(
                f"Agro API request failed: {response.status_code} - {response.text}",
                response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"Agro API returned invalid JSON for {endpoint}") from e

    # ============================================
    # Polygons
    # ============================================

    async def list_polygons(self) -> List[Dict]:
        response = await self._make_request("/polygons")
        return response or []

    async def find_polygon_by_name(self, name: str) -> Optional[Dict]:
        for polygon in await self.list_polygons():
            if polygon.get("name") == name:
                return polygon
        return None

    async def get_polygon(self, polygon_id: str) -> Dict:
        """Raises PolygonNotFoundError when the provider no longer knows the id"""
        return await self._make_request(f"/polygons/{polygon_id}")

    async def check_capacity(self, area_hectares: Optional[float] = None):
        """
        Refuse to register beyond the free-tier allowance (polygon count and total area)

        Raises:
            ProviderError: when the new polygon would not fit
        """
        polygons = await self.list_polygons()
        if len(polygons) >= settings.PROVIDER_MAX_POLYGONS:
            raise ProviderError(f"Polygon limit reached ({settings.PROVIDER_MAX_POLYGONS} max)")

        used = sum(float(p.get("area") or 0) for p in polygons)
        requested = area_hectares or 0
        if used + requested > settings.PROVIDER_MAX_AREA_HA:
            raise ProviderError(
                f"Area limit exceeded: {used + requested:.1f} ha of {settings.PROVIDER_MAX_AREA_HA:.0f} ha"
            )

    async def create_polygon(self, name: str, geometry: Dict) -> Dict:
        payload = {
            "name": name,
            "geo_json": {
                "type": "Feature",
                "properties": {"name": name},
                "geometry": geometry,
            },
        }
        response = await self._make_request("/polygons", method="POST", json=payload)
        if not response or "id" not in response:
            raise ProviderError("Agro API did not return a polygon id")

        logger.info("Agro polygon created", extra={"extra": {"polygon_id": response["id"], "name": name}})
        return response

    async def delete_polygon(self, polygon_id: str) -> bool:
        """Delete a polygon; an already-missing polygon counts as deleted"""
        await self._make_request(f"/polygons/{polygon_id}", method="DELETE", allow_404=True)
        return True

    # ============================================
    # Imagery & NDVI
    # ============================================

    async def search_images(self, polygon_id: str, start: datetime, end: datetime) -> List[SatelliteImage]:
        """
        Search satellite imagery for a polygon in a date range

        Returns:
            Images newest first, unfiltered (cloud filtering belongs to the statistics engine)
        """
        response = await self._make_request(
            "/image/search",
            params={"polyid": polygon_id, "start": _unix(start), "end": _unix(end)},
        )

        images = []
        for item in response or []:
            taken_at = datetime.fromtimestamp(item["dt"], tz=timezone.utc)
            tiles = item.get("tile") or {}
            images.append(SatelliteImage(
                id=f"{polygon_id}-{item['dt']}-{item.get('type', 'unknown')}",
                date=taken_at,
                date_string=taken_at.date().isoformat(),
                source=item.get("type", "unknown"),
                cloud_coverage=float(item.get("cl") or 0),
                data_coverage=float(item.get("dc") or 0),
                tile_urls={k: tiles[k] for k in ("truecolor", "falsecolor", "ndvi", "evi") if tiles.get(k)},
            ))

        images.sort(key=lambda image: image.date, reverse=True)
        return images

    async def ndvi_history(
        self, polygon_id: str, field_id: str, start: datetime, end: datetime
    ) -> List[Observation]:
        """
        Fetch historical NDVI for a polygon as observations, one per calendar date

        Readings under MIN_DATA_COVERAGE are dropped. When several passes land on
        the same date, the one with the best data coverage wins.
        """
        response = await self._make_request(
            "/ndvi/history",
            params={"polyid": polygon_id, "start": _unix(start), "end": _unix(end)},
        )

        by_date: Dict = {}
        for item in response or []:
            coverage = float(item.get("dc") or 0)
            data = item.get("data") or {}
            if coverage < settings.MIN_DATA_COVERAGE or data.get("mean") is None:
                continue

            observed_on = datetime.fromtimestamp(item["dt"], tz=timezone.utc).date()
            current = by_date.get(observed_on)
            if current is not None and (current.data_coverage or 0) >= coverage:
                continue

            by_date[observed_on] = Observation(
                field_id=field_id,
                observation_date=observed_on,
                mean_index=round(float(data["mean"]), 3),
                min_index=round(float(data["min"]), 3) if data.get("min") is not None else None,
                max_index=round(float(data["max"]), 3) if data.get("max") is not None else None,
                cloud_coverage=float(item.get("cl") or 0),
                data_coverage=coverage,
            )

        return sorted(by_date.values(), key=lambda obs: obs.observation_date)


# Global Agro API client instance
agro_client = AgroApiClient()
