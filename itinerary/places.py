from typing import Any, Dict, Optional

import httpx

from .config import PlacesConfig
from .errors import UpstreamFailure


class PlacesRateLimited(UpstreamFailure):
    code = "RATE_LIMITED"


class PlacesClient:
    """Google Places text search, used to verify one activity at a time."""

    def __init__(self, config: PlacesConfig):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            timeout=config.timeout_s,
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    async def text_search(self, query: str, lat: float, lng: float) -> Optional[Dict[str, Any]]:
        """Return the best match near (lat, lng), or None when nothing matched."""
        if not self.enabled:
            raise UpstreamFailure("Places API key is not configured")
        params = {
            "query": query,
            "location": f"{lat},{lng}",
            "radius": str(self.config.radius_m),
            "key": self.config.api_key,
        }
        try:
            resp = await self.client.get(
                f"{self.base_url}/textsearch/json",
                params=params,
                headers={"Accept": "application/json"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamFailure(f"Places API error: {exc.response.status_code}") from exc
        except httpx.RequestError as exc:
            raise UpstreamFailure(f"Failed to search places: {exc}") from exc
        except ValueError as exc:
            raise UpstreamFailure(f"Places API returned a non-JSON body: {exc}") from exc
        status = data.get("status")
        if status == "OVER_QUERY_LIMIT":
            raise PlacesRateLimited("Places API rate limit exceeded")
        if status not in ("OK", "ZERO_RESULTS"):
            raise UpstreamFailure(f"Places API error: {status}", {"detail": data.get("error_message")})
        results = data.get("results") or []
        return results[0] if results else None

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
