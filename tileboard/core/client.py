"""InsightClient — async HTTP client for the tile insight generation endpoint.

POST {insight_base_url}/api/insights/tile
    {"tileId", "title", "displayValue", "sizeClass",
     "contentBudget": {"chars", "words"}, "modelData"}
→   {"success": true, "data": {"prose", "chart"?, "specialItems"?}}

Any failure (transport, HTTP status, success=false, malformed data) raises
InsightFetchError; the scheduler turns that into "no insight" for the tile.
"""
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from tileboard.core.budget import ContentBudget
from tileboard.core.errors import InsightFetchError
from tileboard.core.models import ChartSpec, InsightPayload, SizeClass

log = structlog.get_logger()

TILE_INSIGHT_PATH = "/api/insights/tile"


class InsightClient:

    def __init__(self, settings=None, http: httpx.AsyncClient | None = None):
        from config.settings import get_settings
        self.settings = settings or get_settings()
        self._http = http
        self._owns_http = http is None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.settings.insight_base_url,
                timeout=self.settings.insight_request_timeout_sec,
            )
        return self._http

    async def fetch_insight(
        self,
        tile_id: str,
        tile_title: str,
        tile_display_value: str,
        size_class: SizeClass,
        content_budget: ContentBudget,
        model_data: dict[str, Any],
        cancel_token=None,
    ) -> InsightPayload:
        if cancel_token is not None and cancel_token.cancelled:
            raise InsightFetchError(tile_id, "cancelled before request")

        body = {
            "tileId": tile_id,
            "title": tile_title,
            "displayValue": tile_display_value,
            "sizeClass": SizeClass(size_class).value,
            "contentBudget": {"chars": content_budget.chars, "words": content_budget.words},
            "modelData": model_data,
        }
        try:
            resp = await self._client().post(TILE_INSIGHT_PATH, json=body)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise InsightFetchError(tile_id, f"HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise InsightFetchError(tile_id, str(exc) or type(exc).__name__) from exc

        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise InsightFetchError(tile_id, error or "service reported failure")

        payload = _parse_payload(tile_id, data.get("data"))
        log.debug("client.insight_fetched", tile_id=tile_id, prose_len=len(payload.prose))
        return payload

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


def _parse_payload(tile_id: str, data: Any) -> InsightPayload:
    if not isinstance(data, dict):
        raise InsightFetchError(tile_id, "missing data")
    try:
        chart = data.get("chart")
        return InsightPayload(
            prose=data["prose"],
            chart=ChartSpec.model_validate(chart) if chart else None,
            special_items=data.get("specialItems"),
        )
    except (KeyError, ValidationError) as exc:
        raise InsightFetchError(tile_id, f"malformed payload: {exc}") from exc
