"""InsightCache — per-model store of generated tile insights.

Layout: model_id → {cache_key → InsightPayload}, cache_key = "<tile_id>:<insight_type>".
Narrative depends on the model's numbers, so a model's whole sub-map is
dropped when that model is invalidated; entries are never shared across models.

Payloads without a chart get a small illustrative chart at write time
(feed tiles excepted), so renders never have to patch it up again.
"""
import re
from typing import Iterable

import structlog

from tileboard.core.models import ChartPoint, ChartSpec, InsightPayload, Tile

log = structlog.get_logger()

_NUMBER_RE = re.compile(r"(-?\d[\d,]*(?:\.\d+)?)(?:\s*([kmbt])(?![a-z]))?", re.IGNORECASE)
_SUFFIXES = {"k": 1e3, "m": 1e6, "b": 1e9, "t": 1e12}

# Six-step ramp ending at the displayed value
_RAMP = (0.70, 0.76, 0.82, 0.88, 0.94, 1.0)
_RAMP_LABELS = ("T-5", "T-4", "T-3", "T-2", "T-1", "Now")


def parse_display_value(text: str) -> float | None:
    """Extract the scalar behind a display string like "$1.24T" or "12.5%"."""
    match = _NUMBER_RE.search(text or "")
    if not match:
        return None
    value = float(match.group(1).replace(",", ""))
    suffix = match.group(2)
    if suffix:
        value *= _SUFFIXES[suffix.lower()]
    return value


def synthesize_chart(display_value: str) -> ChartSpec:
    value = parse_display_value(display_value)
    if value is None:
        value = 1.0
    points = [
        ChartPoint(label=label, value=round(value * factor, 6))
        for label, factor in zip(_RAMP_LABELS, _RAMP)
    ]
    return ChartSpec(kind="line", points=points, synthesized=True)


class InsightCache:
    """In-memory insight store owned by one dashboard controller."""

    def __init__(self):
        self._models: dict[str, dict[str, InsightPayload]] = {}

    def get(self, model_id: str, cache_key: str) -> InsightPayload | None:
        return self._models.get(model_id, {}).get(cache_key)

    def put(
        self,
        model_id: str,
        cache_key: str,
        payload: InsightPayload,
        tile: Tile | None = None,
    ) -> InsightPayload:
        """Store ``payload`` and return what was stored (possibly chart-augmented)."""
        if tile is not None and not tile.is_feed and not payload.has_chart:
            payload = payload.model_copy(update={"chart": synthesize_chart(tile.display_value)})
            log.debug("cache.chart_synthesized", model_id=model_id, key=cache_key)
        self._models.setdefault(model_id, {})[cache_key] = payload
        return payload

    def invalidate(self, model_id: str) -> None:
        dropped = self._models.pop(model_id, None)
        log.info("cache.invalidated", model_id=model_id, entries=len(dropped or {}))

    def load(self, model_id: str, entries: dict[str, InsightPayload]) -> None:
        """Bulk-load entries (warm start); existing keys win."""
        bucket = self._models.setdefault(model_id, {})
        for key, payload in entries.items():
            bucket.setdefault(key, payload)

    def has_model(self, model_id: str) -> bool:
        return model_id in self._models

    def keys(self, model_id: str) -> list[str]:
        return list(self._models.get(model_id, {}))

    def missing(self, model_id: str, tiles: Iterable[Tile]) -> list[Tile]:
        """Enrichable tiles without a cached payload, deduplicated by cache key."""
        seen: set[str] = set()
        result = []
        for tile in tiles:
            if not tile.is_enrichable or tile.cache_key in seen:
                continue
            seen.add(tile.cache_key)
            if self.get(model_id, tile.cache_key) is None:
                result.append(tile)
        return result

    def clear(self) -> None:
        self._models.clear()
