"""DashboardController — owns the insight cache and scheduler for one dashboard.

Control flow per refresh:
  tile catalog → generate_layout → initial views (cache hits applied) →
  load_all (cache misses only) → on_tile_resolved per tile as it lands

Nothing here is process-global: two controllers never share a cache or an
in-flight run.
"""
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog

from tileboard.core.cache import InsightCache
from tileboard.core.models import InsightPayload, LayoutResult, PlacedTile, Tile
from tileboard.core.packer import generate_layout
from tileboard.core.scheduler import InsightLoadScheduler, LoadReport, TileResolved

log = structlog.get_logger()


@dataclass
class TileView:
    """What the renderer paints: a placed tile and its insight, if known."""
    tile: PlacedTile
    insight: Optional[InsightPayload] = None


@dataclass
class DashboardSnapshot:
    layout: LayoutResult
    initial_views: list[TileView] = field(default_factory=list)
    report: Optional[LoadReport] = None


class DashboardController:
    """One dashboard's layout and insight state.

    Lifecycle:
      switch_model(id) → refresh()/load_all() (mirror warm start once per
      model, then scheduler) → invalidate_model() on data change → aclose()

    invalidate_model() bumps a per-model generation so a mirror read that was
    in flight when the model was invalidated is thrown away.
    """

    def __init__(self, settings=None, fetch_insight=None, mirror=None):
        from config.settings import get_settings
        self.settings = settings or get_settings()
        self.cache = InsightCache()
        self.mirror = mirror
        self._client = None
        if fetch_insight is None:
            from tileboard.core.client import InsightClient
            self._client = InsightClient(self.settings)
            fetch_insight = self._client.fetch_insight
        self.scheduler = InsightLoadScheduler(
            self.cache,
            fetch_insight,
            mirror=mirror,
            settings=self.settings,
        )
        self.active_model_id: str | None = None
        self._hydrated: set[str] = set()
        self._generations: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def generate_layout(
        self,
        tiles: Iterable[Tile],
        columns: int | None = None,
        rows: int | None = None,
    ) -> LayoutResult:
        return generate_layout(
            tiles,
            columns or self.settings.grid_columns,
            rows or self.settings.grid_rows,
        )

    def initial_views(self, placed: Iterable[PlacedTile], model_id: str | None) -> list[TileView]:
        views = []
        for tile in placed:
            insight = None
            if model_id and tile.is_enrichable:
                insight = self.cache.get(model_id, tile.cache_key)
            views.append(TileView(tile=tile, insight=insight))
        return views

    # ------------------------------------------------------------------
    # Insights
    # ------------------------------------------------------------------

    async def load_all(
        self,
        placed: Iterable[PlacedTile],
        model_data: dict[str, Any] | None,
        model_id: str | None,
        on_tile_resolved: TileResolved | None = None,
    ) -> LoadReport:
        if model_id:
            await self._hydrate(model_id)
        return await self.scheduler.load_all(placed, model_data, model_id, on_tile_resolved)

    async def _hydrate(self, model_id: str) -> None:
        """Warm the cache from the Redis mirror once per model."""
        if self.mirror is None or model_id in self._hydrated:
            return
        self._hydrated.add(model_id)
        generation = self._generations.get(model_id, 0)
        entries = await self.mirror.load(model_id)
        if self._generations.get(model_id, 0) != generation:
            log.info("controller.hydrate_discarded", model_id=model_id, entries=len(entries))
            return
        if entries:
            self.cache.load(model_id, entries)

    async def invalidate_model(self, model_id: str) -> None:
        self._generations[model_id] = self._generations.get(model_id, 0) + 1
        self.scheduler.cancel(model_id)
        self.cache.invalidate(model_id)
        self._hydrated.add(model_id)  # mirror is dropped below; nothing to warm from
        if self.mirror is not None:
            await self.mirror.drop(model_id)

    async def switch_model(self, model_id: str) -> None:
        previous = self.active_model_id
        if previous == model_id:
            return
        self.active_model_id = model_id
        self.scheduler.cancel()
        if previous is not None:
            await self.invalidate_model(previous)
        log.info("controller.model_switched", previous=previous, active=model_id)

    async def refresh(
        self,
        tiles: Iterable[Tile],
        model_data: dict[str, Any] | None,
        model_id: str | None,
        on_tile_resolved: TileResolved | None = None,
        on_initial_render=None,
    ) -> DashboardSnapshot:
        """Full pipeline: layout, immediate render of cache hits, then load misses."""
        if model_id:
            await self.switch_model(model_id)
            await self._hydrate(model_id)
        layout = self.generate_layout(tiles)
        snapshot = DashboardSnapshot(
            layout=layout,
            initial_views=self.initial_views(layout.placed, model_id),
        )
        if on_initial_render is not None:
            on_initial_render(snapshot.initial_views)
        snapshot.report = await self.load_all(layout.placed, model_data, model_id, on_tile_resolved)
        return snapshot

    async def aclose(self) -> None:
        self.scheduler.cancel()
        await self.scheduler.wait_idle()
        self.cache.clear()
        if self._client is not None:
            await self._client.aclose()
        if self.mirror is not None:
            await self.mirror.close()
