"""InsightLoadScheduler — batched, cached, single-flight insight loading.

Run lifecycle:
  idle → checking_cache → all_cached → idle
                        → batching (loop) → settling → idle

- Only enrichable tiles without a cache hit are fetched, one request per cache key.
- Misses are fetched in fixed-size batches: tiles inside a batch run
  concurrently, batches run one after another with a fixed pause between them
  so the generation service's rate limit is not tripped.
- Each resolved tile is rendered immediately (progressive, not all-or-nothing).
- Fetch failures are logged and rendered as "no insight"; the run carries on.
- Mirror writes run in the background; settling waits for them before the
  guard is released.
- At most one run is in flight; a second load_all() awaits the first run.
- cancel() aborts a run: pending fetches are cancelled and anything that still
  arrives is discarded, so a model switch can never write stale narrative.
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

from tileboard.core.budget import ContentBudget, budget_for_tile
from tileboard.core.cache import InsightCache
from tileboard.core.models import InsightPayload, Tile

log = structlog.get_logger()

InsightFetcher = Callable[..., Awaitable[InsightPayload]]
TileResolved = Callable[[str, Optional[InsightPayload]], Any]


class LoadPhase(str, Enum):
    IDLE = "idle"
    CHECKING_CACHE = "checking_cache"
    ALL_CACHED = "all_cached"
    BATCHING = "batching"
    SETTLING = "settling"


class CancelToken:
    """Cancellation flag shared by one run and every fetch it issues."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class LoadReport:
    model_id: str | None
    requested: int = 0
    cached: int = 0
    resolved: int = 0
    failed: int = 0
    discarded: int = 0
    batches: int = 0
    cancelled: bool = False


@dataclass
class LoadState:
    phase: LoadPhase = LoadPhase.IDLE
    model_id: str | None = None
    in_flight: asyncio.Task | None = None
    token: CancelToken | None = None
    fetches: set[asyncio.Task] = field(default_factory=set)
    writes: set[asyncio.Task] = field(default_factory=set)

    @property
    def is_loading(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


class InsightLoadScheduler:
    """Loads insights for placed tiles. Owned by a DashboardController.

    Args:
        cache: InsightCache the results are written to.
        fetch_insight: async callable with the InsightClient.fetch_insight
            keyword signature (tile_id, tile_title, tile_display_value,
            size_class, content_budget, model_data, cancel_token).
        batch_size: tiles fetched concurrently per batch.
        batch_delay_sec: pause between batches.
        budget_for: tile → ContentBudget; defaults to the configured viewport.
        mirror: optional InsightMirror receiving every stored payload.
        on_phase: optional callable invoked with each LoadPhase the
            scheduler enters.
    """

    def __init__(
        self,
        cache: InsightCache,
        fetch_insight: InsightFetcher,
        batch_size: int | None = None,
        batch_delay_sec: float | None = None,
        budget_for: Callable[[Tile], ContentBudget] | None = None,
        mirror=None,
        settings=None,
        on_phase: Callable[[LoadPhase], Any] | None = None,
    ):
        from config.settings import get_settings
        self.settings = settings or get_settings()
        self.cache = cache
        self.fetch_insight = fetch_insight
        self.batch_size = self.settings.insight_batch_size if batch_size is None else batch_size
        self.batch_delay_sec = (
            self.settings.insight_batch_delay_sec if batch_delay_sec is None else batch_delay_sec
        )
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        self.budget_for = budget_for or (lambda tile: budget_for_tile(tile, self.settings))
        self.mirror = mirror
        self.on_phase = on_phase
        self._state = LoadState()
        self._winding_down: set[asyncio.Task] = set()

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def load_all(
        self,
        placed_tiles: Iterable[Tile],
        model_data: dict[str, Any] | None,
        model_id: str | None,
        on_tile_resolved: TileResolved | None = None,
    ) -> LoadReport:
        if not model_data or not model_id:
            log.debug("scheduler.skipped", reason="no_model", model_id=model_id)
            return LoadReport(model_id=model_id)

        if self._state.is_loading:
            log.debug(
                "scheduler.coalesced",
                model_id=model_id,
                in_flight_model=self._state.model_id,
            )
            return await asyncio.shield(self._state.in_flight)

        state = self._state = LoadState(model_id=model_id)
        self._enter(state, LoadPhase.CHECKING_CACHE)
        tiles = list(placed_tiles)
        enrichable = {t.cache_key for t in tiles if t.is_enrichable}
        missing = self.cache.missing(model_id, tiles)
        report = LoadReport(
            model_id=model_id,
            requested=len(missing),
            cached=len(enrichable) - len(missing),
        )

        if not missing:
            self._enter(state, LoadPhase.ALL_CACHED)
            log.info("scheduler.all_cached", model_id=model_id, cached=report.cached)
            self._reset()
            return report

        state.token = CancelToken()
        state.in_flight = asyncio.create_task(
            self._run(missing, model_data, on_tile_resolved, state, report)
        )
        self._enter(state, LoadPhase.BATCHING)
        log.info(
            "scheduler.load_started",
            model_id=model_id,
            missing=len(missing),
            cached=report.cached,
            batch_size=self.batch_size,
        )
        return await asyncio.shield(state.in_flight)

    def cancel(self, model_id: str | None = None) -> bool:
        """Cancel the in-flight run (only if it belongs to ``model_id`` when given).

        The guard is released immediately so a new run may start while the
        cancelled one winds down; wait_idle() waits for it to finish.
        """
        state = self._state
        if not state.is_loading:
            return False
        if model_id is not None and state.model_id != model_id:
            return False
        state.token.cancel()
        for task in list(state.fetches) + list(state.writes):
            task.cancel()
        self._winding_down.add(state.in_flight)
        state.in_flight.add_done_callback(self._winding_down.discard)
        self._reset()
        log.info("scheduler.cancelled", model_id=state.model_id, pending=len(state.fetches))
        return True

    async def wait_idle(self) -> None:
        """Wait for the in-flight run and any cancelled run still winding down."""
        pending = set(self._winding_down)
        if self._state.in_flight is not None:
            pending.add(self._state.in_flight)
        if pending:
            await asyncio.wait(pending)

    # ------------------------------------------------------------------
    # Run internals
    # ------------------------------------------------------------------

    def _enter(self, state: LoadState, phase: LoadPhase) -> None:
        state.phase = phase
        if state is not self._state:
            return
        log.debug("scheduler.phase", model_id=state.model_id, phase=phase.value)
        if self.on_phase is not None:
            self.on_phase(phase)

    def _reset(self) -> None:
        self._state = LoadState()
        self._enter(self._state, LoadPhase.IDLE)

    async def _run(
        self,
        tiles: list[Tile],
        model_data: dict[str, Any],
        on_tile_resolved: TileResolved | None,
        state: LoadState,
        report: LoadReport,
    ) -> LoadReport:
        token = state.token
        batches = [tiles[i:i + self.batch_size] for i in range(0, len(tiles), self.batch_size)]
        try:
            for number, batch in enumerate(batches, start=1):
                if token.cancelled:
                    break
                if number > 1 and self.batch_delay_sec > 0:
                    if await token.sleep(self.batch_delay_sec):
                        break

                report.batches += 1
                log.info(
                    "scheduler.batch_started",
                    model_id=state.model_id,
                    batch=number,
                    of=len(batches),
                    tiles=[t.id for t in batch],
                )
                fetches = [
                    asyncio.create_task(
                        self._fetch_one(tile, model_data, on_tile_resolved, state, report)
                    )
                    for tile in batch
                ]
                state.fetches.update(fetches)
                try:
                    await asyncio.gather(*fetches, return_exceptions=True)
                finally:
                    state.fetches.difference_update(fetches)
        finally:
            self._enter(state, LoadPhase.SETTLING)
            if state.writes:
                await asyncio.gather(*state.writes, return_exceptions=True)
            report.cancelled = token.cancelled
            if self._state is state:
                self._reset()
            log.info(
                "scheduler.settled",
                model_id=state.model_id,
                resolved=report.resolved,
                failed=report.failed,
                discarded=report.discarded,
                batches=report.batches,
                cancelled=report.cancelled,
            )
        return report

    async def _fetch_one(
        self,
        tile: Tile,
        model_data: dict[str, Any],
        on_tile_resolved: TileResolved | None,
        state: LoadState,
        report: LoadReport,
    ) -> None:
        model_id, token = state.model_id, state.token
        try:
            payload = await self.fetch_insight(
                tile_id=tile.id,
                tile_title=tile.title,
                tile_display_value=tile.display_value,
                size_class=tile.size_class,
                content_budget=self.budget_for(tile),
                model_data=model_data,
                cancel_token=token,
            )
        except asyncio.CancelledError:
            report.discarded += 1
            log.info("scheduler.fetch_discarded", model_id=model_id, tile_id=tile.id, reason="cancelled")
            raise
        except Exception as exc:
            if token.cancelled:
                report.discarded += 1
                log.info("scheduler.fetch_discarded", model_id=model_id, tile_id=tile.id, reason="cancelled")
                return
            report.failed += 1
            log.warning(
                "scheduler.fetch_failed",
                model_id=model_id,
                tile_id=tile.id,
                error=str(exc),
            )
            await self._notify(on_tile_resolved, tile.id, None)
            return

        if token.cancelled:
            report.discarded += 1
            log.info("scheduler.fetch_discarded", model_id=model_id, tile_id=tile.id, reason="stale")
            return

        stored = self.cache.put(model_id, tile.cache_key, payload, tile=tile)
        report.resolved += 1
        if self.mirror is not None:
            state.writes.add(asyncio.create_task(self.mirror.save(model_id, tile.cache_key, stored)))
        await self._notify(on_tile_resolved, tile.id, stored)

    async def _notify(
        self,
        callback: TileResolved | None,
        tile_id: str,
        payload: InsightPayload | None,
    ) -> None:
        if callback is None:
            return
        try:
            result = callback(tile_id, payload)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log.warning("scheduler.render_callback_failed", tile_id=tile_id, error=str(exc))
