"""Unit tests for InsightLoadScheduler — caching, batching, single-flight, cancellation."""
import asyncio

import pytest
from unittest.mock import AsyncMock

from config.settings import Settings
from tileboard.core.budget import ContentBudget
from tileboard.core.cache import InsightCache
from tileboard.core.models import InsightPayload, PlacedTile, SizeClass, Tile
from tileboard.core.scheduler import CancelToken, InsightLoadScheduler, LoadPhase

MODEL = "baseline"
MODEL_DATA = {"enterprise_value": 1.24e12}


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return Settings(insight_batch_size=4, insight_batch_delay_sec=0)


@pytest.fixture
def cache():
    return InsightCache()


def _placed(count: int, insight_type: str | None = "metric") -> list[PlacedTile]:
    return [
        PlacedTile.at(
            Tile(id=f"t{i}", title=f"Tile {i}", display_value=f"{i}%", insight_type=insight_type),
            i % 4,
            i // 4,
        )
        for i in range(count)
    ]


def _scheduler(cache, settings, fetch, **kwargs) -> InsightLoadScheduler:
    return InsightLoadScheduler(cache, fetch, settings=settings, **kwargs)


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class FakeService:
    """Generation service stand-in that records concurrency."""

    def __init__(self, delay: float = 0.0, fail: set[str] | None = None):
        self.delay = delay
        self.fail = fail or set()
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, tile_id: str, tile_title: str, **kwargs) -> InsightPayload:
        self.calls.append(tile_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if tile_id in self.fail:
                raise RuntimeError("429 Too Many Requests")
            return InsightPayload(prose=f"{tile_title} looks healthy.")
        finally:
            self.active -= 1


# ---------------------------------------------------------------------------
# Preconditions & cache short-circuit
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("model_data,model_id", [(None, MODEL), ({}, MODEL), (MODEL_DATA, None), (MODEL_DATA, "")])
async def test_missing_model_is_noop(cache, settings, model_data, model_id):
    fetch = AsyncMock()
    report = await _scheduler(cache, settings, fetch).load_all(_placed(3), model_data, model_id)
    fetch.assert_not_awaited()
    assert report.batches == 0


@pytest.mark.asyncio
async def test_all_cached_makes_no_requests(cache, settings):
    tiles = _placed(3)
    for tile in tiles:
        cache.put(MODEL, tile.cache_key, InsightPayload(prose="known"))
    fetch = AsyncMock()
    scheduler = _scheduler(cache, settings, fetch)

    report = await scheduler.load_all(tiles, MODEL_DATA, MODEL)

    fetch.assert_not_awaited()
    assert report.cached == 3
    assert report.requested == 0
    assert scheduler.state.phase == LoadPhase.IDLE


@pytest.mark.asyncio
async def test_static_tiles_are_never_fetched(cache, settings):
    fetch = AsyncMock()
    report = await _scheduler(cache, settings, fetch).load_all(_placed(4, insight_type=None), MODEL_DATA, MODEL)
    fetch.assert_not_awaited()
    assert report.requested == 0


@pytest.mark.asyncio
async def test_resolved_tiles_are_cached_and_not_refetched(cache, settings):
    service = FakeService()
    scheduler = _scheduler(cache, settings, service.fetch)
    tiles = _placed(2)

    first = await scheduler.load_all(tiles, MODEL_DATA, MODEL)
    assert first.resolved == 2
    assert cache.get(MODEL, "t0:metric").prose == "Tile 0 looks healthy."

    second = await scheduler.load_all(tiles, MODEL_DATA, MODEL)
    assert second.requested == 0
    assert len(service.calls) == 2


@pytest.mark.asyncio
async def test_stored_payload_gets_synthesized_chart(cache, settings):
    service = FakeService()
    received = {}
    await _scheduler(cache, settings, service.fetch).load_all(
        _placed(1), MODEL_DATA, MODEL, lambda tid, p: received.update({tid: p})
    )
    assert received["t0"].chart is not None
    assert received["t0"].chart.synthesized


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_batches_bound_concurrency(cache, settings):
    service = FakeService(delay=0.01)
    report = await _scheduler(cache, settings, service.fetch).load_all(_placed(10), MODEL_DATA, MODEL)

    assert report.batches == 3  # ceil(10 / 4)
    assert service.max_active <= 4
    assert report.resolved == 10


@pytest.mark.asyncio
async def test_requests_issue_in_tile_order(cache, settings):
    service = FakeService()
    await _scheduler(cache, settings, service.fetch, batch_size=2).load_all(_placed(5), MODEL_DATA, MODEL)
    assert service.calls == ["t0", "t1", "t2", "t3", "t4"]


@pytest.mark.asyncio
async def test_fetch_receives_budget_and_token(cache, settings):
    fetch = AsyncMock(return_value=InsightPayload(prose="x"))
    await _scheduler(cache, settings, fetch).load_all(_placed(1), MODEL_DATA, MODEL)

    kwargs = fetch.await_args.kwargs
    assert kwargs["tile_id"] == "t0"
    assert kwargs["tile_title"] == "Tile 0"
    assert kwargs["tile_display_value"] == "0%"
    assert kwargs["size_class"] == SizeClass.SQUARE
    assert isinstance(kwargs["content_budget"], ContentBudget)
    assert kwargs["model_data"] == MODEL_DATA
    assert isinstance(kwargs["cancel_token"], CancelToken)


# ---------------------------------------------------------------------------
# Progressive rendering & failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tiles_render_in_resolution_order(cache, settings):
    async def fetch(tile_id: str, **kwargs) -> InsightPayload:
        await asyncio.sleep(0.05 if tile_id == "t0" else 0)
        return InsightPayload(prose=tile_id)

    order: list[str] = []
    await _scheduler(cache, settings, fetch).load_all(_placed(3), MODEL_DATA, MODEL, lambda tid, p: order.append(tid))
    assert order[-1] == "t0"
    assert sorted(order) == ["t0", "t1", "t2"]


@pytest.mark.asyncio
async def test_failed_fetch_renders_no_insight_and_continues(cache, settings):
    service = FakeService(fail={"t1"})
    received: dict = {}
    report = await _scheduler(cache, settings, service.fetch).load_all(
        _placed(3), MODEL_DATA, MODEL, lambda tid, p: received.update({tid: p})
    )

    assert report.failed == 1
    assert report.resolved == 2
    assert received["t1"] is None
    assert received["t0"] is not None
    assert cache.get(MODEL, "t1:metric") is None


@pytest.mark.asyncio
async def test_failed_tile_is_retried_on_next_call_only(cache, settings):
    service = FakeService(fail={"t0"})
    scheduler = _scheduler(cache, settings, service.fetch)
    await scheduler.load_all(_placed(2), MODEL_DATA, MODEL)
    assert service.calls.count("t0") == 1

    await scheduler.load_all(_placed(2), MODEL_DATA, MODEL)
    assert service.calls.count("t0") == 2
    assert service.calls.count("t1") == 1


@pytest.mark.asyncio
async def test_callback_errors_are_contained(cache, settings):
    def explode(tile_id, payload):
        raise ValueError("renderer broke")

    report = await _scheduler(cache, settings, FakeService().fetch).load_all(_placed(2), MODEL_DATA, MODEL, explode)
    assert report.resolved == 2


@pytest.mark.asyncio
async def test_async_callback_is_awaited(cache, settings):
    seen: list[str] = []

    async def render(tile_id, payload):
        await asyncio.sleep(0)
        seen.append(tile_id)

    await _scheduler(cache, settings, FakeService().fetch).load_all(_placed(2), MODEL_DATA, MODEL, render)
    assert sorted(seen) == ["t0", "t1"]


# ---------------------------------------------------------------------------
# Single-flight
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_calls_share_one_run(cache, settings):
    service = FakeService(delay=0.01)
    scheduler = _scheduler(cache, settings, service.fetch)
    tiles = _placed(6)

    first, second = await asyncio.gather(
        scheduler.load_all(tiles, MODEL_DATA, MODEL),
        scheduler.load_all(tiles, MODEL_DATA, MODEL),
    )

    assert first is second
    assert sorted(service.calls) == sorted(t.id for t in tiles)


@pytest.mark.asyncio
async def test_guard_resets_after_settling(cache, settings):
    scheduler = _scheduler(cache, settings, FakeService(delay=0.01).fetch)
    task = asyncio.create_task(scheduler.load_all(_placed(2), MODEL_DATA, MODEL))
    await _until(lambda: scheduler.is_loading)
    await task
    assert not scheduler.is_loading
    assert scheduler.state.phase == LoadPhase.IDLE


@pytest.mark.parametrize("batch_size", [0, -1])
def test_batch_size_must_be_positive(cache, settings, batch_size):
    with pytest.raises(ValueError):
        InsightLoadScheduler(cache, AsyncMock(), batch_size=batch_size, settings=settings)


def test_batch_size_defaults_from_settings(cache):
    scheduler = InsightLoadScheduler(cache, AsyncMock(), settings=Settings(insight_batch_size=3))
    assert scheduler.batch_size == 3


# ---------------------------------------------------------------------------
# Phases
# ---------------------------------------------------------------------------

class BlockingMirror:
    """Mirror whose writes wait until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.saved: list[str] = []

    async def save(self, model_id: str, cache_key: str, payload: InsightPayload) -> None:
        await self.release.wait()
        self.saved.append(cache_key)


@pytest.mark.asyncio
async def test_phases_for_a_run_with_misses(cache, settings):
    phases: list[LoadPhase] = []
    scheduler = _scheduler(cache, settings, FakeService().fetch, on_phase=phases.append)

    await scheduler.load_all(_placed(2), MODEL_DATA, MODEL)

    assert phases == [
        LoadPhase.CHECKING_CACHE,
        LoadPhase.BATCHING,
        LoadPhase.SETTLING,
        LoadPhase.IDLE,
    ]


@pytest.mark.asyncio
async def test_phases_when_everything_is_cached(cache, settings):
    tiles = _placed(2)
    for tile in tiles:
        cache.put(MODEL, tile.cache_key, InsightPayload(prose="known"))
    phases: list[LoadPhase] = []
    scheduler = _scheduler(cache, settings, AsyncMock(), on_phase=phases.append)

    await scheduler.load_all(tiles, MODEL_DATA, MODEL)

    assert phases == [LoadPhase.CHECKING_CACHE, LoadPhase.ALL_CACHED, LoadPhase.IDLE]


@pytest.mark.asyncio
async def test_settling_waits_for_mirror_writes(cache, settings):
    mirror = BlockingMirror()
    scheduler = _scheduler(cache, settings, FakeService().fetch, mirror=mirror)
    task = asyncio.create_task(scheduler.load_all(_placed(2), MODEL_DATA, MODEL))

    await _until(lambda: scheduler.state.phase == LoadPhase.SETTLING)
    assert scheduler.is_loading
    assert not task.done()

    mirror.release.set()
    report = await task

    assert sorted(mirror.saved) == ["t0:metric", "t1:metric"]
    assert report.resolved == 2
    assert scheduler.state.phase == LoadPhase.IDLE


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_discards_in_flight_results(cache, settings):
    release = asyncio.Event()
    started: list[str] = []

    async def fetch(tile_id: str, **kwargs) -> InsightPayload:
        started.append(tile_id)
        await release.wait()
        return InsightPayload(prose="late")

    rendered: list[str] = []
    scheduler = _scheduler(cache, settings, fetch)
    task = asyncio.create_task(
        scheduler.load_all(_placed(3), MODEL_DATA, MODEL, lambda tid, p: rendered.append(tid))
    )
    await _until(lambda: len(started) == 3)

    assert scheduler.cancel(MODEL) is True
    assert not scheduler.is_loading
    report = await task

    assert report.cancelled is True
    assert report.discarded == 3
    assert report.resolved == 0
    assert rendered == []
    assert cache.keys(MODEL) == []


@pytest.mark.asyncio
async def test_cancel_stops_remaining_batches(cache):
    settings = Settings(insight_batch_size=1, insight_batch_delay_sec=30)
    service = FakeService()
    scheduler = _scheduler(cache, settings, service.fetch)
    task = asyncio.create_task(scheduler.load_all(_placed(3), MODEL_DATA, MODEL))

    await _until(lambda: cache.get(MODEL, "t0:metric") is not None)
    scheduler.cancel()
    report = await asyncio.wait_for(task, timeout=1)

    assert report.batches == 1
    assert service.calls == ["t0"]
    assert report.cancelled


@pytest.mark.asyncio
async def test_cancel_for_other_model_is_ignored(cache, settings):
    release = asyncio.Event()

    async def fetch(**kwargs) -> InsightPayload:
        await release.wait()
        return InsightPayload(prose="done")

    scheduler = _scheduler(cache, settings, fetch)
    task = asyncio.create_task(scheduler.load_all(_placed(1), MODEL_DATA, MODEL))
    await _until(lambda: scheduler.is_loading)

    assert scheduler.cancel("other-model") is False
    release.set()
    report = await task
    assert report.resolved == 1


@pytest.mark.asyncio
async def test_new_run_can_start_after_cancel(cache, settings):
    release = asyncio.Event()

    async def slow(**kwargs) -> InsightPayload:
        await release.wait()
        return InsightPayload(prose="old")

    scheduler = _scheduler(cache, settings, slow)
    old = asyncio.create_task(scheduler.load_all(_placed(1), MODEL_DATA, "model-a"))
    await _until(lambda: scheduler.is_loading)
    scheduler.cancel()

    scheduler.fetch_insight = AsyncMock(return_value=InsightPayload(prose="new"))
    report = await scheduler.load_all(_placed(1), MODEL_DATA, "model-b")
    await old

    assert report.resolved == 1
    assert cache.get("model-b", "t0:metric").prose == "new"
    assert cache.get("model-a", "t0:metric") is None


@pytest.mark.asyncio
async def test_cancel_reports_idle_immediately(cache, settings):
    phases: list[LoadPhase] = []
    scheduler = _scheduler(cache, settings, FakeService(delay=10).fetch, on_phase=phases.append)
    task = asyncio.create_task(scheduler.load_all(_placed(1), MODEL_DATA, MODEL))
    await _until(lambda: scheduler.is_loading)

    scheduler.cancel()
    await task

    assert phases == [LoadPhase.CHECKING_CACHE, LoadPhase.BATCHING, LoadPhase.IDLE]


@pytest.mark.asyncio
async def test_wait_idle_waits_for_cancelled_run(cache, settings):
    service = FakeService(delay=10)
    scheduler = _scheduler(cache, settings, service.fetch)
    task = asyncio.create_task(scheduler.load_all(_placed(3), MODEL_DATA, MODEL))
    await _until(lambda: service.active == 3)

    scheduler.cancel()
    await asyncio.wait_for(scheduler.wait_idle(), timeout=1)

    assert service.active == 0
    report = await task
    assert report.discarded == 3


@pytest.mark.asyncio
async def test_wait_idle_when_nothing_runs(cache, settings):
    await asyncio.wait_for(_scheduler(cache, settings, AsyncMock()).wait_idle(), timeout=1)


def test_cancel_when_idle_returns_false(cache, settings):
    assert _scheduler(cache, settings, AsyncMock()).cancel() is False
