"""FastAPI server — REST interface for dashboard layout and tile insights."""
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from tileboard.core.models import InsightPayload, LayoutResult, PlacedTile, Tile

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from config.settings import get_settings
    from tileboard.core.controller import DashboardController

    settings = get_settings()
    mirror = None
    if settings.insight_mirror_enabled:
        from tileboard.core.mirror import InsightMirror
        mirror = InsightMirror(settings=settings)
    if getattr(app.state, "controller", None) is None:
        app.state.controller = DashboardController(settings, mirror=mirror)
    log.info("tileboard.api_startup", mirror=mirror is not None)
    yield
    await app.state.controller.aclose()
    app.state.controller = None
    log.info("tileboard.api_shutdown")


app = FastAPI(
    title="Tileboard API",
    description="Dashboard grid packing and batched tile insight loading",
    version="0.1.0",
    lifespan=lifespan,
)


class LayoutRequest(BaseModel):
    tiles: list[Tile]
    columns: int | None = Field(default=None, gt=0)
    rows: int | None = Field(default=None, gt=0)


class InsightLoadRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    tiles: list[PlacedTile]
    model_data: dict[str, Any] = {}


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "service": "tileboard", "version": "0.1.0"}


@app.post("/layout")
async def layout(request: LayoutRequest, http: Request) -> LayoutResult:
    controller = http.app.state.controller
    return controller.generate_layout(request.tiles, request.columns, request.rows)


@app.post("/dashboard/{model_id}/insights")
async def load_insights(model_id: str, request: InsightLoadRequest, http: Request) -> dict:
    """Load insights for the placed tiles and return them with the run's report.

    Only one run is in flight per controller. A request for the same model
    joins it; a request for another model gets 409 until that run settles
    or is cancelled (DELETE on its insights).
    """
    controller = http.app.state.controller
    state = controller.scheduler.state
    if state.is_loading and state.model_id != model_id:
        raise HTTPException(
            status_code=409,
            detail=f"Insights for model '{state.model_id}' are still loading",
        )
    resolved: dict[str, InsightPayload | None] = {}

    def on_tile_resolved(tile_id: str, payload: InsightPayload | None) -> None:
        resolved[tile_id] = payload

    report = await controller.load_all(request.tiles, request.model_data, model_id, on_tile_resolved)
    insights = {
        view.tile.id: view.insight
        for view in controller.initial_views(request.tiles, model_id)
        if view.tile.is_enrichable
    }
    insights.update(resolved)
    return {
        "report": asdict(report),
        "insights": {
            tile_id: payload.model_dump() if payload else None
            for tile_id, payload in insights.items()
        },
    }


@app.delete("/dashboard/{model_id}/insights")
async def invalidate_insights(model_id: str, http: Request) -> dict:
    await http.app.state.controller.invalidate_model(model_id)
    return {"model_id": model_id, "invalidated": True}
