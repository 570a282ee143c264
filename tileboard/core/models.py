"""Pydantic models shared by the packer, the insight cache and the scheduler."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# Insight types rendered as item feeds rather than prose + chart
FEED_INSIGHT_TYPES = frozenset({"news", "feed", "timeline"})


class SizeClass(str, Enum):
    SQUARE = "square"
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"
    LARGE = "large"

    @property
    def width(self) -> int:
        return 2 if self in (SizeClass.HORIZONTAL, SizeClass.LARGE) else 1

    @property
    def height(self) -> int:
        return 2 if self in (SizeClass.VERTICAL, SizeClass.LARGE) else 1

    @property
    def footprint(self) -> int:
        return self.width * self.height

    @property
    def priority(self) -> int:
        """Placement priority: large first, then the 2-cell shapes, then squares."""
        if self is SizeClass.LARGE:
            return 3
        if self is SizeClass.SQUARE:
            return 1
        return 2


class PreferredPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    below_tile_id: str


class Tile(BaseModel):
    """One dashboard metric. Immutable once created by the catalog."""
    model_config = ConfigDict(frozen=True)

    id: str
    size_class: SizeClass = SizeClass.SQUARE
    title: str
    display_value: str = ""
    color: str = ""
    insight_type: Optional[str] = None  # None → static tile, never enriched
    preferred_position: Optional[PreferredPosition] = None

    @property
    def cache_key(self) -> str:
        return f"{self.id}:{self.insight_type}"

    @property
    def is_enrichable(self) -> bool:
        return self.insight_type is not None

    @property
    def is_feed(self) -> bool:
        return self.insight_type in FEED_INSIGHT_TYPES

    @property
    def below_tile_id(self) -> str | None:
        return self.preferred_position.below_tile_id if self.preferred_position else None


class PlacedTile(Tile):
    column_start: int = Field(ge=0)
    row_start: int = Field(ge=0)

    @classmethod
    def at(cls, tile: Tile, column: int, row: int) -> "PlacedTile":
        fields = tile.model_dump(exclude={"column_start", "row_start"})
        return cls(**fields, column_start=column, row_start=row)

    @property
    def width(self) -> int:
        return self.size_class.width

    @property
    def height(self) -> int:
        return self.size_class.height

    def cells(self) -> frozenset[tuple[int, int]]:
        """(column, row) pairs covered by this tile."""
        return frozenset(
            (self.column_start + dx, self.row_start + dy)
            for dx in range(self.width)
            for dy in range(self.height)
        )

    @property
    def grid_area(self) -> str:
        """CSS grid-area value (1-based lines) for the renderer."""
        return (
            f"{self.row_start + 1} / {self.column_start + 1} / "
            f"span {self.height} / span {self.width}"
        )


class ChartPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    value: float


class ChartSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str = "line"
    points: list[ChartPoint] = Field(default_factory=list)
    synthesized: bool = False


class InsightPayload(BaseModel):
    """Generated narrative for one tile. Read-only once cached."""
    model_config = ConfigDict(frozen=True)

    prose: str
    chart: Optional[ChartSpec] = None
    special_items: Optional[list[str]] = None

    @property
    def has_chart(self) -> bool:
        return self.chart is not None and bool(self.chart.points)


class UnplacedReason(str, Enum):
    NO_SPACE = "no_space"
    DUPLICATE_ID = "duplicate_id"
    EXCEEDS_GRID = "exceeds_grid"


class LayoutResult(BaseModel):
    columns: int
    rows: int
    placed: list[PlacedTile] = Field(default_factory=list)
    unplaced: list[Tile] = Field(default_factory=list)
    diagnostics: dict[str, UnplacedReason] = Field(default_factory=dict)

    @property
    def occupied_cells(self) -> int:
        return sum(t.size_class.footprint for t in self.placed)

    @property
    def utilization(self) -> float:
        capacity = self.columns * self.rows
        return self.occupied_cells / capacity if capacity else 0.0
