"""Content budgets — how much prose fits inside a rendered tile.

The generation service is asked for roughly this many characters so the
returned text fits the tile without overflow or scrolling.
"""
from dataclasses import dataclass

from tileboard.core.models import SizeClass, Tile

# Typography estimates for the dashboard tile body (13px system font)
AVG_CHAR_WIDTH_PX = 7.0
LINE_HEIGHT_PX = 18.0
TILE_HEADER_PX = 48.0   # title row + metric value
TILE_PADDING_PX = 16.0  # horizontal padding, both sides combined
CHARS_PER_WORD = 6
MIN_CHARS = 60


@dataclass(frozen=True)
class ContentBudget:
    chars: int
    words: int


def compute_content_budget(
    size_class: SizeClass,
    rendered_width: float,
    rendered_height: float,
) -> ContentBudget:
    """Fixed chars-per-line × lines-per-tile estimate."""
    usable_width = max(rendered_width - TILE_PADDING_PX, 0.0)
    usable_height = max(rendered_height - TILE_HEADER_PX, 0.0)
    chars_per_line = int(usable_width // AVG_CHAR_WIDTH_PX)
    lines = int(usable_height // LINE_HEIGHT_PX)
    # Large tiles share space with a chart; give the prose half the body.
    if size_class is SizeClass.LARGE:
        lines = max(lines // 2, 1)
    chars = max(chars_per_line * lines, MIN_CHARS)
    return ContentBudget(chars=chars, words=max(chars // CHARS_PER_WORD, 1))


def tile_pixel_size(
    size_class: SizeClass,
    viewport_width: float,
    viewport_height: float,
    columns: int,
    rows: int,
    gap: float = 0.0,
) -> tuple[float, float]:
    """Rendered (width, height) in pixels of a tile in the fixed grid."""
    cell_width = (viewport_width - gap * (columns - 1)) / columns
    cell_height = (viewport_height - gap * (rows - 1)) / rows
    width = cell_width * size_class.width + gap * (size_class.width - 1)
    height = cell_height * size_class.height + gap * (size_class.height - 1)
    return width, height


def budget_for_tile(tile: Tile, settings=None) -> ContentBudget:
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()
    width, height = tile_pixel_size(
        tile.size_class,
        settings.viewport_width,
        settings.viewport_height,
        settings.grid_columns,
        settings.grid_rows,
        settings.grid_gap_px,
    )
    return compute_content_budget(tile.size_class, width, height)
