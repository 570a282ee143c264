"""Grid packer — places heterogeneous tiles into a fixed columns × rows grid.

Two phases:
  1. Order   — priority tiers (large → vertical/horizontal → square), each tier
               topologically sorted so a tile referenced by a below-hint comes
               before the tiles that want to sit under it. Hints that point at
               unknown tiles or sit on a dependency cycle are dropped.
  2. Scan    — single pass. A hinted tile first tries the cells directly below
               its target; everything else takes the first row-major position
               that fits.

Placement is best-effort: tiles that do not fit are returned in ``unplaced``
with a reason, never raised. The function is pure and deterministic.
"""
import heapq
import string
from collections import defaultdict
from typing import Iterable

import structlog

from tileboard.core.models import LayoutResult, PlacedTile, Tile, UnplacedReason

log = structlog.get_logger()

_VISITING = 0
_DONE = 1


def generate_layout(tiles: Iterable[Tile], columns: int, rows: int) -> LayoutResult:
    """Pack ``tiles`` into the grid and report what did not fit."""
    if columns <= 0 or rows <= 0:
        raise ValueError(f"grid dimensions must be positive, got {columns}x{rows}")

    unplaced: list[Tile] = []
    diagnostics: dict[str, UnplacedReason] = {}
    candidates: list[Tile] = []
    seen: set[str] = set()

    for tile in tiles:
        if tile.id in seen:
            unplaced.append(tile)
            diagnostics[tile.id] = UnplacedReason.DUPLICATE_ID
            continue
        seen.add(tile.id)
        if tile.size_class.width > columns or tile.size_class.height > rows:
            unplaced.append(tile)
            diagnostics[tile.id] = UnplacedReason.EXCEEDS_GRID
            continue
        candidates.append(tile)

    hints = _resolve_hints(candidates)
    occupied: set[tuple[int, int]] = set()
    positions: dict[str, PlacedTile] = {}
    placed: list[PlacedTile] = []

    for tile in _placement_order(candidates, hints):
        spot = None
        target = positions.get(hints.get(tile.id, ""))
        if target is not None:
            below = (target.column_start, target.row_start + target.height)
            if _fits(tile, below[0], below[1], columns, rows, occupied):
                spot = below
        if spot is None:
            spot = _scan(tile, columns, rows, occupied)
        if spot is None:
            unplaced.append(tile)
            diagnostics[tile.id] = UnplacedReason.NO_SPACE
            continue

        placed_tile = PlacedTile.at(tile, spot[0], spot[1])
        occupied |= placed_tile.cells()
        positions[tile.id] = placed_tile
        placed.append(placed_tile)

    result = LayoutResult(
        columns=columns,
        rows=rows,
        placed=placed,
        unplaced=unplaced,
        diagnostics=diagnostics,
    )
    if unplaced:
        log.warning(
            "packer.unplaced",
            count=len(unplaced),
            tiles={tid: reason.value for tid, reason in diagnostics.items()},
        )
    log.info(
        "packer.layout_generated",
        grid=f"{columns}x{rows}",
        placed=len(placed),
        unplaced=len(unplaced),
        utilization=round(result.utilization, 3),
    )
    return result


def render_ascii(layout: LayoutResult) -> str:
    """Occupancy map, one symbol per cell, followed by a legend."""
    symbols = string.ascii_uppercase + string.ascii_lowercase + string.digits
    grid = [["." for _ in range(layout.columns)] for _ in range(layout.rows)]
    legend = []
    for index, tile in enumerate(layout.placed):
        symbol = symbols[index % len(symbols)]
        for col, row in tile.cells():
            grid[row][col] = symbol
        legend.append(f"{symbol}  {tile.id} ({tile.size_class.value})")
    for tile in layout.unplaced:
        legend.append(f"-  {tile.id} unplaced: {layout.diagnostics[tile.id].value}")
    return "\n".join(["".join(line) for line in grid] + [""] + legend)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _resolve_hints(tiles: list[Tile]) -> dict[str, str]:
    """Map tile id → id of the tile it wants to sit below.

    Drops hints naming tiles outside ``tiles`` and hints on a cycle.
    """
    known = {t.id for t in tiles}
    hints: dict[str, str] = {}
    for tile in tiles:
        target = tile.below_tile_id
        if target is None:
            continue
        if target not in known:
            log.info("packer.hint_dropped", tile=tile.id, target=target, reason="unknown_target")
            continue
        hints[tile.id] = target

    # Each tile has at most one out-edge, so a walk from any node either ends
    # at an unhinted tile or re-enters the current path.
    state: dict[str, int] = {}
    cyclic: set[str] = set()
    for start in hints:
        path: list[str] = []
        node = start
        while node in hints and node not in state:
            state[node] = _VISITING
            path.append(node)
            node = hints[node]
        if state.get(node) == _VISITING:
            cyclic.update(path[path.index(node):])
        for visited in path:
            state[visited] = _DONE

    for tile_id in sorted(cyclic):
        log.info("packer.hint_dropped", tile=tile_id, target=hints[tile_id], reason="cycle")
        del hints[tile_id]
    return hints


def _placement_order(tiles: list[Tile], hints: dict[str, str]) -> list[Tile]:
    """Priority tiers, highest first; topological order inside each tier."""
    tiers: dict[int, list[tuple[int, Tile]]] = defaultdict(list)
    for index, tile in enumerate(tiles):
        tiers[tile.size_class.priority].append((index, tile))

    ordered: list[Tile] = []
    for priority in sorted(tiers, reverse=True):
        members = tiers[priority]
        in_tier = {tile.id for _, tile in members}
        dependents: dict[str, list[tuple[int, Tile]]] = defaultdict(list)
        ready: list[tuple[int, Tile]] = []
        for index, tile in members:
            target = hints.get(tile.id)
            if target in in_tier:
                dependents[target].append((index, tile))
            else:
                ready.append((index, tile))

        heapq.heapify(ready)
        while ready:
            index, tile = heapq.heappop(ready)
            ordered.append(tile)
            for item in dependents.pop(tile.id, []):
                heapq.heappush(ready, item)
    return ordered


def _fits(
    tile: Tile,
    column: int,
    row: int,
    columns: int,
    rows: int,
    occupied: set[tuple[int, int]],
) -> bool:
    size = tile.size_class
    if column < 0 or row < 0:
        return False
    if column + size.width > columns or row + size.height > rows:
        return False
    if len(occupied) + size.footprint > columns * rows:
        return False
    return all(
        (column + dx, row + dy) not in occupied
        for dx in range(size.width)
        for dy in range(size.height)
    )


def _scan(
    tile: Tile,
    columns: int,
    rows: int,
    occupied: set[tuple[int, int]],
) -> tuple[int, int] | None:
    for row in range(rows):
        for column in range(columns):
            if _fits(tile, column, row, columns, rows, occupied):
                return column, row
    return None
