#!/usr/bin/env python3
"""Pack a tile catalog into the configured grid and print the occupancy map.

The catalog is a JSON list of tiles:
    [{"id": "npv", "size_class": "large", "title": "NPV", "display_value": "$1.2T"}, ...]

Run: PYTHONPATH=. python scripts/render_layout.py catalog.json [columns rows]
"""
import json
import sys
from pathlib import Path

import structlog

log = structlog.get_logger()


def main(argv: list[str]) -> int:
    from config.settings import get_settings
    from tileboard.core.models import Tile
    from tileboard.core.packer import generate_layout, render_ascii

    if not argv:
        print(__doc__, file=sys.stderr)
        return 2

    settings = get_settings()
    columns = int(argv[1]) if len(argv) > 2 else settings.grid_columns
    rows = int(argv[2]) if len(argv) > 2 else settings.grid_rows

    raw = json.loads(Path(argv[0]).read_text())
    tiles = [Tile.model_validate(item) for item in raw]
    log.info("render_layout.catalog_loaded", path=argv[0], tiles=len(tiles))

    layout = generate_layout(tiles, columns, rows)
    print(render_ascii(layout))
    print(f"\nutilization: {layout.utilization:.0%}")
    return 0 if not layout.unplaced else 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
