"""Exceptions raised by the insight pipeline.

Placement problems are never raised — the packer returns them as data.
"""


class TileboardError(Exception):
    """Base class for tileboard errors."""


class InsightFetchError(TileboardError):
    """One tile's insight request failed (transport, HTTP status or payload)."""

    def __init__(self, tile_id: str, reason: str):
        super().__init__(f"insight fetch failed for {tile_id}: {reason}")
        self.tile_id = tile_id
        self.reason = reason
