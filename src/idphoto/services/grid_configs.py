"""Static catalog of print layouts (grid configs).

Loaded at import, immutable, never persisted per job. Each layout is an
ordered list of tiles; a tile's size class fixes its pixel dimensions on
the 4R print canvas (4x6 inches at 300 DPI).
"""

from dataclasses import dataclass
from enum import Enum


class TileSize(str, Enum):
    """Tile size class, largest first."""

    LARGE = "large"  # 2x2 inch
    MEDIUM = "medium"  # passport, 35x45 mm
    SMALL = "small"  # 1x1 inch


@dataclass(frozen=True)
class TileDimensions:
    width: int
    height: int


TILE_DIMENSIONS: dict[TileSize, TileDimensions] = {
    TileSize.LARGE: TileDimensions(width=600, height=600),
    TileSize.MEDIUM: TileDimensions(width=413, height=531),
    TileSize.SMALL: TileDimensions(width=300, height=300),
}

# Packing order: larger tiles are placed first
SIZE_PACKING_ORDER: dict[TileSize, int] = {
    TileSize.LARGE: 0,
    TileSize.MEDIUM: 1,
    TileSize.SMALL: 2,
}


@dataclass(frozen=True)
class GridConfig:
    """A named print layout and its price (PHP)."""

    id: str
    name: str
    description: str
    tiles: tuple[TileSize, ...]
    price: int
    popular: bool = False


def _tiles(*groups: tuple[int, TileSize]) -> tuple[TileSize, ...]:
    return tuple(size for count, size in groups for _ in range(count))


GRID_CONFIGS: tuple[GridConfig, ...] = (
    GridConfig(
        id="2x-passport",
        name="DUO",
        description="2x Passport Photos (35x45mm)",
        tiles=_tiles((2, TileSize.MEDIUM)),
        price=50,
    ),
    GridConfig(
        id="solo-a",
        name="SOLO A",
        description="6x Passport Photos (35x45mm)",
        tiles=_tiles((6, TileSize.MEDIUM)),
        price=80,
    ),
    GridConfig(
        id="solo-b",
        name="SOLO B",
        description="6x 2x2 Photos",
        tiles=_tiles((6, TileSize.LARGE)),
        price=80,
    ),
    GridConfig(
        id="combo-c",
        name="COMBO C",
        description="4x 2x2 + 8x 1x1 Photos",
        tiles=_tiles((4, TileSize.LARGE), (8, TileSize.SMALL)),
        price=90,
        popular=True,
    ),
    GridConfig(
        id="combo-d",
        name="COMBO D",
        description="2x 2x2 + 16x 1x1 Photos",
        tiles=_tiles((2, TileSize.LARGE), (16, TileSize.SMALL)),
        price=100,
    ),
    GridConfig(
        id="solo-c",
        name="SOLO C",
        description="24x 1x1 Photos",
        tiles=_tiles((24, TileSize.SMALL)),
        price=100,
    ),
)

_BY_ID = {config.id: config for config in GRID_CONFIGS}


def get_grid_config(grid_config_id: str) -> GridConfig | None:
    return _BY_ID.get(grid_config_id)


def grid_config_exists(grid_config_id: str) -> bool:
    return grid_config_id in _BY_ID
