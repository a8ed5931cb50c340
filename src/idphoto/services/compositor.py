"""Print layout compositor.

Packs a grid config's tiles onto a fixed 1200x1800 canvas (4R paper at
300 DPI) and renders assigned images into them.

Packing is deterministic:
1. Tiles are expanded to pixel sizes and a copy is sorted large -> small
   (stable, so equal sizes keep catalog order).
2. Rows are filled greedily left to right; a tile that would overflow the
   width wraps to a new row, a tile that would overflow the height is skipped.
3. The packed block is centered on the canvas.
4. Positions are returned in original tile order.
"""

import asyncio
import io
from dataclasses import dataclass, replace

import structlog
from PIL import Image, ImageOps

from idphoto.services.exceptions import UnknownGridConfigError
from idphoto.services.grid_configs import (
    SIZE_PACKING_ORDER,
    TILE_DIMENSIONS,
    GridConfig,
    TileSize,
    get_grid_config,
)
from idphoto.services.storage import Storage

logger = structlog.get_logger(__name__)

CANVAS_WIDTH = 1200
CANVAS_HEIGHT = 1800
BACKGROUND_COLOR = (255, 255, 255)
JPEG_QUALITY = 95


@dataclass(frozen=True)
class TilePosition:
    """Placement of one tile on the canvas (ephemeral, never persisted)."""

    index: int
    x: int
    y: int
    width: int
    height: int
    size: TileSize


def calculate_tile_positions(
    config: GridConfig,
    canvas_width: int = CANVAS_WIDTH,
    canvas_height: int = CANVAS_HEIGHT,
) -> list[TilePosition]:
    """Row-pack a grid config's tiles and center the result.

    Tiles that do not fit are logged and left out; that is a catalog
    problem, not a runtime failure.
    """
    tiles = [
        TilePosition(
            index=index,
            x=0,
            y=0,
            width=TILE_DIMENSIONS[size].width,
            height=TILE_DIMENSIONS[size].height,
            size=size,
        )
        for index, size in enumerate(config.tiles)
    ]
    sorted_tiles = sorted(tiles, key=lambda tile: SIZE_PACKING_ORDER[tile.size])

    placed: list[TilePosition] = []
    current_x = 0
    current_y = 0
    row_height = 0

    for tile in sorted_tiles:
        if current_x + tile.width > canvas_width:
            current_x = 0
            current_y += row_height
            row_height = 0

        if current_y + tile.height > canvas_height:
            logger.warning(
                "compositor.tile_skipped",
                grid_config_id=config.id,
                tile_index=tile.index,
                size=tile.size.value,
            )
            continue

        placed.append(replace(tile, x=current_x, y=current_y))
        current_x += tile.width
        row_height = max(row_height, tile.height)

    max_x = max((pos.x + pos.width for pos in placed), default=0)
    max_y = max((pos.y + pos.height for pos in placed), default=0)
    offset_x = (canvas_width - max_x) // 2
    offset_y = (canvas_height - max_y) // 2

    centered = [replace(pos, x=pos.x + offset_x, y=pos.y + offset_y) for pos in placed]
    centered.sort(key=lambda pos: pos.index)
    return centered


def _fit_to_tile(image_bytes: bytes, width: int, height: int) -> Image.Image:
    """Decode and resize-to-cover (center crop) to exact tile dimensions."""
    with Image.open(io.BytesIO(image_bytes)) as source:
        source = ImageOps.exif_transpose(source)
        return ImageOps.fit(
            source.convert("RGB"),
            (width, height),
            method=Image.Resampling.LANCZOS,
            centering=(0.5, 0.5),
        )


def _render_canvas(tiles: list[tuple[Image.Image, TilePosition]]) -> bytes:
    canvas = Image.new("RGB", (CANVAS_WIDTH, CANVAS_HEIGHT), BACKGROUND_COLOR)
    for tile_image, position in tiles:
        canvas.paste(tile_image, (position.x, position.y))

    output = io.BytesIO()
    canvas.save(output, format="JPEG", quality=JPEG_QUALITY)
    return output.getvalue()


class Compositor:
    """Renders print-ready grid images from generated variations."""

    def __init__(self, storage: Storage, image_semaphore: asyncio.Semaphore):
        """Initialize compositor.

        Args:
            storage: Object storage holding the generated images
            image_semaphore: Process-wide cap on concurrent decode/resize work
        """
        self.storage = storage
        self.image_semaphore = image_semaphore

    async def compose_grid(
        self,
        grid_config_id: str,
        tile_assignments: dict[int, int],
        image_keys: list[str],
    ) -> bytes:
        """Compose a 4R print of the given layout.

        Args:
            grid_config_id: Catalog layout id
            tile_assignments: Tile index -> index into ``image_keys``
            image_keys: Storage keys of the (unwatermarked) variations

        Returns:
            JPEG bytes of the full 1200x1800 canvas

        Raises:
            UnknownGridConfigError: If the layout is not in the catalog
        """
        config = get_grid_config(grid_config_id)
        if config is None:
            raise UnknownGridConfigError(f"Grid config not found: {grid_config_id}")

        logger.info(
            "compositor.compose_started",
            grid_config_id=grid_config_id,
            image_count=len(image_keys),
        )

        positions = calculate_tile_positions(config)

        # One download per distinct variation, however many tiles use it
        sources: dict[int, bytes] = {}
        for image_index in sorted(set(tile_assignments.values())):
            if not 0 <= image_index < len(image_keys):
                logger.warning("compositor.image_index_out_of_range", image_index=image_index)
                continue
            key = image_keys[image_index]
            try:
                sources[image_index] = await self.storage.get(key)
            except Exception as e:
                logger.error("compositor.image_load_failed", key=key, error=str(e))

        resized: dict[tuple[int, int, int], Image.Image] = {}
        tiles: list[tuple[Image.Image, TilePosition]] = []

        for position in positions:
            image_index = tile_assignments.get(position.index)
            if image_index is None:
                continue

            source = sources.get(image_index)
            if source is None:
                continue

            cache_key = (image_index, position.width, position.height)
            if cache_key not in resized:
                try:
                    async with self.image_semaphore:
                        resized[cache_key] = await asyncio.to_thread(
                            _fit_to_tile, source, position.width, position.height
                        )
                except Exception as e:
                    logger.error(
                        "compositor.resize_failed",
                        tile_index=position.index,
                        image_index=image_index,
                        error=str(e),
                    )
                    continue

            tiles.append((resized[cache_key], position))

        async with self.image_semaphore:
            result = await asyncio.to_thread(_render_canvas, tiles)

        logger.info(
            "compositor.compose_completed",
            grid_config_id=grid_config_id,
            tiles_rendered=len(tiles),
            size_bytes=len(result),
        )
        return result
