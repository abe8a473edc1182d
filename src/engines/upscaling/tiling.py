"""
Tiled inference for fixed-ratio super-resolution models.

The image is covered by a grid of ``stride``-sized content cells. Each tile
fed to the model is the content cell grown by ``padding`` on every side,
sampled with edge replication where it leaves the image. Only the upscaled
content cell is written back, so every output pixel comes from exactly one
tile and no seams from the padded borders survive.

    stride = tile_size - 2 * padding

    +-----------------------+  tile_size
    |  padding              |
    |    +-------------+    |
    |    |   content   |    |  stride
    |    +-------------+    |
    |                       |
    +-----------------------+
"""

import math
from typing import Callable, List, Optional

import numpy as np

from src.core.logging import get_logger
from src.core.metrics import record_tile_processed
from src.engines.upscaling.progress import CancellationToken
from src.engines.upscaling.providers import UpscalerSession
from src.engines.upscaling.schemas import ImageBuffer, TileDescriptor

logger = get_logger(__name__)

TileCallback = Callable[[int, int], None]


class TilingEngine:
    def __init__(self, tile_size: int = 192, padding: int = 32, scale_factor: int = 4):
        stride = tile_size - 2 * padding
        if stride <= 0:
            raise ValueError(
                f"tile_size ({tile_size}) must be larger than twice the padding ({padding})"
            )
        if scale_factor <= 0:
            raise ValueError(f"scale_factor must be positive, got {scale_factor}")

        self.tile_size = tile_size
        self.padding = padding
        self.scale_factor = scale_factor
        self.stride = stride

    # =========================================================================
    # Grid
    # =========================================================================

    def grid_shape(self, width: int, height: int):
        """Return (tiles_x, tiles_y)."""
        return math.ceil(width / self.stride), math.ceil(height / self.stride)

    def compute_grid(self, width: int, height: int) -> List[TileDescriptor]:
        """Tiles in row-major order."""
        tiles_x, tiles_y = self.grid_shape(width, height)
        return [
            TileDescriptor(
                tx=tx,
                ty=ty,
                origin_x=tx * self.stride - self.padding,
                origin_y=ty * self.stride - self.padding,
                tile_size=self.tile_size,
                padding=self.padding
            )
            for ty in range(tiles_y)
            for tx in range(tiles_x)
        ]

    # =========================================================================
    # Per-tile Steps
    # =========================================================================

    def extract_tile(self, image: ImageBuffer, tile: TileDescriptor) -> np.ndarray:
        """Sample a tile_size x tile_size RGBA window, clamping out-of-range coordinates."""
        ys = np.clip(np.arange(tile.origin_y, tile.origin_y + self.tile_size), 0, image.height - 1)
        xs = np.clip(np.arange(tile.origin_x, tile.origin_x + self.tile_size), 0, image.width - 1)
        return image.pixels[np.ix_(ys, xs)]

    @staticmethod
    def to_tensor(tile_pixels: np.ndarray) -> np.ndarray:
        """RGBA uint8 (H, W, 4) -> float32 NCHW RGB in [0, 1]. Alpha is dropped."""
        rgb = tile_pixels[..., :3].astype(np.float32) / 255.0
        return np.ascontiguousarray(rgb.transpose(2, 0, 1)[np.newaxis, ...])

    def from_tensor(self, output: np.ndarray) -> np.ndarray:
        """float32 NCHW RGB -> opaque RGBA uint8 (H, W, 4)."""
        expected = (1, 3, self.tile_size * self.scale_factor, self.tile_size * self.scale_factor)
        if tuple(output.shape) != expected:
            raise ValueError(
                f"Model returned tensor of shape {tuple(output.shape)}, expected {expected}"
            )

        rgb = np.clip(output[0] * 255.0, 0, 255).round().astype(np.uint8).transpose(1, 2, 0)
        alpha = np.full(rgb.shape[:2] + (1,), 255, dtype=np.uint8)
        return np.concatenate([rgb, alpha], axis=2)

    def run_tile(self, session: UpscalerSession, tile_pixels: np.ndarray) -> np.ndarray:
        return self.from_tensor(session.run(self.to_tensor(tile_pixels)))

    def stitch_tile(self, canvas: ImageBuffer, upscaled: np.ndarray, tile: TileDescriptor):
        """Copy the upscaled content cell into the canvas, clipped at the right and bottom edges."""
        scale = self.scale_factor
        dest_x = tile.content_x * scale
        dest_y = tile.content_y * scale
        crop = self.padding * scale
        valid = self.stride * scale

        copy_w = min(valid, canvas.width - dest_x)
        copy_h = min(valid, canvas.height - dest_y)
        if copy_w <= 0 or copy_h <= 0:
            return

        canvas.pixels[dest_y:dest_y + copy_h, dest_x:dest_x + copy_w] = \
            upscaled[crop:crop + copy_h, crop:crop + copy_w]

    # =========================================================================
    # Whole Image
    # =========================================================================

    def process_tiles(
        self,
        image: ImageBuffer,
        session: UpscalerSession,
        cancellation: Optional[CancellationToken] = None,
        on_tile: Optional[TileCallback] = None
    ) -> ImageBuffer:
        """Upscale ``image`` by ``scale_factor`` tile by tile.

        Cancellation is checked before every tile. Any exception propagates
        as-is and the partial canvas is discarded.
        """
        tiles = self.compute_grid(image.width, image.height)
        total = len(tiles)
        canvas = ImageBuffer.blank(image.width * self.scale_factor, image.height * self.scale_factor)

        tiles_x, tiles_y = self.grid_shape(image.width, image.height)
        logger.info(
            "tile_grid_computed",
            width=image.width,
            height=image.height,
            out_width=canvas.width,
            out_height=canvas.height,
            tiles_x=tiles_x,
            tiles_y=tiles_y,
            tiles=total,
            padding=self.padding,
            device=session.device.value
        )

        for done, tile in enumerate(tiles, start=1):
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            upscaled = self.run_tile(session, self.extract_tile(image, tile))
            self.stitch_tile(canvas, upscaled, tile)
            record_tile_processed(session.device.value)

            if on_tile is not None:
                on_tile(done, total)

        return canvas
