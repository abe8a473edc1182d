"""
Scale finalization for the 4x model output.

The model only produces its native ratio. Any other target scale is reached
by resampling the native result with Lanczos, sized from the source
dimensions so the output is exactly round(source * target_scale).
"""

import io

import numpy as np
from PIL import Image

from src.engines.upscaling.schemas import ImageBuffer

SCALE_EPSILON = 1e-3


class ScaleFinalizer:
    """Brings the model's fixed-ratio output to the requested scale and encodes it."""

    def __init__(self, scale_factor: int = 4):
        self.scale_factor = scale_factor

    def is_native_scale(self, target_scale: float) -> bool:
        return abs(target_scale - self.scale_factor) < SCALE_EPSILON

    def target_size(self, width: int, height: int, target_scale: float):
        """Output size for an original (pre-upscale) image of width x height."""
        return int(round(width * target_scale)), int(round(height * target_scale))

    def finalize(self, image: ImageBuffer, target_scale: float) -> ImageBuffer:
        """Resize a scale_factor-upscaled image down to ``target_scale`` with Lanczos."""
        if self.is_native_scale(target_scale):
            return image.copy()

        original_w = image.width // self.scale_factor
        original_h = image.height // self.scale_factor
        target_w, target_h = self.target_size(original_w, original_h, target_scale)

        resized = Image.fromarray(image.pixels).resize(
            (target_w, target_h),
            Image.Resampling.LANCZOS
        )
        return ImageBuffer.from_array(np.array(resized.convert("RGBA")))

    @staticmethod
    def encode_png(image: ImageBuffer) -> bytes:
        buffer = io.BytesIO()
        Image.fromarray(image.pixels).save(buffer, format="PNG")
        return buffer.getvalue()
