"""Image preprocessing: decode, crop, resize and normalize for the tagger.

Pixel work goes through the ``ImageOps`` protocol so the tensor builder does
not depend on a particular imaging library. ``PillowImageOps`` is the
implementation used in production.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from PIL import Image, UnidentifiedImageError

from avatartagger.exceptions import TensorBuildError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from avatartagger.ml.crops import CropWindow


@dataclass(frozen=True)
class NormalizedTensorPair:
    """The same normalized pixels in both candidate memory layouts.

    ``channels_last`` has shape (H, W, 3) and ``channels_first`` (3, H, W).
    Values lie in [-1, 1].
    """

    channels_last: NDArray[np.float32]
    channels_first: NDArray[np.float32]


class ImageOps(Protocol):
    """Protocol for the imaging primitives the tensor builder relies on."""

    def decode(self, image_bytes: bytes) -> Image.Image:
        """Decode raw bytes into an image with alpha removed and RGB colours.

        Raises:
            TensorBuildError: If the bytes are not a readable image.
        """
        ...

    def to_pixels(self, image: Image.Image, crop: CropWindow | None, size: int) -> NDArray[np.uint8]:
        """Crop (if given) and bilinearly resize to ``size x size``.

        Returns:
            HxWxC uint8 array.
        """
        ...


class PillowImageOps:
    """``ImageOps`` backed by Pillow.

    ``max_pixels`` rejects images whose header declares more pixels than
    allowed, before any pixel data is decoded.
    """

    def __init__(self, max_pixels: int | None = None) -> None:
        self._max_pixels = max_pixels

    def decode(self, image_bytes: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(image_bytes))
            width, height = image.size
            if self._max_pixels is not None and width * height > self._max_pixels:
                raise TensorBuildError(f"Image too large: {width}x{height} exceeds {self._max_pixels} pixels")
            image.load()
        except Image.DecompressionBombError as exc:
            raise TensorBuildError(f"Image too large: {exc}") from exc
        except (UnidentifiedImageError, OSError) as exc:
            raise TensorBuildError(f"Cannot decode image: {exc}") from exc

        # Animated avatars: classify the first frame only.
        if getattr(image, "is_animated", False):
            image.seek(0)

        if image.mode != "RGB":
            image = image.convert("RGB")
        return image

    def to_pixels(self, image: Image.Image, crop: CropWindow | None, size: int) -> NDArray[np.uint8]:
        if crop is not None:
            image = image.crop((crop.x, crop.y, crop.x + crop.w, crop.y + crop.h))
        if image.size != (size, size):
            image = image.resize((size, size), Image.Resampling.BILINEAR)
        return np.asarray(image, dtype=np.uint8)


def normalize(pixels: NDArray[np.uint8]) -> NormalizedTensorPair:
    """Map [0, 255] to [-1, 1] and lay the result out both ways.

    Raises:
        TensorBuildError: If ``pixels`` is not an HxWx3 array.
    """
    if pixels.ndim != 3 or pixels.shape[2] != 3:
        raise TensorBuildError(f"Unexpected pixel layout {pixels.shape}, need HxWx3")

    channels_last = ((pixels.astype(np.float32) / 255.0) - 0.5) / 0.5
    channels_last = np.ascontiguousarray(channels_last, dtype=np.float32)
    channels_first = np.ascontiguousarray(channels_last.transpose(2, 0, 1))
    return NormalizedTensorPair(channels_last=channels_last, channels_first=channels_first)


class TensorBuilder:
    """Builds ``NormalizedTensorPair`` crops of a fixed input size."""

    def __init__(self, input_size: int, ops: ImageOps | None = None) -> None:
        self._input_size = input_size
        self._ops: ImageOps = ops if ops is not None else PillowImageOps()

    @property
    def input_size(self) -> int:
        return self._input_size

    def decode(self, image_bytes: bytes) -> Image.Image:
        """Decode once so every crop of an image shares the same pixels."""
        return self._ops.decode(image_bytes)

    def build(self, image: Image.Image, crop: CropWindow | None = None) -> NormalizedTensorPair:
        """Produce the tensor pair for one crop of a decoded image."""
        try:
            pixels = self._ops.to_pixels(image, crop, self._input_size)
        except (ValueError, OSError) as exc:
            raise TensorBuildError(f"Cannot crop/resize image: {exc}") from exc
        return normalize(pixels)
