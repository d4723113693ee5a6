"""Square sampling windows for multi-crop classification."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CropWindow:
    """A square region of the source image, in pixels."""

    x: int
    y: int
    w: int
    h: int


def generate_crop_windows(width: int, height: int, input_size: int) -> list[CropWindow]:
    """Return the centre window followed by the four corner windows.

    Each window is a square of side ``min(width, height, input_size)`` that
    lies fully inside the image.

    Raises:
        ValueError: If either dimension is not positive.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image dimensions: {width}x{height}")

    side = max(1, min(width, height, input_size))
    max_x = width - side
    max_y = height - side
    # Round half up so odd slack favours the lower-right.
    center_x = (max_x + 1) // 2
    center_y = (max_y + 1) // 2

    return [
        CropWindow(x=center_x, y=center_y, w=side, h=side),
        CropWindow(x=0, y=0, w=side, h=side),
        CropWindow(x=max_x, y=0, w=side, h=side),
        CropWindow(x=0, y=max_y, w=side, h=side),
        CropWindow(x=max_x, y=max_y, w=side, h=side),
    ]
