"""Shared fixtures and fakes for the avatar tagger tests."""

from __future__ import annotations

import io
import struct
import threading
import time
import zlib
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest
from PIL import Image

from avatartagger.config import Settings
from avatartagger.ml.labels import TAG_LABELS
from avatartagger.ml.layout import LayoutMode

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

# Real ONNX Runtime wording for a channels-first tensor fed to an NHWC model.
NHWC_MISMATCH = (
    "[ONNXRuntimeError] : 2 : INVALID_ARGUMENT : Got invalid dimensions for input: input_1:0 "
    "for the following indices\n index: 1 Got: 3 Expected: 448\n Please fix either the inputs or the model."
)
NCHW_MISMATCH = (
    "[ONNXRuntimeError] : 2 : INVALID_ARGUMENT : Got invalid dimensions for input: input "
    "for the following indices\n index: 1 Got: 448 Expected: 3\n Please fix either the inputs or the model."
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "enabled": True,
        "model_path": "/tmp/avatartagger_test_models/wd-v3-tagger.onnx",
        "device": "cpu",
        "max_concurrent": 2,
        "min_payload_bytes": 1,
        "crop_budget_ms": 10_000,
        "verbose": True,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def make_probs(base: float = 0.01, **named: float) -> NDArray[np.float32]:
    """Probability vector over TAG_LABELS; use ``rating_general`` for ``rating:general``."""
    probs = np.full(len(TAG_LABELS), base, dtype=np.float32)
    for key, value in named.items():
        probs[TAG_LABELS.index(key.replace("rating_", "rating:"))] = value
    return probs


def image_bytes(
    size: tuple[int, int] = (512, 512),
    color: tuple[int, int, int] = (0, 0, 0),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    image = Image.new(mode, size, color if mode == "RGB" else (*color, 255))
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def quadrant_image_bytes() -> bytes:
    """512x512 black image with a white bottom-right quadrant."""
    image = Image.new("RGB", (512, 512), (0, 0, 0))
    image.paste((255, 255, 255), (256, 256, 512, 512))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def png_header_bytes(width: int, height: int) -> bytes:
    """A PNG that declares ``width`` x ``height`` but carries no pixel data."""
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)

    def chunk(kind: bytes, payload: bytes) -> bytes:
        return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", zlib.crc32(kind + payload))

    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IEND", b"")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory ``InferenceBackend`` that only accepts one tensor layout."""

    def __init__(
        self,
        *,
        dims: list[int | str | None] | None = None,
        accepts: LayoutMode | None = LayoutMode.CHANNELS_LAST,
        responder: Callable[[NDArray[np.float32]], Any] | None = None,
        load_error: Exception | None = None,
        run_error: Exception | None = None,
        load_delay: float = 0.0,
        run_delay: float = 0.0,
    ) -> None:
        self.dims: list[int | str | None] = dims if dims is not None else [1, 448, 448, 3]
        self.accepts = accepts
        self.responder = responder or (lambda tensor: make_probs())
        self.load_error = load_error
        self.run_error = run_error
        self.load_delay = load_delay
        self.run_delay = run_delay
        self.load_calls = 0
        self.loaded_paths: list[Path] = []
        self.run_layouts: list[LayoutMode] = []
        self.run_shapes: list[tuple[int, ...]] = []
        self._lock = threading.Lock()

    def load_model(self, path: Path) -> object:
        with self._lock:
            self.load_calls += 1
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.load_error is not None:
            raise self.load_error
        self.loaded_paths.append(path)
        return object()

    def input_dims(self, session: object) -> list[int | str | None]:
        return self.dims

    def run(self, session: object, tensor: NDArray[np.float32], layout: LayoutMode) -> Any:
        with self._lock:
            self.run_layouts.append(layout)
            self.run_shapes.append(tuple(tensor.shape))
        if self.run_delay:
            time.sleep(self.run_delay)
        if self.run_error is not None:
            raise self.run_error
        if self.accepts is not None and layout is not self.accepts:
            raise RuntimeError(NHWC_MISMATCH if self.accepts is LayoutMode.CHANNELS_LAST else NCHW_MISMATCH)
        return self.responder(tensor)


def explicit_quadrant_responder(tensor: NDArray[np.float32]) -> NDArray[np.float32]:
    """Fires only on the crop that is mostly the white bottom-right quadrant."""
    white_fraction = float((tensor > 0).mean())
    if white_fraction > 0.3:
        return make_probs(explicit=0.6, nude=0.35, rating_explicit=0.2, anthro=0.08)
    return make_probs()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def model_file(tmp_path: Path) -> Path:
    path = tmp_path / "models" / "wd-v3-tagger.onnx"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"onnx")
    return path


@pytest.fixture()
def settings(model_file: Path) -> Settings:
    return make_settings(model_path=str(model_file))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
