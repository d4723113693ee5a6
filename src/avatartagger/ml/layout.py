"""Layout-aware inference: find out whether the model wants NCHW or NHWC.

Declared input shapes are often symbolic or wrong, so the runner guesses
from the metadata, tries the guess, and on a shape mismatch tries the other
layout once. The layout that works is cached on the runner and reused until
a forward pass under it fails.
"""

from __future__ import annotations

import logging
import re
import threading
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import numpy as np

from avatartagger.exceptions import InferenceError, ShapeMismatchError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from avatartagger.ml.model_manager import InferenceBackend, ModelSessionManager
    from avatartagger.ml.preprocessing import NormalizedTensorPair

logger = logging.getLogger(__name__)


class LayoutMode(StrEnum):
    CHANNELS_FIRST = "NCHW"
    CHANNELS_LAST = "NHWC"

    @property
    def opposite(self) -> LayoutMode:
        if self is LayoutMode.CHANNELS_FIRST:
            return LayoutMode.CHANNELS_LAST
        return LayoutMode.CHANNELS_FIRST


# Known ONNX Runtime wording for a wrongly shaped input. If the backend
# changes its messages these stop matching and failures are treated as
# non-layout errors (no retry).
_MISMATCH_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Got:\s*3\s*Expected:\s*448", re.IGNORECASE),
    re.compile(r"Got:\s*448\s*Expected:\s*3", re.IGNORECASE),
    re.compile(re.escape("Invalid rank")),
    re.compile(re.escape("Invalid shape")),
)


def is_shape_mismatch(exc: BaseException | None) -> bool:
    """Return True if a backend error message looks like a layout problem."""
    if exc is None:
        return False
    message = str(exc)
    if not message:
        return False
    return any(pattern.search(message) for pattern in _MISMATCH_PATTERNS)


def guess_layout(dims: Sequence[int | str | None]) -> LayoutMode:
    """Guess the layout from declared input dims, defaulting to NCHW."""
    if len(dims) == 4:
        if str(dims[1]) == "3":
            return LayoutMode.CHANNELS_FIRST
        if str(dims[3]) == "3":
            return LayoutMode.CHANNELS_LAST
    return LayoutMode.CHANNELS_FIRST


class LayoutAwareRunner:
    """Runs forward passes with a detected-and-cached tensor layout."""

    def __init__(self, models: ModelSessionManager) -> None:
        self._models = models
        self._probe_lock = threading.Lock()
        self._layout: LayoutMode | None = None
        self._probe_logged = False
        self._probe_count = 0

    @property
    def layout(self) -> LayoutMode | None:
        """The detected layout, or None before the first successful pass."""
        return self._layout

    @property
    def probe_count(self) -> int:
        """How many times the layout has been probed."""
        return self._probe_count

    @property
    def _backend(self) -> InferenceBackend:
        return self._models.backend

    def run(self, tensors: NormalizedTensorPair) -> NDArray[np.float32]:
        """Return the output probabilities for one crop.

        Raises:
            ModelUnavailableError: If the model cannot be loaded.
            InferenceError: If no layout produced a result.
        """
        session = self._models.get_session()

        cached = self._layout
        if cached is not None:
            try:
                return self._forward(session, tensors, cached)
            except InferenceError as exc:
                logger.warning("Cached layout %s failed (%s), re-detecting", cached, exc)
                with self._probe_lock:
                    if self._layout is cached:
                        self._layout = None

        return self._probe(session, tensors)

    def _probe(self, session: Any, tensors: NormalizedTensorPair) -> NDArray[np.float32]:
        with self._probe_lock:
            # Another request may have detected the layout while we waited.
            detected = self._layout
            if detected is not None:
                try:
                    return self._forward(session, tensors, detected)
                except InferenceError as exc:
                    logger.warning("Detected layout %s failed (%s), re-detecting", detected, exc)
                    self._layout = None

            self._probe_count += 1
            dims = self._backend.input_dims(session)
            layout = guess_layout(dims)
            if not self._probe_logged:
                logger.info("Input layout probe: dims=%s guess=%s", dims, layout)
                self._probe_logged = True

            try:
                probs = self._forward(session, tensors, layout)
            except ShapeMismatchError as exc:
                retry = layout.opposite
                logger.info("Shape mismatch under %s (%s), retrying with %s", layout, exc, retry)
                probs = self._forward(session, tensors, retry)
                layout = retry

            self._layout = layout
            logger.info("Detected input layout %s", layout)
            return probs

    def _forward(self, session: Any, tensors: NormalizedTensorPair, layout: LayoutMode) -> NDArray[np.float32]:
        source = tensors.channels_first if layout is LayoutMode.CHANNELS_FIRST else tensors.channels_last
        batch = source[np.newaxis, ...]
        try:
            output = self._backend.run(session, batch, layout)
        except Exception as exc:
            if is_shape_mismatch(exc):
                raise ShapeMismatchError(str(exc)) from exc
            raise InferenceError(str(exc)) from exc

        try:
            probs = np.asarray(output, dtype=np.float32)
        except (TypeError, ValueError) as exc:
            raise InferenceError(f"Unexpected output format: {exc}") from exc
        if probs.ndim != 1 or probs.size == 0:
            raise InferenceError(f"Unexpected output shape {probs.shape}")
        return probs
