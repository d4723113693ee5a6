"""Multi-crop classification loop and cross-crop aggregation.

Crops are processed one after another (centre first, then the corners) so
that the early-exit and per-crop budget checks can stop the loop between
crops. A single crop that sees explicit content anywhere in frame is enough,
so tagging uses the per-label maximum; the mean is kept for tuning.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from avatartagger.exceptions import InferenceError, TensorBuildError
from avatartagger.ml.crops import generate_crop_windows
from avatartagger.ml.labels import EARLY_EXIT_LABELS, TAG_LABELS

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray
    from PIL import Image

    from avatartagger.config import Settings
    from avatartagger.ml.crops import CropWindow
    from avatartagger.ml.inference import InferencePool
    from avatartagger.ml.layout import LayoutAwareRunner
    from avatartagger.ml.preprocessing import TensorBuilder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tag:
    """A label whose aggregate confidence passed the reporting threshold."""

    name: str
    confidence: float


@dataclass(frozen=True)
class AggregateResult:
    """Per-label mean and max over every crop that produced probabilities."""

    mean_probs: NDArray[np.float32]
    max_probs: NDArray[np.float32]
    crops_used: int
    early_exit: bool
    timed_out: bool


def aggregate(
    vectors: Sequence[NDArray[np.float32]],
    *,
    early_exit: bool = False,
    timed_out: bool = False,
) -> AggregateResult | None:
    """Combine per-crop probability vectors, or None if there are none."""
    if not vectors:
        return None

    stacked = np.stack([np.asarray(v, dtype=np.float32) for v in vectors])
    mean_probs = stacked.mean(axis=0, dtype=np.float64).astype(np.float32)
    max_probs = stacked.max(axis=0)
    mean_probs.setflags(write=False)
    max_probs.setflags(write=False)
    return AggregateResult(
        mean_probs=mean_probs,
        max_probs=max_probs,
        crops_used=len(vectors),
        early_exit=early_exit,
        timed_out=timed_out,
    )


def extract_tags(max_probs: Sequence[float], labels: Sequence[str], threshold: float) -> list[Tag]:
    """Return tags above ``threshold``, highest confidence first."""
    count = min(len(max_probs), len(labels))
    tags = [
        Tag(name=labels[i], confidence=float(max_probs[i])) for i in range(count) if float(max_probs[i]) > threshold
    ]
    # sort is stable, so ties keep label order
    tags.sort(key=lambda tag: tag.confidence, reverse=True)
    return tags


class MultiCropOrchestrator:
    """Drives the crop loop for one decoded image."""

    def __init__(
        self,
        settings: Settings,
        builder: TensorBuilder,
        runner: LayoutAwareRunner,
        pool: InferencePool,
        labels: Sequence[str] = TAG_LABELS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._builder = builder
        self._runner = runner
        self._pool = pool
        self._clock = clock
        self._budget = settings.crop_budget_ms / 1000.0
        self._exit_indices = [labels.index(name) for name in EARLY_EXIT_LABELS if name in labels]

    async def run(self, image: Image.Image, *, trace_id: str | None = None) -> AggregateResult | None:
        """Classify up to five crops of ``image`` and aggregate the results."""
        width, height = image.size
        crops = generate_crop_windows(width, height, self._builder.input_size)

        collected: list[NDArray[np.float32]] = []
        early_exit = False
        timed_out = False

        for index, crop in enumerate(crops):
            started = self._clock()
            probs = await self._classify_crop(image, crop, index, trace_id)

            if probs is not None:
                collected.append(probs)
                if self._is_confident(probs):
                    early_exit = True
                    break

            elapsed = self._clock() - started
            if elapsed > self._budget:
                timed_out = True
                logger.info(
                    "Crop %d took %.0fms (budget %dms), skipping remaining crops (trace=%s)",
                    index,
                    elapsed * 1000,
                    self._settings.crop_budget_ms,
                    trace_id,
                )
                break

        return aggregate(collected, early_exit=early_exit, timed_out=timed_out)

    async def _classify_crop(
        self, image: Image.Image, crop: CropWindow, index: int, trace_id: str | None
    ) -> NDArray[np.float32] | None:
        try:
            tensors = await self._pool.run(self._builder.build, image, crop)
        except (TensorBuildError, TimeoutError) as exc:
            logger.warning("Skipping crop %d: %s (trace=%s)", index, exc, trace_id)
            return None

        try:
            return await self._pool.run(self._runner.run, tensors)
        except (InferenceError, TimeoutError) as exc:
            logger.warning("Inference failed for crop %d: %s (trace=%s)", index, exc, trace_id)
            return None

    def _is_confident(self, probs: NDArray[np.float32]) -> bool:
        threshold = self._settings.early_exit_confidence
        return any(i < probs.size and float(probs[i]) >= threshold for i in self._exit_indices)
