"""Avatar classification entry point.

``AvatarTagger`` owns the process-wide pipeline state (model session,
detected tensor layout, result cache) and is built once at startup.
``classify`` never raises: every failure ends in a partial result or None.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from avatartagger.cache import ResultCache
from avatartagger.exceptions import ImageFetchError, ModelUnavailableError, TensorBuildError
from avatartagger.fetch import ImageFetcher
from avatartagger.ml.inference import InferencePool
from avatartagger.ml.labels import TAG_LABELS
from avatartagger.ml.layout import LayoutAwareRunner
from avatartagger.ml.model_manager import ModelSessionManager, OnnxInferenceBackend
from avatartagger.ml.orchestrator import MultiCropOrchestrator, extract_tags
from avatartagger.ml.preprocessing import PillowImageOps, TensorBuilder

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from avatartagger.config import Settings
    from avatartagger.ml.layout import LayoutMode
    from avatartagger.ml.model_manager import InferenceBackend
    from avatartagger.ml.orchestrator import AggregateResult, Tag
    from avatartagger.ml.preprocessing import ImageOps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagMeta:
    crops_used: int
    early_exit: bool
    timed_out: bool
    layout: LayoutMode | None


@dataclass(frozen=True)
class TagResult:
    """Tags above the reporting threshold plus the raw aggregate vectors."""

    tags: tuple[Tag, ...]
    mean_probs: NDArray[np.float32]
    max_probs: NDArray[np.float32]
    meta: TagMeta


class AvatarTagger:
    """Classifies avatar images by URL with caching and fail-soft semantics."""

    def __init__(
        self,
        settings: Settings,
        *,
        backend: InferenceBackend | None = None,
        image_ops: ImageOps | None = None,
        fetcher: ImageFetcher | None = None,
        cache: ResultCache | None = None,
    ) -> None:
        self._settings = settings
        self._models = ModelSessionManager(
            settings,
            backend if backend is not None else OnnxInferenceBackend(settings),
        )
        self._runner = LayoutAwareRunner(self._models)
        self._builder = TensorBuilder(
            settings.input_size,
            image_ops if image_ops is not None else PillowImageOps(max_pixels=settings.max_image_pixels),
        )
        self._pool = InferencePool(settings)
        self._orchestrator = MultiCropOrchestrator(settings, self._builder, self._runner, self._pool)
        self._fetcher = fetcher if fetcher is not None else ImageFetcher(settings)
        self._cache = (
            cache
            if cache is not None
            else ResultCache(ttl_seconds=settings.cache_ttl_ms / 1000.0, capacity=settings.cache_capacity)
        )

    # -- Public API ---------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    @property
    def models(self) -> ModelSessionManager:
        return self._models

    @property
    def runner(self) -> LayoutAwareRunner:
        return self._runner

    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def pool(self) -> InferencePool:
        return self._pool

    async def classify(self, image_ref: str, *, trace_id: str | None = None) -> TagResult | None:
        """Return tags for the image at ``image_ref``, or None for no signal."""
        if not self._settings.enabled:
            return None

        try:
            return await self._classify(image_ref, trace_id)
        except Exception:
            logger.exception("Classification failed for %s (trace=%s)", image_ref, trace_id)
            return None

    async def aclose(self) -> None:
        await self._fetcher.aclose()
        self._pool.shutdown()

    # -- Internal -----------------------------------------------------------

    async def _classify(self, image_ref: str, trace_id: str | None) -> TagResult | None:
        cached = self._cache.get(image_ref)
        if cached is not None:
            self._log("Cache hit for %s (trace=%s)", image_ref, trace_id)
            return cached.result

        try:
            await self._pool.run(self._models.get_session)
        except ModelUnavailableError:
            logger.debug("Model unavailable, no signal for %s", image_ref)
            return None

        try:
            data = await self._fetcher.fetch(image_ref)
        except ImageFetchError as exc:
            logger.warning("%s (trace=%s)", exc, trace_id)
            return None

        try:
            image = await self._pool.run(self._builder.decode, data)
        except TensorBuildError as exc:
            logger.warning("Undecodable image at %s: %s (trace=%s)", image_ref, exc, trace_id)
            return None

        aggregate = await self._orchestrator.run(image, trace_id=trace_id)
        if aggregate is None:
            logger.info("No crop of %s produced a result (trace=%s)", image_ref, trace_id)
            return None

        result = self._build_result(aggregate)
        self._log_summary(image_ref, trace_id, result)
        self._cache.put(image_ref, result)
        return result

    def _build_result(self, aggregate: AggregateResult) -> TagResult:
        tags = extract_tags(aggregate.max_probs, TAG_LABELS, self._settings.report_threshold)
        return TagResult(
            tags=tuple(tags),
            mean_probs=aggregate.mean_probs,
            max_probs=aggregate.max_probs,
            meta=TagMeta(
                crops_used=aggregate.crops_used,
                early_exit=aggregate.early_exit,
                timed_out=aggregate.timed_out,
                layout=self._runner.layout,
            ),
        )

    def _log_summary(self, image_ref: str, trace_id: str | None, result: TagResult) -> None:
        top = ", ".join(f"{tag.name}={tag.confidence:.3f}" for tag in result.tags[:5])
        self._log(
            "Tag summary for %s (trace=%s): crops=%d early_exit=%s timed_out=%s layout=%s top=[%s]",
            image_ref,
            trace_id,
            result.meta.crops_used,
            result.meta.early_exit,
            result.meta.timed_out,
            result.meta.layout,
            top,
        )

    def _log(self, msg: str, *args: object) -> None:
        level = logging.INFO if self._settings.verbose else logging.DEBUG
        logger.log(level, msg, *args)
