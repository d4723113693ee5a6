"""Pydantic request/response schemas for the avatar tagger API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from avatartagger.service import TagResult


class ClassifyRequest(BaseModel):
    """Request body for the classify endpoint."""

    url: str = Field(min_length=1, description="Avatar image URL; also the cache key")
    trace_id: str | None = Field(default=None, description="Opaque identifier echoed in logs")


class TagOut(BaseModel):
    """A single content tag with confidence score."""

    name: str
    confidence: float = Field(ge=0.0, le=1.0)


class TagMetaOut(BaseModel):
    """How the aggregate was produced."""

    crops_used: int = Field(ge=0, le=5)
    early_exit: bool
    timed_out: bool
    layout: Literal["NCHW", "NHWC"] | None


class TagResultOut(BaseModel):
    """Tags plus the per-label aggregate vectors (label order)."""

    tags: list[TagOut]
    mean_probs: list[float]
    max_probs: list[float]
    meta: TagMetaOut

    @classmethod
    def from_result(cls, result: TagResult) -> TagResultOut:
        return cls(
            tags=[TagOut(name=tag.name, confidence=tag.confidence) for tag in result.tags],
            mean_probs=[float(p) for p in result.mean_probs],
            max_probs=[float(p) for p in result.max_probs],
            meta=TagMetaOut(
                crops_used=result.meta.crops_used,
                early_exit=result.meta.early_exit,
                timed_out=result.meta.timed_out,
                layout=None if result.meta.layout is None else result.meta.layout.value,
            ),
        )


class ClassifyResponse(BaseModel):
    """Response for the classify endpoint; ``result`` is null for no signal."""

    result: TagResultOut | None


class LabelsResponse(BaseModel):
    """Ordered label vector matching the probability arrays."""

    labels: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    enabled: bool
    gpu: bool
    model_loaded: bool
    model_error: str | None
    layout: Literal["NCHW", "NHWC"] | None
    cache_size: int
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
