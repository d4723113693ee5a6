"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request

from avatartagger.api.middleware import verify_api_key
from avatartagger.api.schemas import (
    ClassifyRequest,
    ClassifyResponse,
    HealthResponse,
    LabelsResponse,
    TagResultOut,
)
from avatartagger.ml.labels import TAG_LABELS

if TYPE_CHECKING:
    from avatartagger.config import Settings
    from avatartagger.service import AvatarTagger

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_tagger(request: Request) -> AvatarTagger:
    tagger: AvatarTagger = request.app.state.tagger
    return tagger


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    summary="Classify an avatar image by URL",
)
async def classify(body: ClassifyRequest, request: Request) -> ClassifyResponse:
    """Return content tags for the image, or a null result when there is no signal."""
    tagger = _get_tagger(request)
    result = await tagger.classify(body.url, trace_id=body.trace_id)
    return ClassifyResponse(result=None if result is None else TagResultOut.from_result(result))


@router.get(
    "/labels",
    response_model=LabelsResponse,
    summary="List the label vector",
)
async def labels() -> LabelsResponse:
    """Return labels in the same order as the probability arrays."""
    return LabelsResponse(labels=list(TAG_LABELS))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    tagger = _get_tagger(request)
    load_error = tagger.models.load_error
    layout = tagger.runner.layout
    return HealthResponse(
        status="ok",
        enabled=tagger.enabled,
        gpu=settings.device == "cuda",
        model_loaded=tagger.models.loaded,
        model_error=None if load_error is None else str(load_error),
        layout=None if layout is None else layout.value,
        cache_size=len(tagger.cache),
        concurrent_requests=tagger.pool.active_count,
        queue_depth=tagger.pool.queue_depth,
    )
