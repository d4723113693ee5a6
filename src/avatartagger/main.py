"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from avatartagger.api.routes import router
from avatartagger.config import get_settings
from avatartagger.service import AvatarTagger

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: build the tagger on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting avatar tagger (enabled=%s, device=%s, model=%s, input_size=%d)",
        settings.enabled,
        settings.device,
        settings.model_path,
        settings.input_size,
    )

    # The model itself loads lazily on the first classification.
    tagger = AvatarTagger(settings)
    app.state.tagger = tagger

    logger.info("Avatar tagger ready")
    yield

    logger.info("Shutting down avatar tagger")
    await tagger.aclose()
    logger.info("Avatar tagger shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Avatar Tagger",
        description="Multi-crop NSFW/anthro content tagging for avatar moderation review",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
