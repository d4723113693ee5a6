"""Environment-based configuration for the avatar tagger."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from AVATARTAGGER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AVATARTAGGER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Feature flag (off unless explicitly enabled)
    enabled: bool = False

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model file; fetched from HuggingFace when missing and a repo is set
    model_path: str = "models/wd-v3-tagger.onnx"
    model_repo_id: str | None = None
    model_filename: str = "model.onnx"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Multi-crop pipeline
    input_size: int = Field(default=448, ge=1)
    report_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    crop_budget_ms: int = Field(default=200, ge=0)
    early_exit_confidence: float = Field(default=0.95, ge=0.0, le=1.0)

    # Result cache
    cache_ttl_ms: int = Field(default=300_000, ge=0)
    cache_capacity: int = Field(default=100, ge=1)

    # Image acquisition
    fetch_timeout: float = Field(default=5.0, gt=0)
    fetch_size_hint: int | None = Field(default=1024, ge=1)
    min_payload_bytes: int = Field(default=100, ge=0)

    # Input limits
    max_file_size: int = Field(default=10_485_760, ge=1)
    max_image_pixels: int = Field(default=16_777_216, ge=1)

    # Log per-image summaries at INFO instead of DEBUG
    verbose: bool = False


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
