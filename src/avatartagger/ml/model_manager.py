"""Model manager: resolve, load and hold the tagger's ONNX session.

The session is created lazily on first use and shared for the life of the
process. A failed load is remembered so later requests short-circuit instead
of hitting the file system (or HuggingFace) on every avatar.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from avatartagger.exceptions import ModelUnavailableError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from avatartagger.config import Settings
    from avatartagger.ml.layout import LayoutMode

logger = logging.getLogger(__name__)

_DOWNLOAD_HINT_URL = "https://huggingface.co/SmilingWolf/wd-v1-4-moat-tagger-v2/resolve/main/model.onnx"


# ---------------------------------------------------------------------------
# Backend protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class InferenceBackend(Protocol):
    """Protocol for the inference library behind the tagger."""

    def load_model(self, path: Path) -> Any:
        """Load a model file and return an opaque session handle."""
        ...

    def input_dims(self, session: Any) -> list[int | str | None]:
        """Return the declared input dimensions, which may be symbolic."""
        ...

    def run(self, session: Any, tensor: NDArray[np.float32], layout: LayoutMode) -> NDArray[np.float32]:
        """Run one forward pass on a batched 4-D tensor.

        Returns:
            1-D output probability vector for the single batch item.
        """
        ...


# ---------------------------------------------------------------------------
# ONNX Runtime backend
# ---------------------------------------------------------------------------


class OnnxInferenceBackend:
    """``InferenceBackend`` backed by ONNX Runtime."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    def load_model(self, path: Path) -> InferenceSession:
        return InferenceSession(
            str(path),
            sess_options=self._session_options,
            providers=self._providers,
        )

    def input_dims(self, session: InferenceSession) -> list[int | str | None]:
        inputs = session.get_inputs()
        if not inputs:
            return []
        return list(inputs[0].shape)

    def run(self, session: InferenceSession, tensor: NDArray[np.float32], layout: LayoutMode) -> NDArray[np.float32]:
        input_name = session.get_inputs()[0].name
        outputs = session.run(None, {input_name: tensor})
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [("CUDAExecutionProvider", {"device_id": 0}), "CPUExecutionProvider"]
        if device == "openvino":
            return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        else:
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_ENABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Session holder
# ---------------------------------------------------------------------------


class ModelSessionManager:
    """Lazily loads the tagger model once and caches success or failure."""

    def __init__(self, settings: Settings, backend: InferenceBackend) -> None:
        self._settings = settings
        self._backend = backend
        self._lock = threading.Lock()
        self._session: Any | None = None
        self._load_error: Exception | None = None

    @property
    def backend(self) -> InferenceBackend:
        return self._backend

    @property
    def loaded(self) -> bool:
        return self._session is not None

    @property
    def load_error(self) -> Exception | None:
        return self._load_error

    def get_session(self) -> Any:
        """Return the shared session, loading it on first call.

        Raises:
            ModelUnavailableError: If this or an earlier load failed.
        """
        session = self._session
        if session is not None:
            return session
        if self._load_error is not None:
            raise ModelUnavailableError(str(self._load_error)) from self._load_error

        with self._lock:
            # Double-check: another thread may have finished loading while we waited.
            if self._session is not None:
                return self._session
            if self._load_error is not None:
                raise ModelUnavailableError(str(self._load_error)) from self._load_error

            try:
                path = self._resolve_model_path()
                logger.info("Loading tagger model from %s", path)
                self._session = self._backend.load_model(path)
            except Exception as exc:
                self._load_error = exc
                logger.warning(
                    "Tagger model unavailable (%s); classification disabled until restart. "
                    "Download with: curl -L %s -o %s",
                    exc,
                    _DOWNLOAD_HINT_URL,
                    self._settings.model_path,
                )
                raise ModelUnavailableError(str(exc)) from exc

            logger.info("Tagger model loaded")
            return self._session

    def _resolve_model_path(self) -> Path:
        path = Path(self._settings.model_path)
        if path.exists():
            return path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise FileNotFoundError(f"Model file not found: {path}")

        # Earlier downloads land under the repo filename, not model_path.
        previous = path.parent / self._settings.model_filename
        if previous.exists():
            return previous

        path.parent.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=self._settings.model_filename,
                local_dir=str(path.parent),
            )
        )
        logger.info("Downloaded %s from %s to %s", self._settings.model_filename, repo_id, downloaded)
        return downloaded
