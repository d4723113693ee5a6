"""Error taxonomy for the classification pipeline.

None of these escape ``AvatarTagger.classify``; they mark where a failure
happened so each layer can decide whether to skip a crop or give up on the
whole image.
"""

from __future__ import annotations


class AvatarTaggerError(Exception):
    """Base class for pipeline errors."""


class ImageFetchError(AvatarTaggerError):
    """The source image bytes could not be retrieved."""


class ModelUnavailableError(AvatarTaggerError):
    """The classifier model failed to load and will not be retried."""


class TensorBuildError(AvatarTaggerError):
    """A crop could not be decoded, resized or normalized."""


class InferenceError(AvatarTaggerError):
    """A forward pass failed for reasons other than tensor layout."""


class ShapeMismatchError(InferenceError):
    """The backend rejected the input tensor's shape or rank."""
