"""Exception hierarchy shared by the worker and the host side."""

from __future__ import annotations


class AutotaggerError(Exception):
    """Base class for all Autotagger errors."""


# ---------------------------------------------------------------------------
# Model loading
# ---------------------------------------------------------------------------


class ModelLoadError(AutotaggerError):
    """A model could not be made ready for inference."""

    def __init__(self, model_name: str, reason: str) -> None:
        self.model_name = model_name
        self.reason = reason
        super().__init__(f"Failed to load model '{model_name}': {reason}")


class ModelFetchError(ModelLoadError):
    """An artifact could not be fetched from the model store."""


class DescriptorError(ModelLoadError):
    """The model descriptor is not valid JSON or does not match the schema."""


class UnsupportedFormatError(ModelLoadError):
    """The descriptor declares a network format that cannot be built."""


class ModelBuildError(ModelLoadError):
    """Network construction from the topology/weights artifacts failed."""


# ---------------------------------------------------------------------------
# Inference
# ---------------------------------------------------------------------------


class InferenceError(AutotaggerError):
    """A single classification failed; the engine stays usable."""


class InvalidImageError(InferenceError):
    """The image bytes or pixel buffer cannot be used as network input."""


class EngineNotReadyError(InferenceError):
    """Classification was requested before a model finished loading."""


class DecodeError(InferenceError):
    """The raw network output does not fit the descriptor's output layout."""


# ---------------------------------------------------------------------------
# Protocol / host side
# ---------------------------------------------------------------------------


class ProtocolError(AutotaggerError):
    """A worker message has an unknown kind or a malformed payload."""


class WorkerNotReadyError(AutotaggerError):
    """The host tried to submit work before the worker reported ready."""


class WorkerTimeoutError(AutotaggerError):
    """The worker did not answer within the configured timeout."""
