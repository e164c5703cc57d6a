"""Classification request/result types and the classifier protocol."""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field


class ImageData(BaseModel):
    """An RGBA pixel buffer, row-major, 4 bytes per pixel."""

    model_config = ConfigDict(frozen=True)

    width: int = Field(ge=0)
    height: int = Field(ge=0)
    data: bytes


class ClassificationRequest(BaseModel):
    """One image submitted for classification."""

    model_config = ConfigDict(frozen=True)

    request_id: int
    image: ImageData


class ClassificationResult(BaseModel):
    """Labels produced for one request.

    ``error`` is set when the request failed; ``labels`` is then empty.
    """

    model_config = ConfigDict(frozen=True)

    request_id: int
    labels: frozenset[str] = frozenset()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ImageClassifier(Protocol):
    """Protocol for the worker-side classifier."""

    def load_model(self, model_name: str) -> None:
        """Load ``model_name``, replacing any previously loaded model.

        Raises:
            ModelLoadError: If any artifact cannot be fetched, parsed, or built.
        """
        ...

    def classify(self, request: ClassificationRequest) -> ClassificationResult:
        """Classify one image.

        Raises:
            InferenceError: If the image or the network output is unusable.
        """
        ...

    def close(self) -> None:
        """Release the model and anything used to fetch it."""
        ...
