"""Shared fixtures: in-memory model store, scripted worker, fake classifier."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import cv2
import numpy as np
import pytest

from autotagger.config import Settings
from autotagger.errors import EngineNotReadyError, InvalidImageError, ModelFetchError
from autotagger.ml.image_classifier import ClassificationRequest, ClassificationResult, ImageData
from autotagger.worker.messages import InboundMessage, OutboundMessage

TAGS = ["cat", "dog", "bird"]

DESCRIPTOR: dict[str, Any] = {
    "type": "tensorflow",
    "image": {"scale": 1.0, "size": [8, 8], "normalization": [127.5, 127.5, 127.5], "swap_colors": True},
    "tags": TAGS,
    "output": {"data_interval": 4, "recognition_offset": 2, "recognition_threshold": 0.5, "class_offset": 3},
}


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "model_name": "tiny",
        "model_source": "local",
        "models_dir": "/tmp/autotagger_test_models",
        "worker_mode": "thread",
        "init_timeout": 5.0,
        "load_timeout": 5.0,
        "execute_timeout": 5.0,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def encode_png(width: int, height: int, color: tuple[int, int, int] = (0, 128, 255)) -> bytes:
    frame = np.full((height, width, 3), color, dtype=np.uint8)
    ok, buffer = cv2.imencode(".png", frame)
    assert ok
    return buffer.tobytes()


def rgba_image(width: int, height: int, value: int = 200) -> ImageData:
    return ImageData(width=width, height=height, data=bytes([value]) * (width * height * 4))


# ---------------------------------------------------------------------------
# Model store
# ---------------------------------------------------------------------------


class DictModelStore:
    """Serves artifacts from a dict and records the fetch order."""

    def __init__(self, artifacts: dict[str, bytes]) -> None:
        self.artifacts = artifacts
        self.fetched: list[str] = []
        self.closed = False

    def fetch(self, model_name: str, suffix: str) -> bytes:
        filename = f"{model_name}.{suffix}"
        self.fetched.append(filename)
        try:
            return self.artifacts[filename]
        except KeyError:
            raise ModelFetchError(model_name, f"failed to load {filename} status: 404") from None

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def model_store() -> Callable[..., DictModelStore]:
    def factory(descriptor: dict[str, Any] | None = None, name: str = "tiny", **extra: bytes) -> DictModelStore:
        artifacts = {
            f"{name}.json": json.dumps(descriptor if descriptor is not None else DESCRIPTOR).encode(),
            f"{name}.pbtxt": b"topology",
            f"{name}.pb": b"weights",
        }
        artifacts.update({f"{name}.{suffix}": data for suffix, data in extra.items()})
        return DictModelStore(artifacts)

    return factory


# ---------------------------------------------------------------------------
# Worker side
# ---------------------------------------------------------------------------


class FakeClassifier:
    """Labels an image 'wide', 'tall' or 'square' from its dimensions."""

    def __init__(self, known_models: tuple[str, ...] = ("tiny",)) -> None:
        self.known_models = known_models
        self.loaded: str | None = None
        self.calls: list[int] = []
        self.closed = False

    def load_model(self, model_name: str) -> None:
        self.loaded = None
        if model_name not in self.known_models:
            raise ModelFetchError(model_name, f"failed to load {model_name}.json status: 404")
        self.loaded = model_name

    def classify(self, request: ClassificationRequest) -> ClassificationResult:
        if self.loaded is None:
            raise EngineNotReadyError("no model is loaded")
        image = request.image
        if len(image.data) != image.width * image.height * 4:
            raise InvalidImageError("pixel buffer size mismatch")
        self.calls.append(request.request_id)
        if image.width > image.height:
            label = "wide"
        elif image.width < image.height:
            label = "tall"
        else:
            label = "square"
        return ClassificationResult(request_id=request.request_id, labels=frozenset({label, "image"}))

    def close(self) -> None:
        self.loaded = None
        self.closed = True


class ExplodingClassifier(FakeClassifier):
    """Raises errors outside the classifier's documented error types."""

    def load_model(self, model_name: str) -> None:
        if model_name == "broken":
            raise RuntimeError("allocator exhausted")
        super().load_model(model_name)

    def classify(self, request: ClassificationRequest) -> ClassificationResult:
        if request.request_id % 2:
            raise RuntimeError(f"unexpected failure on request {request.request_id}")
        return super().classify(request)


@pytest.fixture()
def fake_classifier() -> FakeClassifier:
    return FakeClassifier()


# ---------------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------------


class ScriptedTransport:
    """Records what the host sends; the test decides what the worker answers."""

    def __init__(self) -> None:
        self.sent: list[InboundMessage] = []
        self.started = False
        self.closed = False
        self._inbox: asyncio.Queue[OutboundMessage | None] = asyncio.Queue()

    def start(self) -> None:
        self.started = True

    def send(self, message: InboundMessage) -> None:
        self.sent.append(message)

    def emit(self, message: OutboundMessage | None) -> None:
        self._inbox.put_nowait(message)

    async def receive(self) -> OutboundMessage | None:
        return await self._inbox.get()

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def scripted_transport() -> ScriptedTransport:
    return ScriptedTransport()


async def wait_until(predicate: Callable[[], bool], rounds: int = 100) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    # Work may hop through a thread pool (e.g. decoding), so poll on real
    # time rather than bare event-loop iterations.
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")
