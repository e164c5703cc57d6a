"""Inference engine: model loading, forward pass, and output decoding.

Lifecycle:
    UNLOADED --load_model ok--> READY --load_model ok--> READY
    UNLOADED | READY --load_model fails--> UNLOADED

A failed load never leaves a usable model behind, and ``classify`` never
changes state. The engine is not thread-safe; the worker drives it from a
single thread, one message at a time.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from autotagger.errors import DecodeError, EngineNotReadyError
from autotagger.ml.descriptor import DESCRIPTOR_SUFFIX, build_network, parse_descriptor
from autotagger.ml.image_classifier import ClassificationRequest, ClassificationResult
from autotagger.ml.preprocessing import build_input_blob, to_bgr

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from autotagger.ml.descriptor import ModelDescriptor, OutputLayout
    from autotagger.ml.model_store import ModelStore
    from autotagger.ml.network import Network

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    UNLOADED = "unloaded"
    READY = "ready"


@dataclass(frozen=True)
class _LoadedModel:
    name: str
    descriptor: ModelDescriptor
    network: Network


def decode_classifications(
    output: NDArray[np.float32],
    layout: OutputLayout,
    tags: Sequence[str],
) -> frozenset[str]:
    """Walk the raw output buffer record by record and collect matching tags.

    The buffer is flattened and split into records of ``layout.data_interval``
    values. A record contributes ``tags[record[class_offset]]`` when
    ``record[recognition_offset]`` is strictly greater than the threshold.

    Raises:
        DecodeError: If the buffer is not a whole number of records, or a
            passing record carries a class index that is not a valid tag index.
    """
    flat = np.asarray(output, dtype=np.float32).ravel()
    if flat.size % layout.data_interval:
        raise DecodeError(f"output has {flat.size} values, not a multiple of data_interval={layout.data_interval}")

    records = flat.reshape(-1, layout.data_interval)
    passing = records[:, layout.recognition_offset] > layout.recognition_threshold

    labels: set[str] = set()
    for value in records[passing, layout.class_offset]:
        if not np.isfinite(value) or value != int(value):
            raise DecodeError(f"class index {value!r} is not an integer")
        index = int(value)
        if not 0 <= index < len(tags):
            raise DecodeError(f"class index {index} out of range for {len(tags)} tags")
        labels.add(tags[index])
    return frozenset(labels)


class InferenceEngine:
    """Loads one model at a time and classifies images with it."""

    def __init__(self, store: ModelStore) -> None:
        self._store = store
        self._model: _LoadedModel | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return EngineState.READY if self._model is not None else EngineState.UNLOADED

    @property
    def model_name(self) -> str | None:
        return self._model.name if self._model is not None else None

    @property
    def descriptor(self) -> ModelDescriptor | None:
        return self._model.descriptor if self._model is not None else None

    def load_model(self, model_name: str) -> None:
        """Fetch, parse and build ``model_name``; replaces the current model.

        Artifacts are fetched one after another: the descriptor first (it
        decides the format), then the format's topology/weights. The first
        failing step aborts the load.

        Raises:
            ModelLoadError: Any fetch, descriptor, format or build failure.
        """
        logger.info("Loading model: %s", model_name)
        self._model = None
        start = time.perf_counter()

        descriptor = parse_descriptor(model_name, self._store.fetch(model_name, DESCRIPTOR_SUFFIX))
        artifacts = [self._store.fetch(model_name, suffix) for suffix in descriptor.artifact_suffixes]
        network = build_network(model_name, descriptor, artifacts)

        self._model = _LoadedModel(name=model_name, descriptor=descriptor, network=network)
        logger.info(
            "Model %s ready (type=%s, tags=%d) in %.0fms",
            model_name,
            descriptor.type,
            len(descriptor.tags),
            (time.perf_counter() - start) * 1000,
        )

    def unload(self) -> None:
        """Discard the current model, if any."""
        self._model = None

    def close(self) -> None:
        """Unload the model and close the model store."""
        self.unload()
        self._store.close()

    def classify(self, request: ClassificationRequest) -> ClassificationResult:
        """Classify one image with the loaded model.

        Raises:
            EngineNotReadyError: If no model is loaded.
            InvalidImageError: If the pixel buffer does not match its dimensions.
            InferenceError: If the forward pass fails.
            DecodeError: If the output does not fit the descriptor's layout.
        """
        model = self._model
        if model is None:
            raise EngineNotReadyError("no model is loaded")

        start = time.perf_counter()
        frame = to_bgr(request.image)
        blob = build_input_blob(frame, model.descriptor.image)
        output = model.network.forward(blob)
        labels = decode_classifications(output, model.descriptor.output, model.descriptor.tags)

        logger.debug(
            "Request %d classified in %.0fms: %s",
            request.request_id,
            (time.perf_counter() - start) * 1000,
            sorted(labels),
        )
        return ClassificationResult(request_id=request.request_id, labels=labels)
