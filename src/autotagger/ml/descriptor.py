"""Model descriptors: the JSON metadata shipped next to every model.

A descriptor says which runtime builds the network, how raw pixels become the
input tensor, which tag each class id maps to, and how to walk the flat output
buffer. Formats are a closed set; each variant knows its artifact suffixes and
how to build its network from the fetched bytes.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Annotated, ClassVar, Literal

import cv2
import numpy as np
from onnxruntime import InferenceSession
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, TypeAdapter, ValidationError, model_validator

from autotagger.errors import DescriptorError, ModelBuildError, UnsupportedFormatError
from autotagger.ml.network import Network, OnnxNetwork, OpenCvNetwork

logger = logging.getLogger(__name__)

DESCRIPTOR_SUFFIX = "json"


class PreprocessConfig(BaseModel):
    """How a BGR frame becomes the network's input blob."""

    model_config = ConfigDict(frozen=True)

    scale: float = 1.0
    size: tuple[PositiveInt, PositiveInt] = Field(description="Network input (width, height)")
    normalization: tuple[float, ...] = Field(default=(0.0, 0.0, 0.0), min_length=1, max_length=4)
    swap_colors: bool = False

    @property
    def mean(self) -> tuple[float, ...]:
        """Per-channel offsets, broadcasting a single value to three channels."""
        if len(self.normalization) == 1:
            return self.normalization * 3
        return self.normalization


class OutputLayout(BaseModel):
    """Record layout of the flat raw-output buffer."""

    model_config = ConfigDict(frozen=True)

    data_interval: PositiveInt
    recognition_offset: int = Field(ge=0)
    recognition_threshold: float
    class_offset: int = Field(ge=0)

    @model_validator(mode="after")
    def _offsets_inside_record(self) -> OutputLayout:
        if self.recognition_offset >= self.data_interval or self.class_offset >= self.data_interval:
            raise ValueError("recognition_offset and class_offset must be smaller than data_interval")
        return self


class _BaseDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Artifacts fetched after the descriptor, in order.
    artifact_suffixes: ClassVar[tuple[str, ...]] = ()

    image: PreprocessConfig
    tags: tuple[str, ...] = Field(min_length=1)
    output: OutputLayout

    def build_network(self, artifacts: Sequence[bytes]) -> Network:
        raise NotImplementedError


def _as_buffer(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype=np.uint8)


def _checked_opencv_net(net: cv2.dnn.Net, kind: str) -> OpenCvNetwork:
    if net.empty():
        raise ValueError(f"OpenCV returned an empty {kind} network")
    return OpenCvNetwork(net)


class TensorflowDescriptor(_BaseDescriptor):
    """Frozen TensorFlow graph (``.pb``) with a text graph config (``.pbtxt``)."""

    artifact_suffixes: ClassVar[tuple[str, ...]] = ("pbtxt", "pb")

    type: Literal["tensorflow"]

    def build_network(self, artifacts: Sequence[bytes]) -> Network:
        topology, weights = artifacts
        net = cv2.dnn.readNetFromTensorflow(_as_buffer(weights), _as_buffer(topology))
        return _checked_opencv_net(net, "TensorFlow")


class CaffeDescriptor(_BaseDescriptor):
    """Caffe network: ``.prototxt`` definition plus ``.caffemodel`` weights."""

    artifact_suffixes: ClassVar[tuple[str, ...]] = ("prototxt", "caffemodel")

    type: Literal["caffe"]

    def build_network(self, artifacts: Sequence[bytes]) -> Network:
        topology, weights = artifacts
        net = cv2.dnn.readNetFromCaffe(_as_buffer(topology), _as_buffer(weights))
        return _checked_opencv_net(net, "Caffe")


class OnnxDescriptor(_BaseDescriptor):
    """Single-file ONNX model; the graph carries topology and weights."""

    artifact_suffixes: ClassVar[tuple[str, ...]] = ("onnx",)

    type: Literal["onnx"]

    def build_network(self, artifacts: Sequence[bytes]) -> Network:
        (model,) = artifacts
        session = InferenceSession(model, providers=["CPUExecutionProvider"])
        return OnnxNetwork(session)


ModelDescriptor = Annotated[
    TensorflowDescriptor | CaffeDescriptor | OnnxDescriptor,
    Field(discriminator="type"),
]

SUPPORTED_FORMATS: tuple[str, ...] = ("tensorflow", "caffe", "onnx")

_descriptor_adapter: TypeAdapter[ModelDescriptor] = TypeAdapter(ModelDescriptor)


def parse_descriptor(model_name: str, raw: bytes) -> ModelDescriptor:
    """Parse and validate descriptor JSON.

    Raises:
        UnsupportedFormatError: If ``type`` is not one of :data:`SUPPORTED_FORMATS`.
        DescriptorError: If the payload is not valid JSON or fails validation.
    """
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise DescriptorError(model_name, f"descriptor is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise DescriptorError(model_name, "descriptor must be a JSON object")

    model_type = payload.get("type")
    if model_type not in SUPPORTED_FORMATS:
        raise UnsupportedFormatError(model_name, f"unsupported model type: {model_type!r}")

    try:
        return _descriptor_adapter.validate_python(payload)
    except ValidationError as exc:
        raise DescriptorError(model_name, str(exc)) from exc


def build_network(model_name: str, descriptor: ModelDescriptor, artifacts: Sequence[bytes]) -> Network:
    """Build the descriptor's network, normalising runtime errors to ModelBuildError."""
    try:
        return descriptor.build_network(artifacts)
    except cv2.error as exc:
        raise ModelBuildError(model_name, f"OpenCV could not build the network: {exc}") from exc
    except Exception as exc:  # noqa: BLE001
        raise ModelBuildError(model_name, f"{type(exc).__name__}: {exc}") from exc
