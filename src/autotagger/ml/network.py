"""Forward-pass adapters over the supported inference runtimes.

OpenCV DNN runs TensorFlow and Caffe graphs; ONNX Runtime runs ONNX graphs.
Both are wrapped behind :class:`Network` so the engine only deals with a
blob in and a float32 array out.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np

from autotagger.errors import InferenceError

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession


class Network(Protocol):
    """Protocol for a built, ready-to-run network."""

    def forward(self, blob: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one forward pass.

        Args:
            blob: NCHW float32 input tensor.

        Returns:
            Raw output tensor of the network's first output.

        Raises:
            InferenceError: If the runtime rejects the input.
        """
        ...


class OpenCvNetwork:
    """A network loaded through ``cv2.dnn``."""

    def __init__(self, net: cv2.dnn.Net) -> None:
        self._net = net

    def forward(self, blob: NDArray[np.float32]) -> NDArray[np.float32]:
        try:
            self._net.setInput(blob)
            return np.asarray(self._net.forward(), dtype=np.float32)
        except cv2.error as exc:
            raise InferenceError(f"forward pass failed: {exc}") from exc


class OnnxNetwork:
    """A network loaded as an ONNX Runtime session."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        self._input_name = session.get_inputs()[0].name

    def forward(self, blob: NDArray[np.float32]) -> NDArray[np.float32]:
        try:
            outputs = self._session.run(None, {self._input_name: blob})
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(f"forward pass failed: {type(exc).__name__}: {exc}") from exc
        return np.asarray(outputs[0], dtype=np.float32)
