"""Image preprocessing: upload bytes to pixel buffers, pixel buffers to blobs.

The host decodes uploads into RGBA buffers (the form they travel to the
worker in); the worker turns them back into BGR frames and builds the
network input blob according to the model's preprocessing config.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import cv2
import numpy as np

from autotagger.errors import InvalidImageError
from autotagger.ml.image_classifier import ImageData

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from autotagger.ml.descriptor import PreprocessConfig

RGBA_CHANNELS = 4


def decode_upload(image_bytes: bytes, max_pixels: int | None = None) -> ImageData:
    """Decode raw image file bytes into an RGBA pixel buffer.

    Args:
        image_bytes: Raw file bytes (any format OpenCV can decode).
        max_pixels: Optional upper bound on width * height.

    Raises:
        InvalidImageError: If the image cannot be decoded or exceeds the size limit.
    """
    if not image_bytes:
        raise InvalidImageError("empty image payload")

    frame = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
    if frame is None:
        raise InvalidImageError("image could not be decoded")

    height, width = frame.shape[:2]
    if max_pixels is not None and width * height > max_pixels:
        raise InvalidImageError(f"image has {width * height} pixels, limit is {max_pixels}")

    rgba = cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
    return ImageData(width=width, height=height, data=rgba.tobytes())


def to_bgr(image: ImageData) -> NDArray[np.uint8]:
    """Strip alpha and convert an RGBA buffer to an HxWx3 BGR frame."""
    if image.width == 0 or image.height == 0:
        raise InvalidImageError("image has no pixels")

    expected = image.width * image.height * RGBA_CHANNELS
    if len(image.data) != expected:
        raise InvalidImageError(
            f"pixel buffer has {len(image.data)} bytes, expected {expected} for {image.width}x{image.height} RGBA"
        )

    rgba = np.frombuffer(image.data, dtype=np.uint8).reshape(image.height, image.width, RGBA_CHANNELS)
    return cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGR)


def build_input_blob(frame: NDArray[np.uint8], config: PreprocessConfig) -> NDArray[np.float32]:
    """Resize, scale and mean-shift a BGR frame into an NCHW float32 blob."""
    return cv2.dnn.blobFromImage(
        frame,
        scalefactor=config.scale,
        size=tuple(config.size),
        mean=config.mean,
        swapRB=config.swap_colors,
        crop=False,
    )
