"""Worker-side protocol state machine.

Owns the classifier and turns inbound messages into classifier calls and
outbound messages. Messages are handled strictly one at a time, so an
``execute`` that arrives while another is running waits behind it.
Classifier failures become outbound messages; they never escape ``handle``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from autotagger.errors import InferenceError, ModelLoadError, ProtocolError
from autotagger.ml.image_classifier import ClassificationRequest, ClassificationResult
from autotagger.worker.messages import (
    DebugMessage,
    ExecuteMessage,
    FinishedMessage,
    InitMessage,
    LoadFailedMessage,
    LoadMessage,
    ReadyMessage,
    ShutdownMessage,
    parse_inbound,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from autotagger.ml.image_classifier import ImageClassifier
    from autotagger.worker.messages import OutboundMessage

WORKER_SOURCE = "Classification Worker"


class DebugForwardingHandler(logging.Handler):
    """Logging handler that ships records to the host as ``debug`` messages."""

    def __init__(self, post: Callable[[OutboundMessage], None], level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._post = post

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._post(DebugMessage(source=record.name, msg=self.format(record)))
        except Exception:  # noqa: BLE001
            self.handleError(record)


class WorkerProtocol:
    """Translates inbound messages into classifier calls."""

    def __init__(self, classifier: ImageClassifier, post: Callable[[OutboundMessage], None]) -> None:
        self._classifier = classifier
        self._post = post
        self._initialized = False

    def start(self) -> None:
        """Announce the worker with a single ``init`` message."""
        if self._initialized:
            return
        self._initialized = True
        self.debug("Initialization finished")
        self._post(InitMessage())

    def handle(self, raw: object) -> bool:
        """Process one inbound message.

        Returns:
            False when the worker loop should stop, True otherwise.
        """
        self.start()
        try:
            message = parse_inbound(raw)
        except ProtocolError as exc:
            self.debug(f"Ignoring message: {exc}")
            return True

        if isinstance(message, ShutdownMessage):
            self.debug("Shutting down")
            return False
        if isinstance(message, LoadMessage):
            self._load(message)
        elif isinstance(message, ExecuteMessage):
            self._execute(message)
        return True

    def debug(self, msg: str) -> None:
        self._post(DebugMessage(source=WORKER_SOURCE, msg=msg))

    # -- Internal -----------------------------------------------------------

    def _load(self, message: LoadMessage) -> None:
        self.debug(f"Loading model: {message.model_name}")
        try:
            self._classifier.load_model(message.model_name)
        except ModelLoadError as exc:
            self.debug(str(exc))
            self._post(LoadFailedMessage(model_name=message.model_name, reason=exc.reason))
            return
        except Exception as exc:  # noqa: BLE001
            reason = f"{type(exc).__name__}: {exc}"
            self.debug(f"Unexpected error loading model {message.model_name}: {reason}")
            self._post(LoadFailedMessage(model_name=message.model_name, reason=reason))
            return
        self._post(ReadyMessage(model_name=message.model_name))

    def _execute(self, message: ExecuteMessage) -> None:
        request = ClassificationRequest(request_id=message.request_id, image=message.image_data)
        try:
            result = self._classifier.classify(request)
        except InferenceError as exc:
            self.debug(f"Classification of request {request.request_id} failed: {exc}")
            result = ClassificationResult(request_id=request.request_id, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            error = f"{type(exc).__name__}: {exc}"
            self.debug(f"Unexpected error classifying request {request.request_id}: {error}")
            result = ClassificationResult(request_id=request.request_id, error=error)

        self._post(
            FinishedMessage(
                request_id=request.request_id,
                classifications=sorted(result.labels),
                error=result.error,
            )
        )
