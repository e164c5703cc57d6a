"""Host-side classification coordinator.

Flow:
    upload event -> submit() -> queue entry + ``execute`` -> worker
    worker -> ``finished`` -> pop entry -> results list -> (queue empty) -> fill tag fields

The worker handles one ``execute`` at a time and answers in order, so the
oldest queue entry is the one a ``finished`` message belongs to; the request
id carried on both messages is checked against it. Every entry is resolved
exactly once: by its ``finished`` message, by its timeout, or by shutdown.

All handlers run on the event loop and never await half-way through a
pop/publish, so the queue needs no locking.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from autotagger.errors import ModelLoadError, ProtocolError, WorkerNotReadyError, WorkerTimeoutError
from autotagger.host.tag_fields import format_labels, is_tag_field, no_tag_fields
from autotagger.ml.image_classifier import ClassificationResult
from autotagger.ml.preprocessing import decode_upload
from autotagger.worker.messages import (
    DebugMessage,
    ExecuteMessage,
    FinishedMessage,
    InitMessage,
    LoadFailedMessage,
    LoadMessage,
    ReadyMessage,
)

if TYPE_CHECKING:
    from autotagger.config import Settings
    from autotagger.host.tag_fields import TagFieldSource
    from autotagger.worker.messages import OutboundMessage
    from autotagger.worker.transport import WorkerTransport

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("autotagger.worker.remote")


class WorkerState(StrEnum):
    STARTING = "starting"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class UploadEvent:
    """One file the upload source started sending."""

    mime_type: str
    data: bytes
    source: str


@dataclass(frozen=True)
class ClassifiedImage:
    """A completed queue entry: which image, and what it was classified as."""

    source: str
    result: ClassificationResult


@dataclass
class _QueueEntry:
    request_id: int
    source: str
    future: asyncio.Future[ClassificationResult]
    submitted_at: float
    timer: asyncio.TimerHandle | None = None


class ClassificationCoordinator:
    """Submits images to the worker and correlates its answers."""

    def __init__(
        self,
        transport: WorkerTransport,
        settings: Settings,
        tag_fields: TagFieldSource = no_tag_fields,
    ) -> None:
        self._transport = transport
        self._tag_fields = tag_fields
        self._model_name = settings.model_name
        self._init_timeout = settings.init_timeout
        self._load_timeout = settings.load_timeout
        self._execute_timeout = settings.execute_timeout
        self._tag_field_prefix = settings.tag_field_path_prefix
        self._max_image_pixels = settings.max_image_pixels

        self._state = WorkerState.STARTING
        self._queue: deque[_QueueEntry] = deque()
        self._results: deque[ClassifiedImage] = deque(maxlen=settings.result_history)
        self._classified_count = 0
        self._filled: set[str] = set()
        self._request_ids = itertools.count(1)

        self._initialized: asyncio.Future[None] | None = None
        self._loaded: asyncio.Future[None] | None = None
        self._reader: asyncio.Task[None] | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def results(self) -> tuple[ClassifiedImage, ...]:
        """The most recent completed entries, oldest first (at most ``result_history``)."""
        return tuple(self._results)

    @property
    def classified_count(self) -> int:
        """Completed entries since start, including those no longer retained."""
        return self._classified_count

    async def start(self) -> None:
        """Start the worker and load the configured model.

        Raises:
            WorkerTimeoutError: If the worker does not initialise or load in time.
            ModelLoadError: If the model failed to load or the worker exited.
        """
        started = time.monotonic()
        loop = asyncio.get_running_loop()
        self._initialized = loop.create_future()
        self._loaded = loop.create_future()
        self._transport.start()
        self._reader = asyncio.create_task(self._read_messages(), name="classification-worker-reader")

        try:
            await asyncio.wait_for(self._initialized, timeout=self._init_timeout)
        except TimeoutError:
            self._state = WorkerState.FAILED
            raise WorkerTimeoutError(f"worker did not initialise within {self._init_timeout:g}s") from None
        except ModelLoadError:
            self._state = WorkerState.FAILED
            raise

        self._state = WorkerState.LOADING
        self._transport.send(LoadMessage(model_name=self._model_name))
        try:
            await asyncio.wait_for(self._loaded, timeout=self._load_timeout)
        except TimeoutError:
            self._state = WorkerState.FAILED
            raise WorkerTimeoutError(
                f"model '{self._model_name}' did not load within {self._load_timeout:g}s"
            ) from None
        except ModelLoadError:
            self._state = WorkerState.FAILED
            raise

        self._state = WorkerState.READY
        logger.info("Worker is ready after: %.0fms", (time.monotonic() - started) * 1000)

    async def submit(self, event: UploadEvent) -> asyncio.Future[ClassificationResult] | None:
        """Decode an uploaded file off the event loop and queue it for classification.

        Returns:
            A future resolved with the file's result, or None when the
            file is not an image.

        Raises:
            WorkerNotReadyError: If the model is not loaded yet.
            InvalidImageError: If the file cannot be decoded.
        """
        if not event.mime_type.startswith("image/"):
            logger.debug("Skipping %s (%s): not an image", event.source, event.mime_type)
            return None
        self._ensure_ready(event)

        image = await asyncio.to_thread(decode_upload, event.data, self._max_image_pixels)
        # The worker may have failed or been closed while decoding.
        self._ensure_ready(event)

        loop = asyncio.get_running_loop()
        entry = _QueueEntry(
            request_id=next(self._request_ids),
            source=event.source,
            future=loop.create_future(),
            submitted_at=time.monotonic(),
        )
        entry.timer = loop.call_later(self._execute_timeout, self._expire, entry.request_id)
        self._queue.append(entry)
        self._transport.send(ExecuteMessage(request_id=entry.request_id, image_data=image))

        logger.info(
            "Classification is started: %s (request %d, queue depth %d)",
            event.source,
            entry.request_id,
            len(self._queue),
        )
        return entry.future

    async def classify(self, event: UploadEvent) -> ClassificationResult | None:
        """Submit ``event`` and wait for its result."""
        future = await self.submit(event)
        if future is None:
            return None
        # A cancelled caller must not cancel the queue entry itself.
        return await asyncio.shield(future)

    def fill_classifications(self) -> None:
        """Write accumulated labels into the host's tag fields.

        Does nothing while classifications are pending. With a single tag
        field, the most recent result is written; with several, the Nth
        result goes to the Nth field. Each field is written at most once,
        and results without labels are not written.
        """
        if self._queue or not self._results:
            return

        fields = [target for target in self._tag_fields() if is_tag_field(target, self._tag_field_prefix)]
        # Forget markers of fields the host no longer shows.
        self._filled.intersection_update(target.key for target in fields)
        if len(fields) == 1:
            assignments = [(fields[0], self._results[-1])]
        else:
            assignments = list(zip(fields, self._results))

        for target, classified in assignments:
            if target.key in self._filled or not classified.result.labels:
                continue
            target.write(format_labels(classified.result.labels))
            self._filled.add(target.key)
            logger.debug("Filled tag field %s with classifications of %s", target.key, classified.source)

    async def close(self) -> None:
        """Stop the worker; pending entries resolve with an error result."""
        if self._state is WorkerState.CLOSED:
            return
        self._state = WorkerState.CLOSED

        while self._queue:
            entry = self._queue.popleft()
            self._resolve(entry, ClassificationResult(request_id=entry.request_id, error="coordinator closed"))

        for waiter in (self._initialized, self._loaded):
            if waiter is not None and not waiter.done():
                waiter.cancel()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
        await asyncio.to_thread(self._transport.close)

    # -- Message handling ---------------------------------------------------

    async def _read_messages(self) -> None:
        while True:
            try:
                message = await self._transport.receive()
            except ProtocolError as exc:
                logger.warning("Ignoring worker message: %s", exc)
                continue
            if message is None:
                self._on_worker_exit()
                return
            self._dispatch(message)

    def _dispatch(self, message: OutboundMessage) -> None:
        if isinstance(message, DebugMessage):
            worker_logger.info("%s: %s", message.source, message.msg)
        elif isinstance(message, InitMessage):
            if self._initialized is not None and not self._initialized.done():
                self._initialized.set_result(None)
        elif isinstance(message, ReadyMessage):
            self._on_load_outcome(None)
        elif isinstance(message, LoadFailedMessage):
            self._on_load_outcome(ModelLoadError(message.model_name, message.reason))
        elif isinstance(message, FinishedMessage):
            self._on_finished(message)

    def _on_load_outcome(self, error: ModelLoadError | None) -> None:
        if self._loaded is None or self._loaded.done():
            logger.warning("Unexpected load outcome from worker: %s", error or "ready")
            return
        if error is None:
            self._loaded.set_result(None)
        else:
            logger.error("%s", error)
            self._loaded.set_exception(error)

    def _on_finished(self, message: FinishedMessage) -> None:
        entry = self._pop(message.request_id)
        if entry is None:
            logger.warning("Dropping result of request %d: no longer queued", message.request_id)
            return
        result = ClassificationResult(
            request_id=message.request_id,
            labels=frozenset(message.classifications),
            error=message.error,
        )
        self._complete(entry, result)

    def _expire(self, request_id: int) -> None:
        entry = self._pop(request_id)
        if entry is None:
            return
        error = f"classification timed out after {self._execute_timeout:g}s"
        self._complete(entry, ClassificationResult(request_id=request_id, error=error))

    def _on_worker_exit(self) -> None:
        if self._state is WorkerState.CLOSED:
            return
        logger.error("Classification worker exited unexpectedly")
        self._state = WorkerState.FAILED
        # Wake whichever startup phase is waiting; a pending load is cancelled by close().
        if self._initialized is not None and not self._initialized.done():
            self._initialized.set_exception(ModelLoadError(self._model_name, "worker exited before initialising"))
        elif self._loaded is not None and not self._loaded.done():
            self._loaded.set_exception(ModelLoadError(self._model_name, "worker exited"))
        while self._queue:
            entry = self._queue.popleft()
            self._complete(entry, ClassificationResult(request_id=entry.request_id, error="worker exited"))

    # -- Queue bookkeeping --------------------------------------------------

    def _ensure_ready(self, event: UploadEvent) -> None:
        if self._state is not WorkerState.READY:
            raise WorkerNotReadyError(f"worker is {self._state.value}, cannot classify {event.source}")

    def _pop(self, request_id: int) -> _QueueEntry | None:
        if self._queue and self._queue[0].request_id == request_id:
            return self._queue.popleft()
        for entry in self._queue:
            if entry.request_id == request_id:
                logger.warning("Request %d answered out of order", request_id)
                self._queue.remove(entry)
                return entry
        return None

    def _complete(self, entry: _QueueEntry, result: ClassificationResult) -> None:
        self._resolve(entry, result)
        self._results.append(ClassifiedImage(source=entry.source, result=result))
        self._classified_count += 1

        elapsed_ms = (time.monotonic() - entry.submitted_at) * 1000
        if result.ok:
            logger.info("Got classifications for %s: %.0fms %s", entry.source, elapsed_ms, sorted(result.labels))
        else:
            logger.warning("Classification of %s failed after %.0fms: %s", entry.source, elapsed_ms, result.error)

        if not self._queue:
            self.fill_classifications()

    @staticmethod
    def _resolve(entry: _QueueEntry, result: ClassificationResult) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(result)
