"""Transports between the host event loop and the classification worker.

Architecture:
    host (asyncio) --send--> [pipe | worker thread] --> WorkerProtocol --> InferenceEngine
    host (asyncio) <--receive-- [pipe | loop queue] <-- WorkerProtocol

``ProcessTransport`` runs the worker in a spawned process, which keeps the
model and its tensors out of the host's address space. ``ThreadTransport``
runs the same protocol on one dedicated thread inside the host process.
Neither blocks the event loop: pipe I/O happens on single-thread executors,
which also keeps each direction in FIFO order.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, Protocol

from autotagger.ml.engine import InferenceEngine
from autotagger.ml.model_store import build_model_store
from autotagger.worker.messages import ShutdownMessage, parse_outbound
from autotagger.worker.protocol import DebugForwardingHandler, WorkerProtocol

if TYPE_CHECKING:
    from multiprocessing.connection import Connection

    from autotagger.config import Settings
    from autotagger.ml.image_classifier import ImageClassifier
    from autotagger.worker.messages import InboundMessage, OutboundMessage

logger = logging.getLogger(__name__)

PROCESS_JOIN_TIMEOUT_SECONDS: float = 5.0


class WorkerTransport(Protocol):
    """Protocol for a host-side channel to the worker."""

    def start(self) -> None:
        """Start the worker. Must be called from within the running event loop."""
        ...

    def send(self, message: InboundMessage) -> None:
        """Queue a message for the worker without blocking."""
        ...

    async def receive(self) -> OutboundMessage | None:
        """Wait for the next worker message; None once the worker is gone.

        Raises:
            ProtocolError: If the worker sent a malformed message.
        """
        ...

    def close(self) -> None:
        """Stop the worker and release the channel."""
        ...


# ---------------------------------------------------------------------------
# Worker process
# ---------------------------------------------------------------------------


def run_worker(conn: Connection, settings: Settings) -> None:
    """Entry point of the worker process."""
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [worker:%(name)s] %(message)s",
    )

    def post(message: OutboundMessage) -> None:
        conn.send(message.model_dump())

    # Engine logs reach the host as debug messages instead of the worker's stderr.
    ml_logger = logging.getLogger("autotagger.ml")
    ml_logger.addHandler(DebugForwardingHandler(post))
    ml_logger.propagate = False

    engine = InferenceEngine(build_model_store(settings))
    protocol = WorkerProtocol(engine, post)
    protocol.start()
    try:
        while True:
            try:
                raw = conn.recv()
            except EOFError:
                break
            if not protocol.handle(raw):
                break
    finally:
        engine.close()
        conn.close()


class ProcessTransport:
    """Runs the worker in a separate process connected by a pipe."""

    def __init__(self, settings: Settings) -> None:
        ctx = multiprocessing.get_context("spawn")
        self._conn, child_conn = ctx.Pipe(duplex=True)
        self._child_conn: Connection | None = child_conn
        self._process = ctx.Process(
            target=run_worker,
            args=(child_conn, settings),
            name="classification-worker",
            daemon=True,
        )
        self._sender = ThreadPoolExecutor(max_workers=1, thread_name_prefix="worker-send")
        self._receiver = ThreadPoolExecutor(max_workers=1, thread_name_prefix="worker-recv")

    def start(self) -> None:
        self._process.start()
        # Only the worker holds the child end, so its exit shows up as EOF here.
        if self._child_conn is not None:
            self._child_conn.close()
            self._child_conn = None
        logger.info("Started classification worker (pid=%s)", self._process.pid)

    def send(self, message: InboundMessage) -> None:
        future = self._sender.submit(self._conn.send, message.model_dump())
        future.add_done_callback(self._log_send_failure)

    async def receive(self) -> OutboundMessage | None:
        loop = asyncio.get_running_loop()
        try:
            raw = await loop.run_in_executor(self._receiver, self._conn.recv)
        except (EOFError, OSError):
            return None
        return parse_outbound(raw)

    def close(self) -> None:
        if self._process.is_alive():
            self.send(ShutdownMessage())
        self._sender.shutdown(wait=True)
        if self._process.pid is not None:
            self._process.join(PROCESS_JOIN_TIMEOUT_SECONDS)
            if self._process.is_alive():
                logger.warning("Worker did not exit in %.0fs, terminating", PROCESS_JOIN_TIMEOUT_SECONDS)
                self._process.terminate()
                self._process.join()
            logger.info("Classification worker stopped (exitcode=%s)", self._process.exitcode)
        self._receiver.shutdown(wait=False, cancel_futures=True)
        if self._child_conn is not None:
            self._child_conn.close()
        self._conn.close()

    @staticmethod
    def _log_send_failure(future: Future[None]) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Failed to send message to worker: %s", exc)


# ---------------------------------------------------------------------------
# In-process worker thread
# ---------------------------------------------------------------------------


class ThreadTransport:
    """Runs the worker protocol on one dedicated thread of this process."""

    def __init__(self, classifier: ImageClassifier) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="classification-worker")
        self._classifier = classifier
        self._protocol = WorkerProtocol(classifier, self._post)
        self._outbox: asyncio.Queue[OutboundMessage | None] = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._executor.submit(self._protocol.start)

    def send(self, message: InboundMessage) -> None:
        self._executor.submit(self._handle, message.model_dump())

    async def receive(self) -> OutboundMessage | None:
        return await self._outbox.get()

    def close(self) -> None:
        # Waits for a running classification; queued messages are dropped.
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._classifier.close()

    def _handle(self, raw: dict[str, object]) -> None:
        if not self._protocol.handle(raw):
            self._post(None)

    def _post(self, message: OutboundMessage | None) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._outbox.put_nowait, message)


def create_transport(settings: Settings) -> WorkerTransport:
    """Create the transport selected by ``settings.worker_mode``."""
    if settings.worker_mode == "thread":
        return ThreadTransport(InferenceEngine(build_model_store(settings)))
    return ProcessTransport(settings)
