"""Tests for worker messages, the worker protocol, and the transports."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest
from conftest import ExplodingClassifier, FakeClassifier, encode_png, make_settings, rgba_image

from autotagger.errors import ModelLoadError, ProtocolError
from autotagger.host.coordinator import ClassificationCoordinator, UploadEvent, WorkerState
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
    parse_outbound,
)
from autotagger.worker.protocol import WORKER_SOURCE, DebugForwardingHandler, WorkerProtocol
from autotagger.worker.transport import ProcessTransport, ThreadTransport, create_transport

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Recorder:
    def __init__(self) -> None:
        self.messages: list[object] = []

    def __call__(self, message: object) -> None:
        self.messages.append(message)

    def control(self) -> list[object]:
        """Everything except debug messages."""
        return [m for m in self.messages if not isinstance(m, DebugMessage)]


def _execute(request_id: int, width: int = 6, height: int = 4) -> dict[str, object]:
    return ExecuteMessage(request_id=request_id, image_data=rgba_image(width, height)).model_dump()


# ---------------------------------------------------------------------------
# Message parsing
# ---------------------------------------------------------------------------


class TestMessages:
    def test_inbound_round_trip(self) -> None:
        message = parse_inbound({"type": "load", "model_name": "tiny"})
        assert message == LoadMessage(model_name="tiny")

    def test_execute_carries_pixel_buffer(self) -> None:
        message = parse_inbound(_execute(3))
        assert isinstance(message, ExecuteMessage)
        assert message.image_data.width == 6
        assert len(message.image_data.data) == 6 * 4 * 4

    @pytest.mark.parametrize(
        "raw",
        [
            {"type": "explode"},
            {"type": "load"},
            {"model_name": "tiny"},
            ["load", "tiny"],
        ],
    )
    def test_invalid_inbound_raises_protocol_error(self, raw: object) -> None:
        with pytest.raises(ProtocolError):
            parse_inbound(raw)

    def test_outbound_kinds(self) -> None:
        assert isinstance(parse_outbound({"type": "init"}), InitMessage)
        assert parse_outbound({"type": "finished", "request_id": 1, "classifications": ["a"]}) == FinishedMessage(
            request_id=1, classifications=["a"]
        )
        with pytest.raises(ProtocolError):
            parse_outbound({"type": "execute"})


# ---------------------------------------------------------------------------
# WorkerProtocol
# ---------------------------------------------------------------------------


class TestWorkerProtocol:
    @pytest.fixture()
    def recorder(self) -> _Recorder:
        return _Recorder()

    @pytest.fixture()
    def protocol(self, fake_classifier: FakeClassifier, recorder: _Recorder) -> WorkerProtocol:
        return WorkerProtocol(fake_classifier, recorder)

    def test_init_emitted_once_before_load(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        protocol.start()
        protocol.start()
        protocol.handle({"type": "load", "model_name": "tiny"})

        assert recorder.control() == [InitMessage(), ReadyMessage(model_name="tiny")]

    def test_handle_without_start_still_sends_init_first(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        protocol.handle({"type": "load", "model_name": "tiny"})
        assert recorder.control()[0] == InitMessage()

    def test_load_failure_reports_load_failed(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        protocol.handle({"type": "load", "model_name": "missing"})

        failed = recorder.control()[-1]
        assert isinstance(failed, LoadFailedMessage)
        assert failed.model_name == "missing"
        assert "404" in failed.reason

    def test_execute_before_load_is_rejected(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        protocol.handle(_execute(1))

        finished = recorder.control()[-1]
        assert isinstance(finished, FinishedMessage)
        assert finished.request_id == 1
        assert finished.classifications == []
        assert finished.error == "no model is loaded"
        assert any(isinstance(m, DebugMessage) and "request 1 failed" in m.msg for m in recorder.messages)

    def test_each_execute_yields_one_finished_in_order(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        protocol.handle({"type": "load", "model_name": "tiny"})
        for request_id, (width, height) in enumerate([(6, 4), (4, 6), (5, 5)], start=1):
            protocol.handle(_execute(request_id, width, height))

        finished = [m for m in recorder.messages if isinstance(m, FinishedMessage)]
        assert [m.request_id for m in finished] == [1, 2, 3]
        assert [m.classifications for m in finished] == [["image", "wide"], ["image", "tall"], ["image", "square"]]

    def test_inference_error_does_not_break_next_execute(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        protocol.handle({"type": "load", "model_name": "tiny"})
        bad = ExecuteMessage(request_id=1, image_data=rgba_image(2, 2).model_copy(update={"data": b"x"}))
        protocol.handle(bad.model_dump())
        protocol.handle(_execute(2))

        finished = [m for m in recorder.messages if isinstance(m, FinishedMessage)]
        assert finished[0].error is not None
        assert finished[1].error is None
        assert finished[1].classifications == ["image", "wide"]

    def test_unexpected_load_error_reports_load_failed(self, recorder: _Recorder) -> None:
        protocol = WorkerProtocol(ExplodingClassifier(), recorder)

        assert protocol.handle({"type": "load", "model_name": "broken"}) is True

        assert recorder.control() == [
            InitMessage(),
            LoadFailedMessage(model_name="broken", reason="RuntimeError: allocator exhausted"),
        ]

    def test_unexpected_classify_error_yields_one_finished(self, recorder: _Recorder) -> None:
        protocol = WorkerProtocol(ExplodingClassifier(), recorder)
        protocol.handle({"type": "load", "model_name": "tiny"})
        assert protocol.handle(_execute(1)) is True
        protocol.handle(_execute(2))

        finished = [m for m in recorder.messages if isinstance(m, FinishedMessage)]
        assert [m.request_id for m in finished] == [1, 2]
        assert finished[0].classifications == []
        assert finished[0].error == "RuntimeError: unexpected failure on request 1"
        assert finished[1].error is None
        assert finished[1].classifications == ["image", "wide"]

    def test_unknown_message_is_logged_and_ignored(self, protocol: WorkerProtocol, recorder: _Recorder) -> None:
        assert protocol.handle({"type": "explode"}) is True

        assert recorder.control() == [InitMessage()]
        debug = recorder.messages[-1]
        assert isinstance(debug, DebugMessage)
        assert debug.source == WORKER_SOURCE
        assert "Ignoring message" in debug.msg

    def test_shutdown_stops_loop(self, protocol: WorkerProtocol) -> None:
        assert protocol.handle(ShutdownMessage().model_dump()) is False

    def test_debug_forwarding_handler(self, recorder: _Recorder) -> None:
        log = logging.getLogger("autotagger.ml.test_forwarding")
        handler = DebugForwardingHandler(recorder)
        log.addHandler(handler)
        try:
            log.warning("Loading model: %s", "tiny")
        finally:
            log.removeHandler(handler)

        assert recorder.messages == [DebugMessage(source="autotagger.ml.test_forwarding", msg="Loading model: tiny")]


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class TestThreadTransport:
    async def test_round_trip_through_worker_thread(self, fake_classifier: FakeClassifier) -> None:
        transport = ThreadTransport(fake_classifier)
        transport.start()
        try:
            transport.send(LoadMessage(model_name="tiny"))
            transport.send(ExecuteMessage(request_id=7, image_data=rgba_image(3, 9)))

            received = []
            while not any(isinstance(m, FinishedMessage) for m in received):
                received.append(await asyncio.wait_for(transport.receive(), timeout=5))
        finally:
            transport.close()

        control = [m for m in received if not isinstance(m, DebugMessage)]
        assert control == [
            InitMessage(),
            ReadyMessage(model_name="tiny"),
            FinishedMessage(request_id=7, classifications=["image", "tall"]),
        ]

    async def test_shutdown_ends_stream(self, fake_classifier: FakeClassifier) -> None:
        transport = ThreadTransport(fake_classifier)
        transport.start()
        transport.send(ShutdownMessage())

        message = await asyncio.wait_for(transport.receive(), timeout=5)
        while message is not None:
            message = await asyncio.wait_for(transport.receive(), timeout=5)
        transport.close()

    async def test_unexpected_error_answers_without_timeout(self) -> None:
        settings = make_settings(execute_timeout=30)
        coordinator = ClassificationCoordinator(ThreadTransport(ExplodingClassifier()), settings)
        await coordinator.start()
        try:
            event = UploadEvent(mime_type="image/png", data=encode_png(4, 2), source="a.png")
            future = await coordinator.submit(event)
            result = await asyncio.wait_for(future, timeout=5)
        finally:
            await coordinator.close()

        assert result.error == "RuntimeError: unexpected failure on request 1"

    def test_close_closes_classifier(self, fake_classifier: FakeClassifier) -> None:
        transport = ThreadTransport(fake_classifier)
        transport.close()
        assert fake_classifier.closed


class TestCreateTransport:
    def test_thread_mode(self) -> None:
        assert isinstance(create_transport(make_settings(worker_mode="thread")), ThreadTransport)

    def test_process_mode(self) -> None:
        transport = create_transport(make_settings(worker_mode="process"))
        assert isinstance(transport, ProcessTransport)
        transport.close()


class TestProcessTransport:
    async def test_missing_model_reports_load_failure(self, tmp_path: Path) -> None:
        settings = make_settings(worker_mode="process", models_dir=str(tmp_path), init_timeout=60, load_timeout=60)
        coordinator = ClassificationCoordinator(ProcessTransport(settings), settings)
        try:
            with pytest.raises(ModelLoadError, match="cannot read"):
                await coordinator.start()
            assert coordinator.state is WorkerState.FAILED
        finally:
            await coordinator.close()
