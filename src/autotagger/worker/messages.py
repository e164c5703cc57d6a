"""Messages exchanged between the host and the classification worker.

Host -> worker:
    load      Load a model. Params: model_name
    execute   Classify one image. Params: request_id, image_data
    shutdown  Stop the worker loop.

Worker -> host:
    init         The worker is ready to accept ``load``.
    ready        Response to ``load`` when the model is ready. Params: model_name
    load_failed  Response to ``load`` when loading failed. Params: model_name, reason
    finished     Response to ``execute``. Params: request_id, classifications, error
    debug        Log line from the worker. Params: source, msg

Messages travel as plain dicts (``model_dump()``), so nothing is shared
between the two sides.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from autotagger.errors import ProtocolError
from autotagger.ml.image_classifier import ImageData


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Inbound (host -> worker)
# ---------------------------------------------------------------------------


class LoadMessage(_Message):
    type: Literal["load"] = "load"
    model_name: str


class ExecuteMessage(_Message):
    type: Literal["execute"] = "execute"
    request_id: int
    image_data: ImageData


class ShutdownMessage(_Message):
    type: Literal["shutdown"] = "shutdown"


InboundMessage = Annotated[LoadMessage | ExecuteMessage | ShutdownMessage, Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Outbound (worker -> host)
# ---------------------------------------------------------------------------


class InitMessage(_Message):
    type: Literal["init"] = "init"


class ReadyMessage(_Message):
    type: Literal["ready"] = "ready"
    model_name: str


class LoadFailedMessage(_Message):
    type: Literal["load_failed"] = "load_failed"
    model_name: str
    reason: str


class FinishedMessage(_Message):
    type: Literal["finished"] = "finished"
    request_id: int
    classifications: list[str] = Field(default_factory=list)
    error: str | None = None


class DebugMessage(_Message):
    type: Literal["debug"] = "debug"
    source: str
    msg: str


OutboundMessage = Annotated[
    InitMessage | ReadyMessage | LoadFailedMessage | FinishedMessage | DebugMessage,
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundMessage] = TypeAdapter(InboundMessage)
_outbound_adapter: TypeAdapter[OutboundMessage] = TypeAdapter(OutboundMessage)


def _parse(adapter: TypeAdapter[Any], raw: object, direction: str) -> Any:
    if not isinstance(raw, Mapping):
        raise ProtocolError(f"{direction} message must be a mapping, got {type(raw).__name__}")
    try:
        return adapter.validate_python(raw)
    except ValidationError as exc:
        raise ProtocolError(f"invalid {direction} message of type {raw.get('type')!r}: {exc}") from exc


def parse_inbound(raw: object) -> InboundMessage:
    """Validate a host -> worker message.

    Raises:
        ProtocolError: If the kind is unknown or the payload is malformed.
    """
    return _parse(_inbound_adapter, raw, "inbound")


def parse_outbound(raw: object) -> OutboundMessage:
    """Validate a worker -> host message.

    Raises:
        ProtocolError: If the kind is unknown or the payload is malformed.
    """
    return _parse(_outbound_adapter, raw, "outbound")
