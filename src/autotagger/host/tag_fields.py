"""Tag-entry targets on the host form.

The host exposes its tag inputs through a :data:`TagFieldSource` callable.
Only inputs whose autocomplete path points at taxonomy terms are tag fields.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

AUTOCOMPLETE_PATH_ATTRIBUTE = "data-autocomplete-path"
LABEL_SEPARATOR = ", "


class TagTarget(Protocol):
    """A host input that can receive a comma-joined tag string."""

    @property
    def key(self) -> str:
        """Stable identifier of the input, used for the fill-once marker."""
        ...

    @property
    def attributes(self) -> Mapping[str, str]:
        """Attributes used to discover the input."""
        ...

    def write(self, value: str) -> None:
        """Replace the input's value."""
        ...


TagFieldSource = Callable[[], Sequence[TagTarget]]


@dataclass
class TagField:
    """In-memory tag input."""

    key: str
    attributes: dict[str, str] = field(default_factory=dict)
    value: str = ""

    def write(self, value: str) -> None:
        self.value = value


def no_tag_fields() -> Sequence[TagTarget]:
    return ()


def is_tag_field(target: TagTarget, path_prefix: str) -> bool:
    return target.attributes.get(AUTOCOMPLETE_PATH_ATTRIBUTE, "").startswith(path_prefix)


def format_labels(labels: Iterable[str]) -> str:
    return LABEL_SEPARATOR.join(sorted(labels))
