"""Model store: fetch raw model artifacts by name.

A model named ``foo`` consists of a JSON descriptor ``foo.json`` plus the
topology/weights artifacts its format declares (``foo.pbtxt`` + ``foo.pb``
for TensorFlow, and so on). Stores only move bytes; parsing and network
construction happen in the inference engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError, LocalEntryNotFoundError

from autotagger.errors import ModelFetchError

if TYPE_CHECKING:
    from autotagger.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelStore(Protocol):
    """Protocol for model artifact storage."""

    def fetch(self, model_name: str, suffix: str) -> bytes:
        """Return the bytes of ``<model_name>.<suffix>``.

        Raises:
            ModelFetchError: If the artifact is missing or cannot be retrieved.
        """
        ...

    def close(self) -> None:
        """Release clients or handles held by the store."""
        ...


def artifact_filename(model_name: str, suffix: str) -> str:
    """Build an artifact filename, refusing names that escape the store root."""
    if not model_name or "/" in model_name or "\\" in model_name or model_name.startswith("."):
        raise ModelFetchError(model_name, "invalid model name")
    return f"{model_name}.{suffix}"


# ---------------------------------------------------------------------------
# Concrete implementations
# ---------------------------------------------------------------------------


class LocalModelStore:
    """Reads artifacts from a directory on disk."""

    def __init__(self, models_dir: Path) -> None:
        self._models_dir = models_dir

    def fetch(self, model_name: str, suffix: str) -> bytes:
        path = self._models_dir / artifact_filename(model_name, suffix)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ModelFetchError(model_name, f"cannot read {path}: {exc.strerror or exc}") from exc
        logger.debug("Read %s (%d bytes)", path, len(data))
        return data

    def close(self) -> None:
        pass


class HttpModelStore:
    """Fetches artifacts with ``GET <base_url>/<model_name>.<suffix>``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def fetch(self, model_name: str, suffix: str) -> bytes:
        url = f"{self._base_url}/{artifact_filename(model_name, suffix)}"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            raise ModelFetchError(model_name, f"request to {url} failed: {exc}") from exc

        if response.status_code != httpx.codes.OK:
            raise ModelFetchError(model_name, f"failed to load {url} status: {response.status_code}")
        logger.debug("Fetched %s (%d bytes)", url, len(response.content))
        return response.content

    def close(self) -> None:
        self._client.close()


class HubModelStore:
    """Downloads artifacts from a HuggingFace Hub repository."""

    def __init__(self, repo_id: str, models_dir: Path) -> None:
        self._repo_id = repo_id
        self._models_dir = models_dir
        self._models_dir.mkdir(parents=True, exist_ok=True)

    def fetch(self, model_name: str, suffix: str) -> bytes:
        filename = artifact_filename(model_name, suffix)
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=self._repo_id,
                    filename=filename,
                    local_dir=str(self._models_dir),
                )
            )
        except (HfHubHTTPError, LocalEntryNotFoundError) as exc:
            raise ModelFetchError(model_name, f"cannot download {filename} from {self._repo_id}: {exc}") from exc

        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded.read_bytes()

    def close(self) -> None:
        pass


def build_model_store(settings: Settings) -> ModelStore:
    """Create the model store selected by ``settings.model_source``."""
    if settings.model_source == "http":
        if not settings.models_base_url:
            raise ValueError("AUTOTAGGER_MODELS_BASE_URL is required when model_source is 'http'")
        return HttpModelStore(settings.models_base_url, timeout=settings.fetch_timeout)
    if settings.model_source == "huggingface":
        if not settings.models_repo_id:
            raise ValueError("AUTOTAGGER_MODELS_REPO_ID is required when model_source is 'huggingface'")
        return HubModelStore(settings.models_repo_id, Path(settings.models_dir))
    return LocalModelStore(Path(settings.models_dir))
