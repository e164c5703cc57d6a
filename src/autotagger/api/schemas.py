"""Pydantic request/response schemas for the Autotagger API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    source: str = Field(description="Filename of the uploaded image")
    labels: list[str] = Field(description="Deduplicated tags, sorted alphabetically")
    tags: str = Field(description="Labels joined the way they are written into tag fields")
    error: str | None = Field(default=None, description="Set when classification failed")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    worker_state: str
    model_name: str
    queue_depth: int
    classified_images: int


class ModelInfo(BaseModel):
    """Information about the configured model."""

    name: str
    source: str = Field(description="Model store: 'local', 'http', or 'huggingface'")
    status: str = Field(description="Worker state: 'starting', 'loading', 'ready', 'failed', or 'closed'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
