"""Pydantic response schemas for the Obscura API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    detector_state: str = Field(description="'uninitialized', 'loading', 'ready', or 'unavailable'")
    active_backend: str = Field(description="'neural' or 'heuristic'")
    models_loaded: list[str]
    active_captures: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available detection model."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str
    input_size: str = Field(description="Detector input size as WIDTHxHEIGHT")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
