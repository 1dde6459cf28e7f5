"""Pydantic models for recordings and snapshots."""

from __future__ import annotations

from pydantic import BaseModel, Field


class Snapshot(BaseModel):
    cols: int
    rows: int
    text: str


class RecordingInfo(BaseModel):
    session_id: str = Field(serialization_alias="sessionId")
    updated_at: float = Field(serialization_alias="updatedAt")
    size_bytes: int = Field(serialization_alias="sizeBytes")
