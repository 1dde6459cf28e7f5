"""Pydantic models for agent runs."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from session_relay.models.enums import RunMode, RunStatus, RunStrategy


class RunRequest(BaseModel):
    """Body accepted by the run start endpoints."""

    prompt: str = ""
    mode: RunMode = RunMode.AGENT
    cwd: Optional[str] = None
    force: bool = True
    resume: Optional[str] = None
    model: Optional[str] = None


class RunRecord(BaseModel):
    """Persisted run description exposed over the API."""

    id: str
    strategy: RunStrategy
    mode: RunMode
    cwd: str
    prompt: str
    model: Optional[str] = None
    status: RunStatus
    exit_code: Optional[int] = None
    signal: Optional[str] = None
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RunOutput(BaseModel):
    ok: bool = True
    output: str
    next_offset: int = Field(serialization_alias="nextOffset")
    ended: bool


class RunExit(BaseModel):
    """Terminal ``result`` line appended when the agent process exits."""

    type: str = "result"
    exit_code: Optional[int] = Field(None, serialization_alias="exitCode")
    signal: Optional[str] = None
    timed_out: bool = Field(False, serialization_alias="timedOut")

    def to_line(self) -> str:
        return self.model_dump_json(by_alias=True)


class ModelOption(BaseModel):
    id: str
    label: str
