"""Pydantic configuration models."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from session_relay import constants


class CommandSpec(BaseModel):
    title: Optional[str] = None


class Limits(BaseModel):
    """Per-command and per-connection resource limits."""

    model_config = ConfigDict(populate_by_name=True)

    timeout_sec: int = Field(900, alias="timeoutSec", ge=1)
    max_output_kb: int = Field(1024, alias="maxOutputKB", ge=1)
    max_sessions: int = Field(4, alias="maxSessions", ge=1)
    agent_idle_timeout_sec: int = Field(900, alias="agentIdleTimeoutSec", ge=1)
    pty_idle_timeout_sec: int = Field(0, alias="ptyIdleTimeoutSec", ge=0)

    @property
    def max_output_bytes(self) -> int:
        return self.max_output_kb * 1024


class ServerSettings(BaseModel):
    host: str = constants.SERVER_HOST
    port: int = constants.SERVER_PORT


class RelayConfig(BaseModel):
    """Top-level configuration loaded from ``config.json``."""

    model_config = ConfigDict(populate_by_name=True)

    server: ServerSettings = Field(default_factory=ServerSettings)
    roots: List[str] = Field(default_factory=lambda: [str(Path.home())])
    command_allowlist: Dict[str, CommandSpec] = Field(default_factory=dict, alias="commandWhitelist")
    dangerous_command_denylist: List[str] = Field(
        default_factory=list, alias="dangerousCommandDenylist"
    )
    limits: Limits = Field(default_factory=Limits)
    buffer_dir: Optional[str] = Field(None, alias="bufferDir")
    run_retention_sec: int = Field(60, alias="runRetentionSec", ge=0)
    recording_retention_hours: int = Field(24, alias="recordingRetentionHours", ge=1)
    run_record_retention_days: int = Field(7, alias="runRecordRetentionDays", ge=1)

    @field_validator("roots")
    @classmethod
    def _roots_not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("roots must be a non-empty array")
        return value
