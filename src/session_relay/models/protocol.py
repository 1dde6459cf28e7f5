"""Wire models for the terminal control protocol."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from session_relay import constants


class Frame(BaseModel):
    """Common envelope shared by every inbound request."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    request_id: str = Field(alias="requestId")


class OpenOptions(BaseModel):
    prompt: Optional[str] = None
    resume: Optional[str] = None
    model: Optional[str] = None


class OpenRequest(Frame):
    cwd: str = Field(min_length=1)
    cols: int = Field(constants.DEFAULT_COLS, gt=0)
    rows: int = Field(constants.DEFAULT_ROWS, gt=0)
    mode: str = "restricted"
    options: OpenOptions = Field(default_factory=OpenOptions)


class StdinRequest(Frame):
    session_id: str = Field(alias="sessionId", min_length=1)
    data: str


class ResizeRequest(Frame):
    session_id: str = Field(alias="sessionId", min_length=1)
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class CloseRequest(Frame):
    session_id: str = Field(alias="sessionId", min_length=1)


class DataEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "data"
    session_id: str = Field(alias="sessionId")
    data: str


class ExitEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "exit"
    session_id: str = Field(alias="sessionId")
    code: Optional[int] = 0
    signal: Optional[str] = None


def response(request_type: str, request_id: str, ok: bool, **fields: Any) -> Dict[str, Any]:
    """Compose a ``<type>.resp`` frame."""
    payload: Dict[str, Any] = {"type": f"{request_type}.resp", "requestId": request_id, "ok": ok}
    payload.update(fields)
    return payload


def dump_event(event: BaseModel) -> Dict[str, Any]:
    return event.model_dump(by_alias=True)
