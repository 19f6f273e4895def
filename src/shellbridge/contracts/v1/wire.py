"""Websocket message shapes.

Inbound messages are validated with pydantic; outbound messages are plain
dicts with camelCase keys built by the helpers below.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


InboundKind = Literal["input", "resize", "ctrl", "env", "ping", "focus", "blur", "suspend", "resume"]


class InboundMessage(BaseModel):
    type: InboundKind
    data: Optional[str] = None
    rows: Optional[int] = Field(default=None, ge=1, le=1000)
    cols: Optional[int] = Field(default=None, ge=1, le=1000)
    key: Optional[str] = None
    value: Optional[str] = None
    focused: Optional[bool] = None

    model_config = ConfigDict(extra="ignore")

    @model_validator(mode="after")
    def _check_payload(self) -> "InboundMessage":
        if self.type == "input" and self.data is None:
            raise ValueError("input requires data")
        if self.type == "resize" and (self.rows is None or self.cols is None):
            raise ValueError("resize requires rows and cols")
        if self.type == "ctrl" and not (self.key or self.data):
            raise ValueError("ctrl requires key")
        if self.type == "env" and (not self.key or self.value is None):
            raise ValueError("env requires key and value")
        return self


class InvalidMessage(ValueError):
    pass


def parse_inbound(raw: str) -> InboundMessage:
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise InvalidMessage(f"invalid json: {e}") from e
    if not isinstance(obj, dict):
        raise InvalidMessage("message must be an object")
    try:
        return InboundMessage.model_validate(obj)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        raise InvalidMessage(str(first.get("msg") or "invalid message")) from e


def connected(session_id: str, working_dir: str, *, shell: str = "", env_files: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "type": "connected",
        "sessionId": session_id,
        "workingDir": working_dir,
        "shell": shell,
        "envFiles": list(env_files or []),
    }


def reconnected(session_id: str, working_dir: str) -> Dict[str, Any]:
    return {"type": "reconnected", "sessionId": session_id, "workingDir": working_dir}


def history(data: str) -> Dict[str, Any]:
    return {"type": "history", "data": data}


def buffered(data: str) -> Dict[str, Any]:
    return {"type": "buffered", "data": data}


def stream(data: str, *, focused: bool) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"type": "stream", "data": data}
    if not focused:
        msg["unfocused"] = True
    return msg


def exit_(code: Optional[int]) -> Dict[str, Any]:
    return {"type": "exit", "code": code}


def error(message: str, *, code: str = "") -> Dict[str, Any]:
    msg: Dict[str, Any] = {"type": "error", "message": message}
    if code:
        msg["code"] = code
    return msg


def pong() -> Dict[str, Any]:
    return {"type": "pong"}


def suspended(session_id: str, message: str = "session suspended", *, count: Optional[int] = None) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"type": "suspended", "sessionId": session_id, "message": message}
    if count is not None:
        msg["count"] = int(count)
    return msg


def resumed(
    session_id: str,
    message: Optional[str] = None,
    *,
    count: Optional[int] = None,
    expired: Optional[List[str]] = None,
) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"type": "resumed", "sessionId": session_id}
    if message is not None:
        msg["message"] = message
    if count is not None:
        msg["count"] = int(count)
    if expired is not None:
        msg["expired"] = list(expired)
    return msg


def focus_update(session_id: str, focused: bool, all_focused: List[str]) -> Dict[str, Any]:
    return {"type": "focusUpdate", "sessionId": session_id, "focused": focused, "allFocused": list(all_focused)}
