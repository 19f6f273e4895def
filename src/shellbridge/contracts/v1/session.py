from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


SessionStatus = Literal["connecting", "active", "inactive", "suspended", "error", "closed"]
SessionMode = Literal["normal", "assistant"]

# Statuses that still own (or are about to own) a process.
LIVE_STATUSES = ("connecting", "active", "inactive", "suspended")


class Session(BaseModel):
    v: int = 1
    id: str
    project_id: str
    user_id: Optional[str] = None
    status: SessionStatus = "connecting"
    mode: SessionMode = "normal"
    focused: bool = False
    tab_name: str = ""
    current_path: str = ""
    ws_connected: bool = False
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    # Monotonic bookkeeping; never sent to clients.
    last_activity: float = Field(default=0.0, exclude=True)
    seq: int = Field(default=0, exclude=True)

    model_config = ConfigDict(extra="forbid")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "userId": self.user_id,
            "status": self.status,
            "mode": self.mode,
            "focused": self.focused,
            "tabName": self.tab_name,
            "currentPath": self.current_path,
            "wsConnected": self.ws_connected,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class CreateSessionRequest(BaseModel):
    project_id: str = Field(alias="projectId")
    path: str = ""
    user_id: Optional[str] = Field(default=None, alias="userId")
    mode: SessionMode = "normal"
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    rows: int = Field(default=24, ge=1, le=1000)
    cols: int = Field(default=80, ge=1, le=1000)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class FocusRequest(BaseModel):
    focused: bool = True

    model_config = ConfigDict(extra="ignore")
