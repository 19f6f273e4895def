from __future__ import annotations

from .errors import ErrorInfo
from .session import LIVE_STATUSES, CreateSessionRequest, FocusRequest, Session, SessionMode, SessionStatus
from .wire import InboundKind, InboundMessage, InvalidMessage, parse_inbound

__all__ = [
    "CreateSessionRequest",
    "ErrorInfo",
    "FocusRequest",
    "InboundKind",
    "InboundMessage",
    "InvalidMessage",
    "LIVE_STATUSES",
    "Session",
    "SessionMode",
    "SessionStatus",
    "parse_inbound",
]
