"""Pydantic models for the transfer session."""

from enum import Enum
from ipaddress import IPv4Address

from pydantic import BaseModel


class Role(str, Enum):
    HOST = "host"
    CLIENT = "client"

    @property
    def counterpart(self) -> "Role":
        return Role.CLIENT if self is Role.HOST else Role.HOST


class SessionState(str, Enum):
    """Lifecycle of a session."""
    IDLE = "idle"
    ROLE_SELECTED = "role_selected"
    LISTENING = "listening"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Session(BaseModel):
    """The one live session; replaced wholesale on reset."""
    role: Role | None = None
    state: SessionState = SessionState.IDLE
    listener_ready: bool = False
    peer_address: IPv4Address | None = None
    active_transfers: int = 0

    @property
    def active_transfer(self) -> bool:
        return self.active_transfers > 0

    def snapshot(self) -> dict:
        data = self.model_dump(mode="json")
        data["active_transfer"] = self.active_transfer
        return data
