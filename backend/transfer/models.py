"""Pydantic models for file transfer."""

from enum import Enum
from ipaddress import IPv4Address

from pydantic import BaseModel, Field


class TransferState(str, Enum):
    """All possible states for a file transfer."""
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferDirection(str, Enum):
    SENDING = "sending"
    RECEIVING = "receiving"


class TransferInfo(BaseModel):
    """Full state of a single file transfer, exposed to the operator."""
    transfer_id: str
    file_name: str
    file_size: int
    transferred_bytes: int = 0
    state: TransferState = TransferState.TRANSFERRING
    direction: TransferDirection
    peer_address: str | None = None
    speed_bps: float = 0.0
    progress_percent: float = 0.0
    error_message: str | None = None


class TransferProgress(BaseModel):
    """One progress sample taken during a transfer."""
    bytes_moved: int
    total_bytes: int
    sampled_at: float
    rate_bps: float = 0.0

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return self.bytes_moved / self.total_bytes * 100


# --- Wire frames ---

class Handshake(BaseModel):
    """Client-to-host frame announcing the client's reachable address."""
    address: IPv4Address


class FileHeader(BaseModel):
    """Header of a file frame; exactly `size` raw bytes follow it."""
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
