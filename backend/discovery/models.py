"""Pydantic models for link discovery."""

from ipaddress import IPv4Address
from typing import Literal

from pydantic import BaseModel

from session.models import Role


class Peer(BaseModel):
    """A device seen on the link."""
    device_id: str
    device_name: str
    ip_address: str
    role: Role | None = None
    platform: str = ""
    last_seen: float = 0.0  # Unix timestamp


# --- Events delivered to subscribers ---

class PeerListChanged(BaseModel):
    kind: Literal["peer_list_changed"] = "peer_list_changed"
    peers: list[Peer]


class ConnectionFormed(BaseModel):
    kind: Literal["connection_formed"] = "connection_formed"
    is_group_owner: bool
    # The host may not know its own link address; the client always does.
    group_owner_address: IPv4Address | None = None


class ConnectionLost(BaseModel):
    kind: Literal["connection_lost"] = "connection_lost"


LinkEvent = PeerListChanged | ConnectionFormed | ConnectionLost


class DiscoveryBeacon(BaseModel):
    """The JSON payload broadcast over UDP."""
    app_id: str
    device_id: str
    device_name: str
    role: Role | None = None
    transfer_port: int
    platform: str
