"""REST API routes for TransferSync."""

import logging
import os
from ipaddress import IPv4Address

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from discovery.service import ManualLinkDiscovery
from session.manager import SessionError
from session.models import Role
from transfer.errors import SourceUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_discovery = None
_session_manager = None


def init_routes(discovery, session_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _discovery, _session_manager
    _discovery = discovery
    _session_manager = session_manager


# --- Session ---

class RoleBody(BaseModel):
    role: Role


class LinkBody(BaseModel):
    is_group_owner: bool
    group_owner_address: IPv4Address | None = None


@router.get("/session")
async def get_session():
    data = _session_manager.session.snapshot()
    data["listener_port"] = _session_manager.listener_port
    return data


@router.post("/session/role")
async def select_role(body: RoleBody):
    """Choose host or client and start listening."""
    await _session_manager.select_role(body.role)
    await _session_manager.start_listener()
    return _session_manager.session.snapshot()


@router.post("/session/link")
async def report_link(body: LinkBody):
    """Report a formed link (manual discovery backend only)."""
    if not isinstance(_discovery, ManualLinkDiscovery):
        raise HTTPException(status_code=409, detail="Link is managed by discovery")
    if not body.is_group_owner and body.group_owner_address is None:
        raise HTTPException(status_code=400, detail="Client needs the group owner address")

    await _discovery.report_connection_formed(
        body.is_group_owner,
        str(body.group_owner_address) if body.group_owner_address else None,
    )
    return _session_manager.session.snapshot()


@router.post("/session/disconnect")
async def disconnect():
    await _session_manager.disconnect()
    return _session_manager.session.snapshot()


@router.post("/session/reset")
async def reset():
    await _session_manager.reset()
    return _session_manager.session.snapshot()


# --- Peers ---

@router.get("/peers")
async def list_peers():
    """Return the peers currently seen by discovery."""
    peers = await _discovery.get_peers()
    return {"peers": [p.model_dump(mode="json") for p in peers]}


# --- Transfers ---

class CreateTransferBody(BaseModel):
    file_path: str


@router.get("/transfers")
async def list_transfers():
    """Return all transfers (active + finished)."""
    transfers = _session_manager.get_transfers()
    return {"transfers": [t.model_dump(mode="json") for t in transfers]}


@router.post("/transfers")
async def create_transfer(body: CreateTransferBody):
    """Send a local file to the connected peer."""
    try:
        info = await _session_manager.send_file(body.file_path)
    except SessionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SourceUnavailable as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"transfer": info.model_dump(mode="json")}


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {"save_dir": _session_manager.save_dir}


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        if not os.path.isdir(body.save_dir):
            try:
                os.makedirs(body.save_dir, exist_ok=True)
            except OSError as e:
                raise HTTPException(
                    status_code=400, detail=f"Invalid directory: {e}"
                )
        _session_manager.save_dir = body.save_dir
    return {"status": "updated"}
