"""
TransferSync: FastAPI application entry point.

Wires the link discovery backend into the session manager, forwards session
events to WebSocket clients and serves the operator API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, DISCOVERY_BACKEND, TRANSFER_PORT
from discovery.service import LanLinkDiscovery, LinkDiscovery, ManualLinkDiscovery
from session.manager import SessionManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_discovery(backend: str = DISCOVERY_BACKEND) -> LinkDiscovery:
    """Pick the link discovery backend named in config."""
    if backend == "lan":
        return LanLinkDiscovery()
    if backend != "manual":
        logger.warning(f"Unknown discovery backend {backend!r}, using manual")
    return ManualLinkDiscovery()


discovery = build_discovery()
session_manager = SessionManager(discovery)
ws_manager = ConnectionManager()
session_manager.on_event(ws_manager.handle_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Starting TransferSync (transfer port {TRANSFER_PORT}, "
        f"{type(discovery).__name__})"
    )
    await discovery.start()
    try:
        yield
    finally:
        logger.info("Shutting down TransferSync...")
        await session_manager.stop()
        await discovery.stop()


app = FastAPI(title="TransferSync", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(discovery, session_manager)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    # Late joiners get the current session before any further events
    await websocket.send_json(
        {"event": "session_state", "data": session_manager.session.snapshot()}
    )
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level="info")
