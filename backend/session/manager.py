"""
Session Manager: owns the role, peer address and lifecycle of a session.

Reacts to link events from the discovery backend, runs the listener and the
client handshake, schedules outgoing transfers and reports everything to
registered event callbacks.
"""

import asyncio
import ipaddress
import logging
import uuid

from config import (
    DEFAULT_SAVE_DIR,
    FALLBACK_SAVE_DIR,
    LINK_SUBNET,
    TRANSFER_PORT,
)
from discovery.models import ConnectionFormed, ConnectionLost, PeerListChanged
from session.handshake import run_handshake
from session.models import Role, Session, SessionState
from transfer.errors import BindFailure, MalformedFrame
from transfer.handler import ConnectionHandler, ReceivedFile
from transfer.listener import Listener
from transfer.models import TransferDirection, TransferInfo, TransferState
from transfer.sender import send_file
from transfer.storage import DirectorySinkStrategy, LocalFileSource

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """An operation is not allowed in the current session state."""


class SessionManager:
    """Manages the single two-party session and all of its transfers."""

    def __init__(
        self,
        discovery,
        save_dir: str = DEFAULT_SAVE_DIR,
        fallback_dir: str | None = FALLBACK_SAVE_DIR,
        file_source=None,
        listen_host: str = "0.0.0.0",
        port: int = TRANSFER_PORT,
        peer_port: int | None = None,
        subnet: str = LINK_SUBNET,
        local_address: str | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.session = Session()
        self.peer_port = port if peer_port is None else peer_port
        self._discovery = discovery
        self._file_source = file_source or LocalFileSource()
        self._listen_host = listen_host
        self._port = port
        self._subnet = subnet
        self._local_address = local_address
        self._sleep = sleep
        self._listener: Listener | None = None
        self._handshake_task: asyncio.Task | None = None
        self._transfers: dict[str, TransferInfo] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._event_callbacks: list = []  # async fn(event_type, data)
        self._save_dir = save_dir
        self._fallback_dir = fallback_dir

        discovery.on_event(self._on_link_event)

    # --- Properties ---

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def role(self) -> Role | None:
        return self.session.role

    @property
    def listener_port(self) -> int | None:
        return self._listener.port if self._listener else None

    @property
    def save_dir(self) -> str:
        return self._save_dir

    @save_dir.setter
    def save_dir(self, path: str) -> None:
        self._save_dir = path

    @property
    def sink_strategies(self) -> list[DirectorySinkStrategy]:
        """Primary save directory first, then the fallback."""
        strategies = [DirectorySinkStrategy(self._save_dir)]
        if self._fallback_dir and self._fallback_dir != self._save_dir:
            strategies.append(DirectorySinkStrategy(self._fallback_dir))
        return strategies

    def get_transfers(self) -> list[TransferInfo]:
        return list(self._transfers.values())

    # --- Events ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    async def _notify(self, level: str, message: str) -> None:
        await self._emit("notification", {"type": level, "message": message})

    async def _emit_state(self) -> None:
        await self._emit("session_state", self.session.snapshot())

    # --- Lifecycle ---

    async def select_role(self, role: Role) -> None:
        """Start a fresh session as host or client."""
        if self.state not in (SessionState.IDLE, SessionState.DISCONNECTED):
            await self._teardown()

        self.session = Session(role=role, state=SessionState.ROLE_SELECTED)
        self._discovery.set_role(role)
        logger.info(f"=== {role.value.upper()} MODE ===")
        await self._emit_state()

    async def start_listener(self) -> bool:
        """Bind the transfer port for the selected role."""
        if self._listener is not None:
            return True
        if self.state != SessionState.ROLE_SELECTED:
            logger.warning(f"Cannot start listener in state {self.state.value}")
            return False

        listener = Listener(
            self._handle_incoming_connection,
            host=self._listen_host,
            port=self._port,
            sleep=self._sleep,
        )
        self._listener = listener
        try:
            await listener.start()
        except BindFailure as e:
            self._listener = None
            await self._fail(str(e))
            return False

        self.session.listener_ready = True
        self.session.state = SessionState.LISTENING
        await self._emit_state()
        return True

    async def disconnect(self) -> None:
        """Tear the session down; in-flight transfers finish on their own."""
        if self.state == SessionState.IDLE:
            return
        await self._teardown()
        self.session.state = SessionState.DISCONNECTED
        logger.info("Session disconnected")
        await self._emit_state()
        await self._notify("info", "Disconnected.")

    async def reset(self) -> None:
        """Tear down and start over from Idle."""
        await self._teardown()
        self.session = Session()
        self._discovery.set_role(None)
        logger.info("Session reset")
        await self._emit_state()

    async def stop(self) -> None:
        """Application shutdown: tear down and cancel outgoing transfers."""
        await self._teardown()
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        logger.info("Session manager stopped")

    async def _fail(self, message: str) -> None:
        logger.error(f"Session failed: {message}")
        await self._teardown()
        self.session.state = SessionState.DISCONNECTED
        await self._emit_state()
        await self._notify("error", message)

    async def _teardown(self) -> None:
        if self._handshake_task:
            self._handshake_task.cancel()
            self._handshake_task = None
        if self._listener:
            await self._listener.stop()
            self._listener = None
        self.session.listener_ready = False
        self.session.peer_address = None

    # --- Link events ---

    async def _on_link_event(self, event) -> None:
        if isinstance(event, PeerListChanged):
            logger.info(f"Found {len(event.peers)} peer(s)")
            await self._emit("peers", {"peers": [p.model_dump(mode="json") for p in event.peers]})
        elif isinstance(event, ConnectionFormed):
            await self._on_connection_formed(event)
        elif isinstance(event, ConnectionLost):
            if self.state in (
                SessionState.ROLE_SELECTED,
                SessionState.LISTENING,
                SessionState.CONNECTED,
            ):
                logger.info("Link lost")
                await self.disconnect()

    async def _on_connection_formed(self, info: ConnectionFormed) -> None:
        if self.state == SessionState.CONNECTED:
            return
        if self.state == SessionState.DISCONNECTED:
            logger.warning("Link formed after disconnect; select a role or reset first")
            return

        link_role = Role.HOST if info.is_group_owner else Role.CLIENT
        if self.state == SessionState.IDLE:
            await self.select_role(link_role)
        elif self.role != link_role:
            logger.warning(
                f"Selected role {self.role.value} but link says {link_role.value}; "
                f"following the link"
            )
            self.session.role = link_role
            self._discovery.set_role(link_role)

        logger.info(
            f"Connection established, group owner: {info.group_owner_address or 'unknown'}"
        )

        # Listener first, on both sides
        if not await self.start_listener():
            return

        if link_role == Role.CLIENT:
            if info.group_owner_address is None:
                logger.warning("Link formed without a group owner address")
            else:
                self.session.peer_address = info.group_owner_address

        self.session.state = SessionState.CONNECTED
        await self._emit_state()
        await self._notify("success", "Connected.")

        if link_role == Role.CLIENT and self.session.peer_address is not None:
            self._handshake_task = asyncio.create_task(
                self._handshake(str(self.session.peer_address))
            )

    async def _handshake(self, host_address: str) -> None:
        session = self.session
        ok = await run_handshake(
            host_address,
            lambda: session.listener_ready,
            local_address=self._local_address,
            subnet=self._subnet,
            port=self.peer_port,
            sleep=self._sleep,
        )
        if not ok:
            await self._notify(
                "warning",
                "Could not send this device's address to the host. "
                "You can still receive files.",
            )

    # --- Peer address ---

    def _record_peer_address(self, session: Session, address, source: str) -> None:
        if session is not self.session:
            logger.info(f"Ignoring peer address from {source}: session was reset")
            return
        if session.role != Role.HOST:
            logger.warning(f"Ignoring peer address from {source}: not acting as host")
            return
        if session.state not in (SessionState.LISTENING, SessionState.CONNECTED):
            return
        try:
            address = ipaddress.IPv4Address(str(address))
        except ValueError:
            logger.warning(f"Ignoring non-IPv4 peer address {address} from {source}")
            return

        current = session.peer_address
        if current is None:
            session.peer_address = address
            logger.info(f"Peer address set to {address} (from {source})")
        elif current != address:
            logger.warning(
                f"Peer address already {current}; ignoring {address} from {source}"
            )

    # --- Incoming ---

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Handle a new incoming TCP connection."""
        session = self.session
        info: TransferInfo | None = None

        async def on_handshake(address, remote_ip) -> None:
            self._record_peer_address(session, address, "handshake")
            if session is self.session:
                await self._emit_state()

        async def on_receive_start(header, remote_ip) -> None:
            nonlocal info
            if remote_ip and session.role == Role.HOST and session.peer_address is None:
                self._record_peer_address(session, remote_ip, "file transfer")
            info = TransferInfo(
                transfer_id=str(uuid.uuid4()),
                file_name=header.name,
                file_size=header.size,
                direction=TransferDirection.RECEIVING,
                peer_address=remote_ip,
            )
            session.active_transfers += 1
            await self._on_state_change(info)

        async def on_progress(header, progress) -> None:
            await self._on_progress(info, progress)

        handler = ConnectionHandler(
            self.sink_strategies,
            on_handshake=on_handshake,
            on_receive_start=on_receive_start,
            on_progress=on_progress,
        )
        try:
            result = await handler.handle(reader, writer)
            if isinstance(result, ReceivedFile) and info:
                info.state = TransferState.COMPLETED
                await self._on_state_change(info)
        except MalformedFrame as e:
            logger.warning(f"Rejected malformed frame: {e}")
            await self._notify("error", f"Rejected malformed frame: {e}")
        except Exception as e:
            logger.error(f"Receive error: {e}")
            if info:
                info.state = TransferState.FAILED
                info.error_message = str(e)
                await self._on_state_change(info)
            else:
                await self._notify("error", f"Receive error: {e}")
        finally:
            if info:
                session.active_transfers -= 1

    # --- Outgoing ---

    def _resolve_target(self):
        if self.state != SessionState.CONNECTED:
            raise SessionError("Not connected! Cannot send file.")
        if self.session.peer_address is None:
            if self.role == Role.HOST:
                raise SessionError(
                    "Client IP unknown. Client needs to send a file first."
                )
            raise SessionError("No host address available")
        return self.session.peer_address

    async def send_file(self, file_ref: str) -> TransferInfo:
        """Queue a file for sending to the peer; returns immediately."""
        target = self._resolve_target()
        resolved = await asyncio.to_thread(self._file_source.resolve, file_ref)

        info = TransferInfo(
            transfer_id=str(uuid.uuid4()),
            file_name=resolved.name,
            file_size=resolved.size,
            direction=TransferDirection.SENDING,
            peer_address=str(target),
        )
        self.session.active_transfers += 1
        await self._on_state_change(info)

        task = asyncio.create_task(
            self._send_file_task(str(target), resolved, info, self.session)
        )
        self._tasks[info.transfer_id] = task
        return info

    async def _send_file_task(self, target: str, resolved, info: TransferInfo, session) -> None:
        """Task wrapper for sending a single file."""
        try:
            source = await asyncio.to_thread(resolved.open)
            try:
                await send_file(
                    target,
                    resolved.name,
                    resolved.size,
                    source,
                    port=self.peer_port,
                    progress_callback=lambda p: self._on_progress(info, p),
                )
            finally:
                source.close()
            info.state = TransferState.COMPLETED
            await self._on_state_change(info)
        except Exception as e:
            logger.error(f"Send error for {info.file_name}: {e}")
            info.state = TransferState.FAILED
            info.error_message = str(e)
            await self._on_state_change(info)
        finally:
            session.active_transfers -= 1
            self._tasks.pop(info.transfer_id, None)

    # --- Transfer reporting ---

    async def _on_progress(self, info: TransferInfo | None, progress) -> None:
        if info is None:
            return
        info.transferred_bytes = progress.bytes_moved
        info.speed_bps = progress.rate_bps
        info.progress_percent = progress.percent
        await self._emit("transfer_progress", info.model_dump(mode="json"))

    async def _on_state_change(self, info: TransferInfo) -> None:
        self._transfers[info.transfer_id] = info
        if info.state != TransferState.TRANSFERRING:
            info.speed_bps = 0
        if info.state == TransferState.COMPLETED:
            info.progress_percent = 100.0
            info.transferred_bytes = info.file_size
        await self._emit("transfer_state", info.model_dump(mode="json"))

        # Generate user-facing notifications
        if info.state == TransferState.COMPLETED:
            direction = "sent" if info.direction == TransferDirection.SENDING else "received"
            await self._notify("success", f"'{info.file_name}' {direction} successfully!")
        elif info.state == TransferState.FAILED:
            await self._notify(
                "error", f"Transfer of '{info.file_name}' failed: {info.error_message}"
            )
