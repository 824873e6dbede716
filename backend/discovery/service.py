"""
Link discovery backends.

The session engine only consumes link events: the peer list changed, a
two-party connection formed, or the connection was lost. `ManualLinkDiscovery`
takes those events from the operator; `LanLinkDiscovery` derives them from
UDP broadcast beacons on the local network.
"""

import asyncio
import json
import logging
import socket
import time
import uuid

from config import (
    APP_ID,
    DEVICE_NAME,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    LINK_SUBNET,
    PEER_TIMEOUT,
    PLATFORM,
    TRANSFER_PORT,
)
from discovery.addresses import find_link_address
from discovery.models import (
    ConnectionFormed,
    ConnectionLost,
    DiscoveryBeacon,
    Peer,
    PeerListChanged,
)
from session.models import Role

logger = logging.getLogger(__name__)


class LinkDiscovery:
    """Event source for link state; subclasses decide where events come from."""

    def __init__(self) -> None:
        self._callbacks: list = []  # async fn(event)
        self._connection_info: ConnectionFormed | None = None
        self._peers: dict[str, Peer] = {}
        self.role: Role | None = None

    def on_event(self, callback) -> None:
        """Register callback: async fn(event)."""
        self._callbacks.append(callback)

    def connection_info(self) -> ConnectionFormed | None:
        """The currently formed connection, if any."""
        return self._connection_info

    def set_role(self, role: Role | None) -> None:
        self.role = role

    async def get_peers(self) -> list[Peer]:
        return list(self._peers.values())

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass

    async def _emit(self, event) -> None:
        if isinstance(event, ConnectionFormed):
            self._connection_info = event
        elif isinstance(event, ConnectionLost):
            self._connection_info = None

        for cb in self._callbacks:
            try:
                await cb(event)
            except Exception as e:
                logger.error(f"Link event callback error: {e}", exc_info=True)


class ManualLinkDiscovery(LinkDiscovery):
    """Link events reported by the operator (or a test)."""

    async def report_connection_formed(
        self, is_group_owner: bool, group_owner_address: str | None = None
    ) -> None:
        event = ConnectionFormed(
            is_group_owner=is_group_owner,
            group_owner_address=group_owner_address,
        )
        logger.info(
            f"Connection established, group owner: "
            f"{event.group_owner_address or 'unknown'}"
        )
        await self._emit(event)

    async def report_connection_lost(self) -> None:
        logger.info("Link reported lost")
        await self._emit(ConnectionLost())

    async def report_peers(self, peers: list[Peer]) -> None:
        self._peers = {p.device_id: p for p in peers}
        await self._emit(PeerListChanged(peers=peers))


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving discovery beacons."""

    def __init__(self, service: "LanLinkDiscovery"):
        self.service = service
        self._pending: set[asyncio.Task] = set()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            beacon = DiscoveryBeacon(**json.loads(data.decode("utf-8")))
        except Exception as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        # Ignore our own beacons and other applications
        if beacon.device_id == self.service.device_id or beacon.app_id != APP_ID:
            return

        peer = Peer(
            device_id=beacon.device_id,
            device_name=beacon.device_name,
            ip_address=addr[0],
            role=beacon.role,
            platform=beacon.platform,
            last_seen=time.time(),
        )
        task = asyncio.ensure_future(self.service.update_peer(peer))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class LanLinkDiscovery(LinkDiscovery):
    """
    Forms a two-party link from UDP broadcast beacons.

    Every instance announces its role. The first beacon from a device with
    the counterpart role forms the connection; that device going silent for
    longer than `peer_timeout` loses it.
    """

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        interval: float = DISCOVERY_INTERVAL,
        peer_timeout: float = PEER_TIMEOUT,
        subnet: str = LINK_SUBNET,
    ) -> None:
        super().__init__()
        self.device_id = str(uuid.uuid4())
        self.device_name = DEVICE_NAME
        self._port = port
        self._interval = interval
        self._peer_timeout = peer_timeout
        self._subnet = subnet
        self._counterpart_id: str | None = None
        self._lock = asyncio.Lock()
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._transport: asyncio.DatagramTransport | None = None

    def set_role(self, role: Role | None) -> None:
        """Change the announced role; any formed link is forgotten."""
        super().set_role(role)
        self._counterpart_id = None
        self._connection_info = None

    async def start(self) -> None:
        """Start the discovery broadcaster and listener."""
        logger.info(f"Starting discovery on UDP port {self._port}")

        loop = asyncio.get_running_loop()

        # SO_REUSEADDR must be set before binding so several instances
        # can share the UDP port on one machine
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        sock.setblocking(False)
        sock.bind(("0.0.0.0", self._port))

        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport

        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info("Discovery service started")

    async def stop(self) -> None:
        """Stop the discovery service."""
        if self._broadcast_task:
            self._broadcast_task.cancel()
        if self._cleanup_task:
            self._cleanup_task.cancel()
        if self._transport:
            self._transport.close()
        logger.info("Discovery service stopped")

    async def update_peer(self, peer: Peer) -> None:
        """Add or refresh a peer and derive link events from it."""
        async with self._lock:
            previous = self._peers.get(peer.device_id)
            self._peers[peer.device_id] = peer
            peers = list(self._peers.values())

        if previous is None or previous.role != peer.role:
            logger.info(f"Discovered peer: {peer.device_name} ({peer.ip_address})")
            await self._emit(PeerListChanged(peers=peers))

        if (
            self.role is not None
            and self._counterpart_id is None
            and peer.role == self.role.counterpart
        ):
            self._counterpart_id = peer.device_id
            if self.role == Role.CLIENT:
                owner = peer.ip_address
            else:
                owner = await asyncio.to_thread(find_link_address, self._subnet)
            await self._emit(
                ConnectionFormed(
                    is_group_owner=self.role == Role.HOST,
                    group_owner_address=owner,
                )
            )

    async def expire_peers(self, now: float | None = None) -> None:
        """Drop peers not seen within the timeout."""
        now = time.time() if now is None else now
        stale = []

        async with self._lock:
            for device_id, peer in list(self._peers.items()):
                if now - peer.last_seen > self._peer_timeout:
                    stale.append(peer)
                    del self._peers[device_id]
            peers = list(self._peers.values())

        if not stale:
            return
        for peer in stale:
            logger.info(f"Peer lost: {peer.device_name} ({peer.ip_address})")
        await self._emit(PeerListChanged(peers=peers))

        if any(p.device_id == self._counterpart_id for p in stale):
            self._counterpart_id = None
            await self._emit(ConnectionLost())

    def _beacon(self) -> bytes:
        beacon = DiscoveryBeacon(
            app_id=APP_ID,
            device_id=self.device_id,
            device_name=self.device_name,
            role=self.role,
            transfer_port=TRANSFER_PORT,
            platform=PLATFORM,
        )
        return json.dumps(beacon.model_dump(mode="json")).encode("utf-8")

    async def _broadcast_loop(self) -> None:
        """Periodically send a discovery beacon."""
        while True:
            try:
                data = self._beacon()
                if self._transport:
                    for bcast_ip in ("<broadcast>", "255.255.255.255"):
                        try:
                            self._transport.sendto(data, (bcast_ip, self._port))
                        except OSError as e:
                            logger.debug(f"Broadcast to {bcast_ip} failed: {e}")
            except Exception as e:
                logger.warning(f"Broadcast failed: {e}")

            await asyncio.sleep(self._interval)

    async def _cleanup_loop(self) -> None:
        """Remove stale peers that haven't been seen recently."""
        while True:
            await asyncio.sleep(self._peer_timeout)
            await self.expire_peers()
