"""
Client-side address handshake.

The host only learns where to send files once the client tells it. After the
link forms, the client waits for its own listener, then pushes a handshake
frame carrying its link address to the host's transfer port.
"""

import asyncio
import logging

from config import (
    HANDSHAKE_ATTEMPTS,
    HANDSHAKE_CONNECT_TIMEOUT,
    HANDSHAKE_RETRY_DELAY,
    LINK_SUBNET,
    READY_GRACE_PERIOD,
    READY_POLL_ATTEMPTS,
    READY_POLL_INTERVAL,
    TRANSFER_PORT,
)
from discovery.addresses import find_link_address
from transfer.codec import encode_handshake
from transfer.errors import ConnectFailure
from transfer.sender import open_connection

logger = logging.getLogger(__name__)


async def wait_for_listener(
    is_ready,
    poll_interval: float = READY_POLL_INTERVAL,
    attempts: int = READY_POLL_ATTEMPTS,
    grace_period: float = READY_GRACE_PERIOD,
    sleep=asyncio.sleep,
) -> bool:
    """Poll `is_ready()`; if it never turns true, sleep a fixed grace period."""
    for _ in range(attempts):
        if is_ready():
            return True
        await sleep(poll_interval)

    if is_ready():
        return True
    logger.warning(f"Listener not ready, waiting {grace_period} more seconds...")
    await sleep(grace_period)
    return False


async def send_handshake(
    host_address: str,
    local_address: str,
    port: int = TRANSFER_PORT,
    attempts: int = HANDSHAKE_ATTEMPTS,
    retry_delay: float = HANDSHAKE_RETRY_DELAY,
    connect_timeout: float = HANDSHAKE_CONNECT_TIMEOUT,
    sleep=asyncio.sleep,
) -> bool:
    """Push our address to the host. Returns False once all attempts fail."""
    frame = encode_handshake(local_address)
    for attempt in range(1, attempts + 1):
        logger.info(f"Sending my IP to host (attempt {attempt}/{attempts})...")
        try:
            _, writer = await open_connection(host_address, port, connect_timeout)
            try:
                writer.write(frame)
                await writer.drain()
            finally:
                writer.close()
                try:
                    await writer.wait_closed()
                except Exception:
                    pass
            logger.info(f"IP handshake successful ({local_address})")
            return True
        except (ConnectFailure, OSError) as e:
            if attempt < attempts:
                logger.warning(f"Handshake failed, retry in {retry_delay}s... ({e})")
                await sleep(retry_delay)
            else:
                logger.warning(f"Failed to send IP: {e}")

    logger.warning(
        "Files can still be received; the host can send to this device "
        "once it has received a file from it."
    )
    return False


async def run_handshake(
    host_address: str,
    is_listener_ready,
    local_address: str | None = None,
    subnet: str = LINK_SUBNET,
    port: int = TRANSFER_PORT,
    sleep=asyncio.sleep,
) -> bool:
    """Full client handshake: wait for the listener, find our address, send it."""
    await wait_for_listener(is_listener_ready, sleep=sleep)

    if local_address is None:
        local_address = await asyncio.to_thread(find_link_address, subnet)
    if local_address is None:
        logger.warning(f"No local address in {subnet}; skipping IP handshake")
        return False

    return await send_handshake(host_address, local_address, port=port, sleep=sleep)
