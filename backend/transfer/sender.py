"""Outgoing side of a file transfer: one connection, one file frame."""

import asyncio
import logging

from config import CHUNK_SIZE, PROGRESS_INTERVAL, SEND_CONNECT_TIMEOUT, TRANSFER_PORT
from transfer.codec import encode_file_header
from transfer.errors import ConnectFailure, ConnectTimeout, TransferAborted
from transfer.models import TransferProgress
from transfer.progress import ProgressTracker

logger = logging.getLogger(__name__)


async def open_connection(
    address: str, port: int, timeout: float
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect once, mapping failures onto ConnectFailure / ConnectTimeout."""
    try:
        return await asyncio.wait_for(
            asyncio.open_connection(address, port), timeout=timeout
        )
    except asyncio.TimeoutError as e:
        raise ConnectTimeout(
            f"Timed out connecting to {address}:{port} after {timeout}s"
        ) from e
    except OSError as e:
        raise ConnectFailure(f"Cannot connect to {address}:{port}: {e}") from e


async def send_file(
    target: str,
    name: str,
    size: int,
    source,
    port: int = TRANSFER_PORT,
    connect_timeout: float = SEND_CONNECT_TIMEOUT,
    chunk_size: int = CHUNK_SIZE,
    progress_callback=None,
    progress_interval: float = PROGRESS_INTERVAL,
) -> TransferProgress:
    """
    Send a single file to a peer.

    Args:
        target: IPv4 address of the receiver.
        name: File name announced in the header.
        size: Number of bytes to send; `source` must provide at least this many.
        source: Binary file-like object read with `read(n)`.
        progress_callback: async fn(TransferProgress), called at most every
            `progress_interval` seconds and once more at the end.

    Returns:
        The final progress sample.

    Raises:
        ConnectFailure / ConnectTimeout: the connection could not be opened.
        MalformedFrame: `name` or `size` cannot be carried in a file header;
            raised before connecting.
        TransferAborted: the stream broke or the source ran short.
    """
    target = str(target)
    header = encode_file_header(name, size)
    logger.info(f"Sending: {name} ({size} bytes) to {target}:{port}")
    _, writer = await open_connection(target, port, connect_timeout)

    tracker = ProgressTracker(size, interval=progress_interval)
    try:
        writer.write(header)

        remaining = size
        while remaining > 0:
            chunk = await asyncio.to_thread(source.read, min(chunk_size, remaining))
            if not chunk:
                raise TransferAborted(
                    f"Source for {name} ended after {tracker.bytes_moved} of {size} bytes"
                )
            writer.write(chunk)
            await writer.drain()
            remaining -= len(chunk)

            progress = tracker.record(len(chunk))
            if progress and progress_callback:
                await progress_callback(progress)

        await writer.drain()
    except OSError as e:
        raise TransferAborted(f"Transfer of {name} to {target} aborted: {e}") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except Exception:
            pass

    final = tracker.finish()
    if progress_callback:
        await progress_callback(final)
    logger.info(f"File sent successfully: {name}")
    return final
