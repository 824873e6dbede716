"""
Per-connection handling on the receiving side.

Reads the single frame of an accepted connection and either records the
peer address (handshake) or streams the file body into storage.
"""

import asyncio
import logging

from pydantic import BaseModel

from config import CHUNK_SIZE, PROGRESS_INTERVAL
from transfer.codec import read_frame
from transfer.errors import IncompleteTransfer
from transfer.models import FileHeader, Handshake
from transfer.progress import ProgressTracker
from transfer.storage import open_first_sink

logger = logging.getLogger(__name__)


class ReceivedFile(BaseModel):
    """Outcome of a completed file frame."""
    name: str
    size: int
    path: str


class ConnectionHandler:
    """
    Handles one inbound connection at a time; safe to run concurrently.

    Callbacks (all async, all optional except on_handshake):
        on_handshake(address, remote_ip)
        on_receive_start(header, remote_ip)
        on_progress(header, progress)
    """

    def __init__(
        self,
        sink_strategies,
        on_handshake,
        on_receive_start=None,
        on_progress=None,
        chunk_size: int = CHUNK_SIZE,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        self.sink_strategies = sink_strategies
        self._on_handshake = on_handshake
        self._on_receive_start = on_receive_start
        self._on_progress = on_progress
        self._chunk_size = chunk_size
        self._progress_interval = progress_interval

    async def handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> Handshake | ReceivedFile:
        peer = writer.get_extra_info("peername")
        remote_ip = peer[0] if peer else None
        try:
            frame = await read_frame(reader)

            if isinstance(frame, Handshake):
                logger.info(f"Received client IP: {frame.address}")
                await self._on_handshake(frame.address, remote_ip)
                return frame

            if self._on_receive_start:
                await self._on_receive_start(frame, remote_ip)
            return await self._receive_body(reader, frame)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except Exception:
                pass

    async def _receive_body(
        self, reader: asyncio.StreamReader, header: FileHeader
    ) -> ReceivedFile:
        logger.info(f"Receiving: {header.name} ({header.size} bytes)")

        # All sink strategies are tried before the first body byte is read.
        sink = await asyncio.to_thread(
            open_first_sink, self.sink_strategies, header.name, header.size
        )
        tracker = ProgressTracker(header.size, interval=self._progress_interval)
        try:
            remaining = header.size
            while remaining > 0:
                try:
                    chunk = await reader.read(min(self._chunk_size, remaining))
                except OSError as e:
                    logger.warning(f"Connection error while receiving {header.name}: {e}")
                    chunk = b""
                if not chunk:
                    raise IncompleteTransfer(tracker.bytes_moved, header.size)

                await asyncio.to_thread(sink.write, chunk)
                remaining -= len(chunk)

                progress = tracker.record(len(chunk))
                if progress and self._on_progress:
                    await self._on_progress(header, progress)

            await asyncio.to_thread(sink.flush)
            path = await asyncio.to_thread(sink.finalize)
        except BaseException:
            sink.abort()
            raise

        if self._on_progress:
            await self._on_progress(header, tracker.finish())
        logger.info(f"File saved: {path}")
        return ReceivedFile(name=header.name, size=header.size, path=path)
