"""
TCP listener on the fixed transfer port.

Binds with a bounded retry, then accepts connections and runs each one in
its own task so a long receive never blocks the next accept.
"""

import asyncio
import logging

from config import BIND_ATTEMPTS, BIND_RETRY_DELAY, CHUNK_SIZE, TRANSFER_PORT
from transfer.errors import BindFailure

logger = logging.getLogger(__name__)


class Listener:
    """Owns the single listening socket of a session."""

    def __init__(
        self,
        handler,
        host: str = "0.0.0.0",
        port: int = TRANSFER_PORT,
        attempts: int = BIND_ATTEMPTS,
        retry_delay: float = BIND_RETRY_DELAY,
        sleep=asyncio.sleep,
        read_limit: int = CHUNK_SIZE,
    ) -> None:
        self._handler = handler  # async fn(reader, writer)
        self._read_limit = read_limit
        self._host = host
        self._port = port
        self._attempts = attempts
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._server: asyncio.Server | None = None
        self._closing = False

    @property
    def ready(self) -> bool:
        return self._server is not None and not self._closing

    @property
    def port(self) -> int:
        """The bound port (differs from the requested one when that was 0)."""
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        """Bind the port, retrying a few times while the OS releases it."""
        if self._server is not None:
            raise RuntimeError(f"Listener already bound on port {self.port}")

        self._closing = False
        last_error: OSError | None = None
        for attempt in range(1, self._attempts + 1):
            try:
                self._server = await asyncio.start_server(
                    self._handle_connection,
                    self._host,
                    self._port,
                    reuse_address=True,
                    limit=self._read_limit,
                )
                logger.info(f"Listener ready on port {self.port}")
                return
            except OSError as e:
                last_error = e
                if attempt < self._attempts:
                    logger.warning(
                        f"Port {self._port} busy (attempt {attempt}/{self._attempts}), "
                        f"retrying in {self._retry_delay}s..."
                    )
                    await self._sleep(self._retry_delay)

        logger.error(f"Failed to bind port {self._port}: {last_error}")
        raise BindFailure(f"Could not bind port {self._port}: {last_error}")

    async def stop(self) -> None:
        """Close the binding. In-flight connections finish on their own."""
        if self._server is None:
            return
        self._closing = True
        server, self._server = self._server, None
        # close() releases the listening socket right away; wait_closed()
        # would also wait for every in-flight transfer to end.
        server.close()
        logger.info(f"Listener on port {self._port} closed")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        if self._closing:
            writer.close()
            return

        peer = writer.get_extra_info("peername")
        logger.info(f"Incoming connection from {peer[0] if peer else 'unknown'}")
        try:
            await self._handler(reader, writer)
        except Exception as e:
            logger.error(f"Connection handler error: {e}", exc_info=True)
