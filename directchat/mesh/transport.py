"""TCP transport layer for direct chat messaging.

Each running service owns one ``MessagingEndpoint`` that listens on a fixed
port, whichever side ended up as the link host.  Every accepted connection is
read on its own task until the peer closes it, and each received line is
handed to the registered handlers.

Sending is independent of the endpoint: ``OutboundSender`` opens a
short-lived TCP connection to the target, writes one line and closes the
connection.  Message bursts are rare, so paying the connect cost per message
is simpler than tracking a reusable channel per peer.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger

from directchat.mesh.errors import BindFailure, ConnectionFailure
from directchat.mesh.protocol import DEFAULT_PORT, read_lines, write_line

# Callback type: receives one decoded line.
LineHandler = Callable[[str], Any]

DEFAULT_MAX_CONNECTIONS = 64
DEFAULT_CONNECT_TIMEOUT = 5.0


@dataclass
class InboundConnection:
    """One accepted socket and the task reading it."""

    conn_id: int
    remote_endpoint: str
    writer: asyncio.StreamWriter
    task: asyncio.Task | None = None


def _format_peername(peername: Any) -> str:
    if isinstance(peername, tuple) and len(peername) >= 2:
        return f"{peername[0]}:{peername[1]}"
    return str(peername or "?")


def _reason(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class MessagingEndpoint:
    """Listening socket plus one read task per inbound connection.

    Parameters
    ----------
    host:
        Interface to bind on (default ``"0.0.0.0"``).
    port:
        TCP port to listen on (default 8988; 0 picks a free port).
    max_connections:
        Soft cap on simultaneously open inbound connections.  Connections
        over the cap are closed as soon as they are accepted.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ):
        self.host = host
        self.port = port
        self.max_connections = max_connections
        self._server: asyncio.Server | None = None
        self._handlers: list[LineHandler] = []
        self._connections: dict[int, InboundConnection] = {}
        self._ids = itertools.count(1)
        self._closing = False

    # -- handler registration ------------------------------------------------

    def on_message(self, handler: LineHandler) -> None:
        """Register a callback that is invoked for every received line."""
        self._handlers.append(handler)

    # -- lifecycle -----------------------------------------------------------

    @property
    def is_listening(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def bound_port(self) -> int | None:
        """Port actually bound by the server (resolves port 0)."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def start(self) -> None:
        """Bind the listening socket.  Calling it again is a no-op.

        Raises ``BindFailure`` if the port cannot be bound; no retry is made.
        """
        if self._server is not None:
            return
        self._closing = False
        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port,
            )
        except OSError as exc:
            logger.error(
                "[Chat/Transport] cannot bind {}:{}: {}", self.host, self.port, exc,
            )
            raise BindFailure(f"{self.host}:{self.port}: {_reason(exc)}") from exc
        logger.info(
            "[Chat/Transport] listening on {}:{}", self.host, self.bound_port,
        )

    async def stop(self) -> None:
        """Stop accepting and force-close every live connection.

        Sockets accepted before their handler got to run are closed by the
        handler itself as soon as it starts.
        """
        if self._server is None:
            return
        self._closing = True
        self._server.close()
        # Let handlers of already-accepted sockets register or bail out.
        await asyncio.sleep(0)
        live = list(self._connections.values())
        for conn in live:
            conn.writer.close()
            if conn.task is not None and not conn.task.done():
                conn.task.cancel()
        tasks = [c.task for c in live if c.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None
        self._connections.clear()
        logger.info("[Chat/Transport] stopped ({} connection(s) closed)", len(live))

    # -- receiving -----------------------------------------------------------

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Read one inbound connection to EOF, dispatching each line."""
        remote = _format_peername(writer.get_extra_info("peername"))
        if self._closing:
            logger.debug("[Chat/Transport] stopping, dropping {}", remote)
            await self._close_writer(writer)
            return
        if len(self._connections) >= self.max_connections:
            logger.warning(
                "[Chat/Transport] connection limit ({}) reached, dropping {}",
                self.max_connections, remote,
            )
            await self._close_writer(writer)
            return

        conn = InboundConnection(
            conn_id=next(self._ids),
            remote_endpoint=remote,
            writer=writer,
            task=asyncio.current_task(),
        )
        self._connections[conn.conn_id] = conn
        logger.debug("[Chat/Transport] accepted {} (#{})", remote, conn.conn_id)
        try:
            async for line in read_lines(reader):
                self._dispatch(line)
        except (ConnectionError, OSError, ValueError, asyncio.IncompleteReadError) as exc:
            # ValueError: line longer than the stream reader limit
            logger.debug("[Chat/Transport] connection {} error: {}", remote, exc)
        finally:
            self._connections.pop(conn.conn_id, None)
            await self._close_writer(writer)
            logger.debug("[Chat/Transport] closed {} (#{})", remote, conn.conn_id)

    def _dispatch(self, line: str) -> None:
        for handler in self._handlers:
            try:
                handler(line)
            except Exception as exc:
                logger.error(f"[Chat/Transport] handler error: {exc}")

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class OutboundSender:
    """One-connection-per-message sender.

    Delivery is at-most-once and best-effort: failures raise
    ``ConnectionFailure`` and are never retried or queued.
    """

    def __init__(
        self,
        port: int = DEFAULT_PORT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        self.port = port
        self.connect_timeout = connect_timeout

    async def _open(self, address: str) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(address, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "[Chat/Transport] cannot reach {}:{}: {}", address, self.port, _reason(exc),
            )
            raise ConnectionFailure(_reason(exc)) from exc

    async def send(self, address: str, text: str) -> None:
        """Open a connection to *address*, write one line and close it."""
        _, writer = await self._open(address)
        try:
            write_line(writer, text)
            await writer.drain()
        except OSError as exc:
            logger.warning("[Chat/Transport] write to {} failed: {}", address, exc)
            raise ConnectionFailure(_reason(exc)) from exc
        finally:
            await MessagingEndpoint._close_writer(writer)
        logger.debug("[Chat/Transport] sent {} byte(s) to {}:{}", len(text), address, self.port)

    async def handshake(self, address: str) -> None:
        """Dial the listening port of *address* and hang up without writing."""
        _, writer = await self._open(address)
        await MessagingEndpoint._close_writer(writer)
        logger.debug("[Chat/Transport] handshake with {}:{} ok", address, self.port)
