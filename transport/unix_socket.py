"""Unix domain socket transport.

The daemon listens on a socket file; the host (or `sandboxd --write`)
connects, writes length-prefixed frames and reads one reply per frame.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
import os
from pathlib import Path
from typing import Any

from retry import RetryBackoff, RetryConfig

from . import (
    DEFAULT_MAX_FRAME_BYTES,
    MessageHandler,
    TransportError,
    encode_frame,
    read_frame,
)

log = logging.getLogger(__name__)


def _encode_reply(reply: dict[str, Any]) -> bytes:
    return encode_frame(json.dumps(reply))


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(ConnectionResetError, BrokenPipeError):
        await writer.wait_closed()


async def _socket_is_live(path: Path) -> bool:
    """True if something accepts connections on the socket file."""
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_unix_connection(str(path)), timeout=0.5,
        )
    except (OSError, TimeoutError):
        return False
    await _close_writer(writer)
    return True


class UnixSocketTransport:
    """Listens on a Unix socket and dispatches framed messages to a handler."""

    def __init__(self, path: str | Path, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        self.path = str(path)
        self.max_frame_bytes = max_frame_bytes
        self._server: asyncio.Server | None = None
        self._handler: MessageHandler | None = None
        self._dispatch_lock = asyncio.Lock()
        self._connections: set[asyncio.StreamWriter] = set()
        self._owns_socket = False

    @property
    def listening(self) -> bool:
        return self._server is not None

    async def listen(self, handler: MessageHandler) -> None:
        """Create the socket file and start accepting clients."""
        if self._server is not None:
            raise TransportError(f"Already listening on {self.path}")

        sock_path = Path(self.path)
        sock_path.parent.mkdir(parents=True, exist_ok=True)
        if sock_path.exists():
            if await _socket_is_live(sock_path):
                raise TransportError(f"Another daemon is listening on {sock_path}")
            log.info("Stale socket file found, removing: %s", sock_path)
            sock_path.unlink()

        self._handler = handler
        self._server = await asyncio.start_unix_server(
            self._handle_connection, path=self.path,
        )
        self._owns_socket = True
        os.chmod(self.path, 0o600)
        log.info("Listening on unix socket: %s", self.path)

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter) -> None:
        self._connections.add(writer)
        try:
            while True:
                try:
                    message = await read_frame(reader, self.max_frame_bytes)
                except TransportError as e:
                    log.warning("Malformed frame, dropping connection: %s", e)
                    break
                if message is None:
                    break
                writer.write(await self._dispatch(message))
                await writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            log.debug("Client went away: %s", e)
        finally:
            self._connections.discard(writer)
            await _close_writer(writer)

    async def _dispatch(self, message: str) -> bytes:
        """Run the handler for one message. Never raises."""
        async with self._dispatch_lock:
            try:
                result = self._handler(message)
                if inspect.isawaitable(result):
                    result = await result
                return _encode_reply({**(result or {}), "ok": True})
            except Exception as e:
                log.error("Message handler failed: %s", e, exc_info=True)
                return _encode_reply({"ok": False, "error": str(e) or type(e).__name__})

    async def send(self, payload: str, timeout: float = 2.0) -> dict:
        return await send_message(self.path, payload, timeout=timeout)

    async def teardown(self) -> None:
        """Stop serving and remove the socket file. Idempotent."""
        if self._server is not None:
            self._server.close()
            for writer in list(self._connections):
                writer.close()
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=2.0)
            except TimeoutError:
                log.warning("Timed out waiting for socket clients to disconnect")
            self._server = None
        if self._owns_socket:
            try:
                Path(self.path).unlink(missing_ok=True)
            except OSError as e:
                log.warning("Could not remove socket file %s: %s", self.path, e)
            self._owns_socket = False


async def _connect(path: str, backoff: RetryBackoff
                   ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Connect, retrying while the receiver is not listening yet."""
    while True:
        try:
            return await asyncio.open_unix_connection(path)
        except (FileNotFoundError, ConnectionRefusedError) as e:
            backoff.increment()
            delay_ms = backoff.retry_in()
            if delay_ms is None:
                raise TransportError(f"Nothing listening on {path}: {e}") from e
            log.debug("Socket %s not ready, retrying in %.0fms", path, delay_ms)
            await asyncio.sleep(delay_ms / 1000)


async def _send(path: str, payload: str, backoff: RetryBackoff) -> dict:
    reader, writer = await _connect(path, backoff)
    try:
        writer.write(encode_frame(payload))
        await writer.drain()
        raw = await read_frame(reader)
    finally:
        await _close_writer(writer)

    if raw is None:
        raise TransportError("Connection closed before a reply was received")
    try:
        reply = json.loads(raw)
    except json.JSONDecodeError as e:
        raise TransportError(f"Invalid reply: {raw[:200]}") from e
    if not isinstance(reply, dict):
        raise TransportError(f"Invalid reply: {raw[:200]}")
    if not reply.get("ok"):
        raise TransportError(reply.get("error") or "Message rejected")
    return reply


async def send_message(path: str | Path, payload: Any, timeout: float = 2.0,
                       retry: RetryConfig | None = None) -> dict:
    """Write one message to the daemon socket and return its reply.

    Non-string payloads are JSON-encoded. Raises TransportError on timeout,
    when nothing is listening, or when the handler rejected the message.
    """
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    backoff = RetryBackoff(retry or RetryConfig(max_attempts=10))
    try:
        return await asyncio.wait_for(_send(str(path), payload, backoff), timeout=timeout)
    except TimeoutError as e:
        raise TransportError(f"Timed out after {timeout}s writing to {path}") from e
