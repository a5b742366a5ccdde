"""Transport interface and wire framing.

Defines the contract between the daemon and the host's local IPC channel.
Each transport carries length-prefixed frames: a 4-byte big-endian length
followed by that many UTF-8 bytes. Every request frame is answered with one
reply frame holding a JSON object with an "ok" field.
"""

from __future__ import annotations

import asyncio
import struct
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from config import Config

HEADER = struct.Struct(">I")
DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024

# handler(message) -> optional reply fields, sync or async
MessageHandler = Callable[[str], "dict[str, Any] | None | Awaitable[dict[str, Any] | None]"]


class TransportError(Exception):
    """Raised when a message cannot be framed, delivered, or was rejected."""
    pass


def encode_frame(payload: str | bytes) -> bytes:
    data = payload.encode("utf-8") if isinstance(payload, str) else payload
    return HEADER.pack(len(data)) + data


async def read_frame(reader: asyncio.StreamReader,
                     max_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> str | None:
    """Read one complete frame. Returns None on a clean EOF between frames."""
    try:
        header = await reader.readexactly(HEADER.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise TransportError("Truncated frame header") from e
    (length,) = HEADER.unpack(header)
    if length > max_bytes:
        raise TransportError(f"Frame of {length} bytes exceeds limit of {max_bytes}")
    try:
        data = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise TransportError(
            f"Truncated frame: got {len(e.partial)} of {length} bytes") from e
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise TransportError("Frame is not valid UTF-8") from e


class Transport(Protocol):
    path: str

    async def listen(self, handler: MessageHandler) -> None: ...
    async def send(self, payload: str, timeout: float = 2.0) -> dict: ...
    async def teardown(self) -> None: ...


def create_transport(config: Config) -> Transport:
    """Factory: create transport from config."""
    kind = config.transport_kind

    if kind == "unix":
        from .unix_socket import UnixSocketTransport
        return UnixSocketTransport(
            path=config.socket_path,
            max_frame_bytes=config.max_frame_bytes,
        )
    raise ValueError(f"Unknown transport kind: {kind!r}")
