"""Tests for transport/ — framing and the Unix socket transport.

Covers: in-order delivery, large messages, handler error isolation,
socket file lifecycle, stale sockets, sending with nothing listening.
"""

import asyncio
import json
import os
import socket
import stat
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from retry import RetryConfig
from transport import (
    HEADER,
    TransportError,
    create_transport,
    encode_frame,
    read_frame,
)
from transport.unix_socket import UnixSocketTransport, send_message

FAST_RETRY = RetryConfig(base_delay_ms=5, max_delay_ms=20, max_attempts=3)


def _reader_with(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


# ─── Framing ──────────────────────────────────────────────────────


class TestFraming:
    def test_encode_frame_prefixes_length(self):
        frame = encode_frame("héllo")
        (length,) = HEADER.unpack(frame[:4])
        assert length == len("héllo".encode())
        assert frame[4:].decode() == "héllo"

    @pytest.mark.asyncio
    async def test_read_frame_roundtrip_multiple(self):
        reader = _reader_with(encode_frame("one") + encode_frame("two"))
        assert await read_frame(reader) == "one"
        assert await read_frame(reader) == "two"
        assert await read_frame(reader) is None

    @pytest.mark.asyncio
    async def test_truncated_body_raises(self):
        reader = _reader_with(HEADER.pack(10) + b"abc")
        with pytest.raises(TransportError, match="Truncated"):
            await read_frame(reader)

    @pytest.mark.asyncio
    async def test_truncated_header_raises(self):
        reader = _reader_with(b"\x00\x00")
        with pytest.raises(TransportError):
            await read_frame(reader)

    @pytest.mark.asyncio
    async def test_oversized_frame_rejected(self):
        reader = _reader_with(HEADER.pack(1000) + b"x" * 1000)
        with pytest.raises(TransportError, match="exceeds"):
            await read_frame(reader, max_bytes=100)

    @pytest.mark.asyncio
    async def test_invalid_utf8_rejected(self):
        reader = _reader_with(encode_frame(b"\xff\xfe"))
        with pytest.raises(TransportError, match="UTF-8"):
            await read_frame(reader)


# ─── Factory ──────────────────────────────────────────────────────


class TestFactory:
    def test_unix_transport(self):
        config = MagicMock(transport_kind="unix", socket_path="/tmp/x.sock",
                           max_frame_bytes=1024)
        t = create_transport(config)
        assert isinstance(t, UnixSocketTransport)
        assert t.path == "/tmp/x.sock"
        assert t.max_frame_bytes == 1024

    def test_unknown_kind(self):
        config = MagicMock(transport_kind="tcp")
        with pytest.raises(ValueError, match="Unknown transport"):
            create_transport(config)


# ─── Unix socket transport ────────────────────────────────────────


class TestUnixSocketTransport:
    @pytest.mark.asyncio
    async def test_single_message_delivered(self, socket_path):
        received = []
        t = UnixSocketTransport(socket_path)
        await t.listen(received.append)
        try:
            reply = await send_message(socket_path, '{"type":"ping"}')
            assert reply == {"ok": True}
            assert received == ['{"type":"ping"}']
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self, socket_path):
        received = []
        t = UnixSocketTransport(socket_path)
        await t.listen(received.append)
        try:
            for i in range(5):
                await send_message(socket_path, {"n": i})
            assert [json.loads(m)["n"] for m in received] == [0, 1, 2, 3, 4]
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_large_message_arrives_intact(self, socket_path):
        received = []
        t = UnixSocketTransport(socket_path)
        await t.listen(received.append)
        payload = json.dumps({"prompt": "x" * 50_000})
        try:
            await send_message(socket_path, payload)
            assert received == [payload]
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_async_handler_reply_fields(self, socket_path):
        async def handler(message):
            await asyncio.sleep(0)
            return {"echo": message}

        t = UnixSocketTransport(socket_path)
        await t.listen(handler)
        try:
            reply = await send_message(socket_path, "hi")
            assert reply == {"echo": "hi", "ok": True}
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_handler_error_reported_and_listener_survives(self, socket_path):
        received = []

        def handler(message):
            if message == "bad":
                raise ValueError("boom")
            received.append(message)

        t = UnixSocketTransport(socket_path)
        await t.listen(handler)
        try:
            with pytest.raises(TransportError, match="boom"):
                await send_message(socket_path, "bad")
            await send_message(socket_path, "good")
            assert received == ["good"]
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_handlers_never_run_concurrently(self, socket_path):
        active = 0
        peak = 0

        async def handler(message):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        t = UnixSocketTransport(socket_path)
        await t.listen(handler)
        try:
            await asyncio.gather(*(send_message(socket_path, str(i)) for i in range(5)))
            assert peak == 1
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_socket_file_permissions(self, socket_path):
        t = UnixSocketTransport(socket_path)
        await t.listen(lambda m: None)
        try:
            mode = stat.S_IMODE(os.stat(socket_path).st_mode)
            assert mode == 0o600
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_teardown_removes_socket(self, socket_path):
        t = UnixSocketTransport(socket_path)
        await t.listen(lambda m: None)
        assert Path(socket_path).exists()
        await t.teardown()
        assert not Path(socket_path).exists()
        assert not t.listening

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, socket_path):
        t = UnixSocketTransport(socket_path)
        await t.listen(lambda m: None)
        await t.teardown()
        await t.teardown()

    @pytest.mark.asyncio
    async def test_teardown_without_listen_leaves_foreign_file(self, socket_path):
        Path(socket_path).write_text("not ours")
        t = UnixSocketTransport(socket_path)
        await t.teardown()
        assert Path(socket_path).exists()

    @pytest.mark.asyncio
    async def test_stale_socket_replaced(self, socket_path):
        # Bound but never listening: a leftover from a crashed daemon
        stale = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        stale.bind(socket_path)
        stale.close()
        assert Path(socket_path).exists()

        received = []
        t = UnixSocketTransport(socket_path)
        await t.listen(received.append)
        try:
            await send_message(socket_path, "after-stale")
            assert received == ["after-stale"]
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_refuses_live_socket(self, socket_path):
        first = UnixSocketTransport(socket_path)
        await first.listen(lambda m: None)
        try:
            second = UnixSocketTransport(socket_path)
            with pytest.raises(TransportError, match="Another daemon"):
                await second.listen(lambda m: None)
            assert Path(socket_path).exists()
        finally:
            await first.teardown()

    @pytest.mark.asyncio
    async def test_send_via_transport(self, socket_path):
        t = UnixSocketTransport(socket_path)
        await t.listen(lambda m: {"len": len(m)})
        try:
            reply = await t.send("abcd")
            assert reply["len"] == 4
        finally:
            await t.teardown()


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_nothing_listening_raises(self, socket_path):
        with pytest.raises(TransportError):
            await send_message(socket_path, "hello", timeout=1.0, retry=FAST_RETRY)

    @pytest.mark.asyncio
    async def test_waits_for_listener_to_appear(self, socket_path):
        received = []
        t = UnixSocketTransport(socket_path)

        async def start_late():
            await asyncio.sleep(0.05)
            await t.listen(received.append)

        retry = RetryConfig(base_delay_ms=10, max_delay_ms=20, max_attempts=50)
        try:
            await asyncio.gather(
                start_late(),
                send_message(socket_path, "late", timeout=2.0, retry=retry),
            )
            assert received == ["late"]
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    async def test_timeout_raises_transport_error(self, socket_path):
        async def slow(message):
            await asyncio.sleep(1.0)

        t = UnixSocketTransport(socket_path)
        await t.listen(slow)
        try:
            with pytest.raises(TransportError, match="Timed out"):
                await send_message(socket_path, "x", timeout=0.1)
        finally:
            await t.teardown()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", ["[1, 2]", '"ok"', "not json"])
    async def test_malformed_reply_raises_transport_error(self, socket_path, reply):
        async def answer(reader, writer):
            await read_frame(reader)
            writer.write(encode_frame(reply))
            await writer.drain()
            writer.close()

        server = await asyncio.start_unix_server(answer, path=socket_path)
        try:
            with pytest.raises(TransportError, match="Invalid reply"):
                await send_message(socket_path, "x", timeout=1.0)
        finally:
            server.close()
            await server.wait_closed()
