"""Host event reporter — forwards agent output to the orchestrator.

Messages are buffered per thread and POSTed in batches to
<url>/api/daemon-event with the run's bearer token (httpx async).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from retry import RetryBackoff, RetryConfig

log = logging.getLogger(__name__)

EVENT_PATH = "/api/daemon-event"


@dataclass
class _ThreadBuffer:
    token: str
    messages: list[dict] = field(default_factory=list)


class EventReporter:
    """Batches stream messages per thread and delivers them to the host."""

    def __init__(
        self,
        url: str,
        skip_reporting: bool = False,
        flush_interval: float = 0.5,
        timeout: float = 30.0,
        retry: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url.rstrip("/")
        self.skip_reporting = skip_reporting
        self.flush_interval = flush_interval
        self.timeout = timeout
        self.retry = retry or RetryConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._buffers: dict[str, _ThreadBuffer] = {}
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def add(self, thread_id: str, token: str, message: dict) -> None:
        buf = self._buffers.get(thread_id)
        if buf is None:
            buf = self._buffers[thread_id] = _ThreadBuffer(token=token)
        buf.token = token or buf.token
        buf.messages.append(message)

    @property
    def pending(self) -> int:
        return sum(len(b.messages) for b in self._buffers.values())

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                log.error("Event flush failed: %s", e, exc_info=True)

    async def flush(self) -> None:
        """Send every buffered batch. Batches that keep failing are dropped."""
        async with self._flush_lock:
            undelivered = list(self._buffers.items())
            self._buffers = {}
            try:
                while undelivered:
                    thread_id, buf = undelivered[0]
                    if buf.messages:
                        await self._deliver(thread_id, buf)
                    undelivered.pop(0)
            finally:
                # Cancelled mid-flush: the in-flight batch and the ones after it
                # go back ahead of anything added meanwhile
                self._requeue(undelivered)

    def _requeue(self, batches: list[tuple[str, _ThreadBuffer]]) -> None:
        for thread_id, buf in batches:
            newer = self._buffers.pop(thread_id, None)
            if newer is not None:
                buf.messages.extend(newer.messages)
                buf.token = newer.token or buf.token
            self._buffers[thread_id] = buf

    async def _deliver(self, thread_id: str, buf: _ThreadBuffer) -> None:
        if self.skip_reporting:
            for message in buf.messages:
                log.info("[%s] %s", thread_id, message.get("type", "message"))
            return

        client = await self._get_client()
        payload = {"threadId": thread_id, "messages": buf.messages}
        headers = {"Authorization": f"Bearer {buf.token}"} if buf.token else {}
        backoff = RetryBackoff(self.retry)
        while True:
            try:
                resp = await client.post(f"{self.url}{EVENT_PATH}", json=payload, headers=headers)
                resp.raise_for_status()
                log.debug("Reported %d messages for thread %s", len(buf.messages), thread_id)
                return
            except httpx.HTTPError as e:
                backoff.increment()
                delay_ms = backoff.retry_in()
                if delay_ms is None:
                    log.error("Dropping %d messages for thread %s after %d attempts: %s",
                              len(buf.messages), thread_id, backoff.retry_attempt, e)
                    return
                log.warning("Event report failed (%s), retrying in %.0fms", e, delay_ms)
                await asyncio.sleep(delay_ms / 1000)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
