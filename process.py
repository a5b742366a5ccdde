"""Process engine — spawn shell commands, stream output, report one close.

A process can be seen to terminate by three detectors: the wait on the
child, end-of-file on its output pipes, and a periodic liveness poll. They
all feed one state machine (RUNNING -> CLOSING -> CLOSED); on_close fires
on the single transition into CLOSED, after the output readers drained.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import logging
import os
import signal
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
# How long to wait for pipes to drain once the process is known to be gone.
# Grandchildren may hold the pipes open indefinitely.
DRAIN_TIMEOUT = 5.0
_READ_CHUNK = 64 * 1024

OnText = Callable[[str], None]
OnError = Callable[[Exception], None]
OnClose = Callable[[int | None], None]


class ProcessState(enum.Enum):
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


def _noop(*_args) -> None:
    pass


@dataclass
class ProcessHandle:
    pid: int
    command: str
    proc: asyncio.subprocess.Process
    on_close: OnClose
    state: ProcessState = ProcessState.RUNNING
    exit_code: int | None = None
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    readers: list[asyncio.Task] = field(default_factory=list)
    watchers: list[asyncio.Task] = field(default_factory=list)


class _LineSplitter:
    """Reassembles complete lines from arbitrarily split byte chunks."""

    def __init__(self, on_line: OnText):
        self._on_line = on_line
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> None:
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            _invoke(self._on_line, line.removesuffix("\r"))

    def close(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            tail, self._buffer = self._buffer, ""
            _invoke(self._on_line, tail.removesuffix("\r"))


class _ChunkDecoder:
    """Passes decoded chunks through without line reassembly."""

    def __init__(self, on_text: OnText):
        self._on_text = on_text
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk)
        if text:
            _invoke(self._on_text, text)

    def close(self) -> None:
        text = self._decoder.decode(b"", final=True)
        if text:
            _invoke(self._on_text, text)


def _invoke(callback: Callable, *args) -> None:
    """Call a user callback; its failures never break the engine."""
    try:
        callback(*args)
    except Exception as e:
        log.error("Process callback %s failed: %s", getattr(callback, "__name__", callback), e,
                  exc_info=True)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessEngine:
    """Spawns and supervises subprocesses for the daemon."""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 shell: str | None = None, cwd: str | None = None):
        self.poll_interval = poll_interval
        self.shell = shell
        self.cwd = cwd
        self._handles: dict[int, ProcessHandle] = {}

    @property
    def running_pids(self) -> list[int]:
        return [pid for pid, h in self._handles.items() if h.state is not ProcessState.CLOSED]

    def get(self, pid: int) -> ProcessHandle | None:
        return self._handles.get(pid)

    # ─── Spawning ────────────────────────────────────────────────

    async def spawn_line_buffered(
        self,
        command: str,
        on_stdout_line: OnText = _noop,
        on_stderr: OnText = _noop,
        on_error: OnError = _noop,
        on_close: OnClose = _noop,
        env: dict[str, str] | None = None,
    ) -> int | None:
        """Spawn `command`; stdout is delivered one complete line at a time."""
        return await self._spawn(
            command, _LineSplitter(on_stdout_line), _ChunkDecoder(on_stderr),
            on_error, on_close, env,
        )

    async def spawn_raw(
        self,
        command: str,
        on_stdout: OnText = _noop,
        on_stderr: OnText = _noop,
        on_error: OnError = _noop,
        on_close: OnClose = _noop,
        env: dict[str, str] | None = None,
    ) -> int | None:
        """Spawn `command`; stdout chunks are delivered as they arrive."""
        return await self._spawn(
            command, _ChunkDecoder(on_stdout), _ChunkDecoder(on_stderr),
            on_error, on_close, env,
        )

    async def _spawn(self, command, stdout_sink, stderr_sink,
                     on_error: OnError, on_close: OnClose,
                     env: dict[str, str] | None) -> int | None:
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **env} if env else None,
                cwd=self.cwd,
                executable=self.shell,
                start_new_session=True,
            )
        except OSError as e:
            log.error("Failed to spawn %r: %s", command[:200], e)
            _invoke(on_error, e)
            return None

        handle = ProcessHandle(pid=proc.pid, command=command, proc=proc, on_close=on_close)
        self._handles[proc.pid] = handle
        handle.readers = [
            asyncio.create_task(self._pump(proc.stdout, stdout_sink)),
            asyncio.create_task(self._pump(proc.stderr, stderr_sink)),
        ]
        handle.watchers = [
            asyncio.create_task(self._watch_exit(handle)),
            asyncio.create_task(self._watch_streams(handle)),
            asyncio.create_task(self._watch_poll(handle)),
        ]
        log.info("Spawned pid %d: %s", proc.pid, command[:200])
        return proc.pid

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, sink) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            sink.feed(chunk)
        sink.close()

    # ─── Termination detectors ───────────────────────────────────

    async def _watch_exit(self, handle: ProcessHandle) -> None:
        code = await handle.proc.wait()
        self._mark_closing(handle, code)
        await self._finish(handle)

    async def _watch_streams(self, handle: ProcessHandle) -> None:
        await asyncio.gather(*handle.readers, return_exceptions=True)
        code = await handle.proc.wait()
        self._mark_closing(handle, code)
        await self._finish(handle)

    async def _watch_poll(self, handle: ProcessHandle) -> None:
        while handle.state is ProcessState.RUNNING:
            await asyncio.sleep(self.poll_interval)
            if handle.proc.returncode is None and _pid_alive(handle.pid):
                continue
            log.debug("Liveness poll: pid %d is gone", handle.pid)
            self._mark_closing(handle, handle.proc.returncode)
        await self._finish(handle)

    def _mark_closing(self, handle: ProcessHandle, code: int | None) -> None:
        if handle.state is ProcessState.RUNNING:
            handle.state = ProcessState.CLOSING
        if handle.exit_code is None and code is not None:
            handle.exit_code = code

    async def _finish(self, handle: ProcessHandle) -> None:
        """Drain output, then transition to CLOSED exactly once."""
        if handle.state is ProcessState.CLOSED:
            return
        _, pending = await asyncio.wait(handle.readers, timeout=DRAIN_TIMEOUT)
        if pending:
            log.warning("pid %d: output did not drain within %.0fs", handle.pid, DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
        if handle.state is ProcessState.CLOSED:
            return
        handle.state = ProcessState.CLOSED
        if handle.exit_code is None:
            handle.exit_code = handle.proc.returncode
        log.info("pid %d closed with exit code %s", handle.pid, handle.exit_code)
        current = asyncio.current_task()
        for task in handle.watchers:
            if task is not current:
                task.cancel()
        handle.closed.set()
        _invoke(handle.on_close, handle.exit_code)
        self._handles.pop(handle.pid, None)

    # ─── Control ─────────────────────────────────────────────────

    def kill(self, pid: int, sig: int = signal.SIGTERM) -> bool:
        """Signal the process group of a supervised process."""
        handle = self._handles.get(pid)
        if handle is None or handle.state is ProcessState.CLOSED:
            return False
        try:
            os.killpg(pid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            with contextlib.suppress(ProcessLookupError):
                handle.proc.send_signal(sig)
        log.info("Sent signal %d to pid %d", sig, pid)
        return True

    async def wait_closed(self, pid: int, timeout: float | None = None) -> bool:
        handle = self._handles.get(pid)
        if handle is None:
            return True
        try:
            await asyncio.wait_for(handle.closed.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def shutdown(self, grace: float = 5.0) -> None:
        """Terminate every running process, escalating to SIGKILL."""
        pids = self.running_pids
        for pid in pids:
            self.kill(pid, signal.SIGTERM)
        for pid in pids:
            if not await self.wait_closed(pid, timeout=grace):
                self.kill(pid, signal.SIGKILL)
                await self.wait_closed(pid, timeout=grace)


def exec_sync(command: str, timeout: float = 10.0) -> str:
    """Run a short diagnostic command synchronously and return its stdout.

    Blocks the event loop; only for brief bounded commands. Raises
    subprocess.CalledProcessError on a non-zero exit.
    """
    result = subprocess.run(  # noqa: S602
        command, shell=True, capture_output=True, text=True,
        timeout=timeout, check=True,
    )
    return result.stdout
