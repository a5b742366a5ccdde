#!/usr/bin/env python3
"""sandboxd — the in-sandbox agent daemon.

Entry point. Wires config → transport → process engine → reporter.
Listens for host commands on the control socket, runs agent CLIs, repairs
interrupted transcripts before resuming, handles Unix signals.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import logging.handlers
import os
import select
import signal
import sys
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from pathlib import Path
from typing import Any

# Add sandboxd directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from agent_cli import (
    GeminiParserState,
    OpencodeParserState,
    claude_command,
    flush_gemini_state,
    gemini_command,
    opencode_command,
    parse_gemini_line,
    parse_opencode_line,
)
from agents import AgentCatalog
from config import Config, ConfigError, load_config
from credentials import anthropic_api_key_or_none, opencode_api_key_or_none
from crypto import decrypt_environment_variables, decrypt_with_fallback
from process import ProcessEngine
from reporter import EventReporter
from retry import RetryConfig
from tool_calls import normalize_message_tool_uses
from transcript import repair_session
from transport import Transport, TransportError, create_transport
from transport.unix_socket import send_message

VERSION = "0.4.0"

log = logging.getLogger("sandboxd")

AGENT_KINDS = ("claudeCode", "gemini", "opencode")
_STDERR_TAIL_CHARS = 4000


# ─── Logging ─────────────────────────────────────────────────────

class JsonFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


# ─── Runs ────────────────────────────────────────────────────────

@dataclass
class AgentRun:
    thread_id: str
    token: str
    agent: str
    session_id: str | None
    prompt_file: Path
    started_at: float = field(default_factory=time.time)
    pid: int | None = None
    stopping: bool = False
    stderr_tail: str = ""
    gemini_state: GeminiParserState = field(default_factory=GeminiParserState)
    opencode_state: OpencodeParserState = field(default_factory=OpencodeParserState)

    def summary(self) -> dict:
        return {
            "threadId": self.thread_id,
            "pid": self.pid,
            "agent": self.agent,
            "sessionId": self.session_id,
            "startedAt": self.started_at,
        }


# ─── Daemon ──────────────────────────────────────────────────────

class SandboxDaemon:
    def __init__(
        self,
        config: Config,
        transport: Transport | None = None,
        engine: ProcessEngine | None = None,
        reporter: EventReporter | None = None,
    ):
        self.config = config
        self.start_time = time.time()
        self.transport = transport or create_transport(config)
        self.engine = engine or ProcessEngine(
            poll_interval=config.poll_interval, cwd=str(config.workspace),
        )
        self.catalog = AgentCatalog(config.agents_dir)
        self.reporter = reporter or EventReporter(
            url=config.host_url,
            skip_reporting=not config.report_events,
            flush_interval=config.flush_interval,
            timeout=config.host_timeout,
            retry=RetryConfig(**config.retry_config),
        )
        self.runs: dict[str, AgentRun] = {}
        self._stop_event: asyncio.Event | None = None
        self._status_api: Any = None

    def _setup_logging(self) -> None:
        """Configure logging to file + stderr."""
        log_file = self.config.log_file
        log_file.parent.mkdir(parents=True, exist_ok=True)

        if self.config.output_format == "json":
            fmt: logging.Formatter = JsonFormatter()
        else:
            fmt = logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=self.config.log_max_bytes,
            backupCount=self.config.log_backup_count, encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(logging.DEBUG)

        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        sh.setLevel(logging.INFO)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        root.addHandler(fh)
        root.addHandler(sh)

        # Silence noisy third-party loggers
        for name in ("httpx", "httpcore", "aiohttp.access"):
            logging.getLogger(name).setLevel(logging.WARNING)

    # ─── Control messages ────────────────────────────────────────

    async def handle_message(self, raw: str) -> dict | None:
        """Dispatch one control message. Raising rejects the message."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON message: {e}") from e
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            raise ValueError("Message must be an object with a 'type' field")

        kind = msg["type"]
        log.info("Received %s message", kind)
        if kind == "ping":
            return {"pong": True, "version": VERSION}
        if kind == "claude":
            return await self.start_run(msg)
        if kind == "stop":
            thread_id = msg.get("threadId") or "default"
            return {"stopped": await self.stop_run(thread_id)}
        raise ValueError(f"Unknown message type: {kind!r}")

    async def _build_env(self, msg: dict, agent: str) -> dict[str, str]:
        """Plain `env` passes through; `encryptedEnv` is decrypted as one batch."""
        env = {str(k): str(v) for k, v in (msg.get("env") or {}).items()}
        encrypted = {str(k): str(v) for k, v in (msg.get("encryptedEnv") or {}).items()}
        if encrypted:
            # One scrypt derivation per value, run in a worker thread
            env.update(await asyncio.to_thread(
                decrypt_environment_variables, encrypted, self.config.encryption_key,
            ))
        if agent == "claudeCode" and "ANTHROPIC_API_KEY" not in env:
            env["ANTHROPIC_API_KEY"] = anthropic_api_key_or_none(self.config.home_dir)
        elif agent == "opencode" and "OPENCODE_API_KEY" not in env:
            env["OPENCODE_API_KEY"] = opencode_api_key_or_none()
        return env

    def _session_is_running(self, session_id: str) -> bool:
        return any(r.session_id == session_id and r.pid is not None for r in self.runs.values())

    async def start_run(self, msg: dict) -> dict:
        cfg = self.config
        prompt = msg.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("'prompt' is required")
        agent = msg.get("agent") or "claudeCode"
        if agent not in AGENT_KINDS:
            raise ValueError(f"Unsupported agent: {agent!r}")
        thread_id = msg.get("threadId") or "default"
        session_id = msg.get("sessionId") or None
        model = msg.get("model") or cfg.default_model

        if thread_id in self.runs:
            log.info("Thread %s already has a run, stopping it first", thread_id)
            await self.stop_run(thread_id)

        env = await self._build_env(msg, agent)
        token = await asyncio.to_thread(
            decrypt_with_fallback, msg.get("token") or "", cfg.encryption_key,
        )

        if agent == "claudeCode":
            if session_id:
                # Only touch transcripts nobody is writing to
                if self._session_is_running(session_id):
                    log.warning("Session %s is still running, skipping transcript repair",
                                session_id)
                else:
                    repair_session(session_id, cfg.home_dir)
            command, prompt_file = claude_command(
                prompt=prompt,
                model=model,
                session_id=session_id,
                mcp_config_path=cfg.mcp_config_path,
                permission_mode=msg.get("permissionMode") or cfg.default_permission_mode,
                home=cfg.home_dir,
                prompt_dir=cfg.prompt_dir,
                enable_mcp_permission_prompt=cfg.enable_mcp_permission_prompt,
            )
        elif agent == "opencode":
            command, prompt_file = opencode_command(
                prompt=prompt, model=model, session_id=session_id, prompt_dir=cfg.prompt_dir,
            )
        else:
            command, prompt_file = gemini_command(
                prompt=prompt, model=model, session_id=session_id, prompt_dir=cfg.prompt_dir,
            )

        run = AgentRun(
            thread_id=thread_id,
            token=token,
            agent=agent,
            session_id=session_id,
            prompt_file=prompt_file,
        )
        self.runs[thread_id] = run
        pid = await self.engine.spawn_line_buffered(
            command,
            on_stdout_line=partial(self._on_stdout_line, run),
            on_stderr=partial(self._on_stderr, run),
            on_error=partial(self._on_spawn_error, run),
            on_close=partial(self._on_close, run),
            env=env,
        )
        if pid is None:
            return {"started": False, "threadId": thread_id}
        run.pid = pid
        log.info("Started %s run for thread %s (pid %d, model %s)", agent, thread_id, pid, model)
        return {"started": True, "threadId": thread_id, "pid": pid}

    async def stop_run(self, thread_id: str) -> bool:
        run = self.runs.get(thread_id)
        if run is None or run.pid is None:
            return False
        run.stopping = True
        pid = run.pid
        self.engine.kill(pid)
        if not await self.engine.wait_closed(pid, timeout=self.config.stop_timeout):
            log.warning("pid %d ignored SIGTERM, killing", pid)
            self.engine.kill(pid, signal.SIGKILL)
            await self.engine.wait_closed(pid, timeout=self.config.stop_timeout)
        return True

    # ─── Process callbacks ───────────────────────────────────────

    def _report(self, run: AgentRun, message: dict) -> None:
        self.reporter.add(run.thread_id, run.token, message)

    def _on_stdout_line(self, run: AgentRun, line: str) -> None:
        if not line.strip():
            return
        if run.agent == "gemini":
            messages = parse_gemini_line(line, run.gemini_state)
        elif run.agent == "opencode":
            messages = parse_opencode_line(line, run.opencode_state)
        else:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                log.warning("Non-JSON output from %s: %s", run.agent, line[:200])
                return
            messages = [parsed] if isinstance(parsed, dict) else []

        for message in messages:
            normalize_message_tool_uses(run.agent, message)
            if message.get("type") == "system" and message.get("session_id"):
                run.session_id = message["session_id"]
            self._report(run, message)

    def _on_stderr(self, run: AgentRun, chunk: str) -> None:
        log.debug("[%s stderr] %s", run.thread_id, chunk.rstrip())
        run.stderr_tail = (run.stderr_tail + chunk)[-_STDERR_TAIL_CHARS:]

    def _on_spawn_error(self, run: AgentRun, error: Exception) -> None:
        self._report(run, {"type": "custom-error", "error": f"Failed to start agent: {error}"})
        self._finish_run(run)

    def _on_close(self, run: AgentRun, exit_code: int | None) -> None:
        if run.agent == "gemini":
            for message in flush_gemini_state(run.gemini_state):
                self._report(run, message)
        if exit_code == 0 or run.stopping:
            self._report(run, {"type": "custom-stop", "exitCode": exit_code})
        else:
            error = run.stderr_tail.strip() or f"Agent exited with code {exit_code}"
            self._report(run, {"type": "custom-error", "exitCode": exit_code, "error": error})
        log.info("Run for thread %s finished (exit code %s)", run.thread_id, exit_code)
        self._finish_run(run)

    def _finish_run(self, run: AgentRun) -> None:
        try:
            run.prompt_file.unlink(missing_ok=True)
        except OSError as e:
            log.warning("Could not remove prompt file %s: %s", run.prompt_file, e)
        if self.runs.get(run.thread_id) is run:
            del self.runs[run.thread_id]

    # ─── Status ──────────────────────────────────────────────────

    def build_status(self) -> dict:
        return {
            "status": "ok",
            "pid": os.getpid(),
            "version": VERSION,
            "uptime_s": round(time.time() - self.start_time, 1),
            "runs": [r.summary() for r in self.runs.values()],
            "agents": len(self.catalog),
        }

    def build_agents(self) -> dict:
        return {
            name: {"name": a.name, "description": a.description, "color": a.color}
            for name, a in self.catalog.all().items()
        }

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register Unix signal handlers."""
        def handle_sigusr1():
            log.info("SIGUSR1: reloading agent catalog")
            self.catalog.load()

        def handle_sigusr2():
            log.info("SIGUSR2: writing status")
            status_path = self.config.state_dir / "status.json"
            status_path.parent.mkdir(parents=True, exist_ok=True)
            status_path.write_text(json.dumps(self.build_status(), indent=2))

        def handle_sigterm():
            log.info("Shutdown signal received")
            self.request_stop()

        loop.add_signal_handler(signal.SIGUSR1, handle_sigusr1)
        loop.add_signal_handler(signal.SIGUSR2, handle_sigusr2)
        loop.add_signal_handler(signal.SIGTERM, handle_sigterm)
        loop.add_signal_handler(signal.SIGINT, handle_sigterm)

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Main entry point. Starts all components and serves until stopped."""
        cfg = self.config
        self._setup_logging()
        log.info("Starting sandboxd v%s in %s", VERSION, cfg.workspace)
        self._stop_event = asyncio.Event()

        try:
            self.catalog.load()
            await self.transport.listen(self.handle_message)
            await self.reporter.start()
            self._setup_signals(asyncio.get_running_loop())

            if cfg.http_enabled:
                from status_api import StatusApi
                self._status_api = StatusApi(
                    host=cfg.http_host,
                    port=cfg.http_port,
                    auth_token=cfg.http_auth_token,
                    get_status=self.build_status,
                    get_agents=self.build_agents,
                )
                await self._status_api.start()

            log.info("sandboxd running (PID %d)", os.getpid())
            await self._stop_event.wait()
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            await self.shutdown()
            log.info("sandboxd stopped")

    async def shutdown(self) -> None:
        """Tear everything down; each step runs even if an earlier one failed."""
        steps = [
            ("transport", self.transport.teardown),
            ("processes", self.engine.shutdown),
            ("reporter", self.reporter.close),
        ]
        if self._status_api is not None:
            steps.append(("status api", self._status_api.stop))
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                log.error("Shutdown of %s failed: %s", name, e)


# ─── CLI Entry Point ─────────────────────────────────────────────

def _read_stdin(timeout: float) -> str:
    ready, _, _ = select.select([sys.stdin], [], [], timeout)
    if not ready:
        raise TimeoutError("Timeout reading stdin")
    return sys.stdin.read()


def _write_message(socket_path: str, timeout: float) -> int:
    """`--write`: send stdin as one message to a running daemon."""
    started = time.monotonic()
    try:
        data = _read_stdin(timeout)
        asyncio.run(send_message(socket_path, data, timeout=timeout))
    except (TimeoutError, TransportError) as e:
        print(f"Failed to write message to unix socket: {e}", file=sys.stderr)
        return 1
    print(f"Message written to unix socket (took {(time.monotonic() - started) * 1000:.0f}ms)")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="sandboxd: runs coding agent CLIs on behalf of the host",
    )
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("SANDBOXD_CONFIG"),
        help="Path to config file (default: $SANDBOXD_CONFIG or built-in defaults)",
    )
    parser.add_argument("-v", "--version", action="store_true", help="Show version")
    parser.add_argument("-u", "--url", help="Host URL that receives daemon events")
    parser.add_argument("--output-format", choices=["text", "json"], help="Log output format")
    parser.add_argument("--mcp-config-path", help="MCP config passed to the agent CLI")
    parser.add_argument("--skip-reporting-daemon-events", action="store_true",
                        help="Log agent output instead of reporting it to the host")
    parser.add_argument("--socket", help="Control socket path")
    parser.add_argument("-w", "--write", action="store_true",
                        help="Write stdin as one message to the daemon socket")
    parser.add_argument("-t", "--timeout", type=int, help="Write timeout in milliseconds")
    args = parser.parse_args(argv)

    if args.version:
        print(f"sandboxd v{VERSION}")
        return 0

    # Build overrides from CLI args
    overrides: dict[str, Any] = {}
    if args.url:
        overrides["host.url"] = args.url
    if args.output_format:
        overrides["daemon.output_format"] = args.output_format
    if args.mcp_config_path:
        overrides["agent.mcp_config_path"] = args.mcp_config_path
    if args.skip_reporting_daemon_events:
        overrides["host.report_events"] = False
    if args.socket:
        overrides["transport.socket_path"] = args.socket

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 1

    if args.write:
        timeout = args.timeout / 1000 if args.timeout else config.write_timeout
        return _write_message(config.socket_path, timeout)

    daemon = SandboxDaemon(config)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
