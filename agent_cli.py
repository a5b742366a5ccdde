"""Agent CLI invocation — command lines and output parsing per agent.

The prompt is always written to a temp file and piped in, so it never has
to survive shell quoting. Claude Code emits stream-json that the daemon
forwards as-is; Gemini's stream-json and OpenCode's json events are converted
to the same message shape.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tool_calls import ToolCall, normalize_tool_call
from transcript import find_transcript

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "Your name is Terry and you are a coding agent. You can use the gh cli to "
    "interact with github. You are running as part of a system that might "
    "automatically commit and push changes to the remote for you. You can use "
    "the git commands to orient yourself."
)

PLAN_MODE_ALLOWED_TOOLS = ("WebSearch", "WebFetch", "Read", "Bash")
PERMISSION_PROMPT_TOOL = "mcp__terry__PermissionPrompt"

_GEMINI_PROMPT_FLAG_WARNING = (
    "The --prompt (-p) flag has been deprecated and will be removed in a future version"
)


def write_prompt_file(prompt: str, prefix: str, prompt_dir: str | None = None) -> Path:
    fd, name = tempfile.mkstemp(prefix=f"{prefix}-prompt-", suffix=".txt", dir=prompt_dir)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(prompt)
    return Path(name)


def claude_command(
    prompt: str,
    model: str,
    session_id: str | None = None,
    mcp_config_path: str | None = None,
    permission_mode: str = "allowAll",
    home: str | Path | None = None,
    prompt_dir: str | None = None,
    enable_mcp_permission_prompt: bool = False,
) -> tuple[str, Path]:
    """Build the `claude -p` pipeline. Returns (command, prompt_file)."""
    prompt_file = write_prompt_file(prompt, "claude", prompt_dir)

    resume: list[str] = []
    if session_id:
        if find_transcript(session_id, home) is not None:
            resume = ["--resume", session_id]
        else:
            log.warning("No transcript for session %s, using --continue", session_id)
            resume = ["--continue"]

    if permission_mode == "plan":
        permissions = ["--permission-mode", "plan", "--allowedTools", *PLAN_MODE_ALLOWED_TOOLS]
    else:
        permissions = ["--dangerously-skip-permissions"]

    args = [
        "claude", "-p",
        "--model", model,
        *resume,
        "--verbose",
        *permissions,
        "--output-format", "stream-json",
    ]
    if mcp_config_path:
        args += ["--mcp-config", mcp_config_path]
    if enable_mcp_permission_prompt:
        args += ["--permission-prompt-tool", PERMISSION_PROMPT_TOOL]
    args += ["--append-system-prompt", SYSTEM_PROMPT]

    command = f"cat {shlex.quote(str(prompt_file))} | {shlex.join(args)}"
    return command, prompt_file


def gemini_command(
    prompt: str,
    model: str,
    session_id: str | None = None,
    prompt_dir: str | None = None,
) -> tuple[str, Path]:
    """Build the `gemini` pipeline. Returns (command, prompt_file)."""
    prompt_file = write_prompt_file(prompt, "gemini", prompt_dir)
    args = [
        "gemini",
        "--model", model,
        # Attachments and images may live outside the repo
        "--include-directories", "/",
        "--yolo",
        "--output-format", "stream-json",
    ]
    if session_id:
        # Gemini only resumes its latest session
        args += ["--resume", "--prompt", " "]
    command = f"cat {shlex.quote(str(prompt_file))} | {shlex.join(args)}"
    return command, prompt_file


_OPENCODE_PROVIDER_PREFIXES = (
    ("opencode/", "terry/"),
    ("opencode-google/", "terry-google/"),
    ("opencode-oai/", "terry-oai/"),
    ("opencode-ant/", "terry-ant/"),
)


def opencode_model(model: str) -> str:
    """Route opencode-* provider prefixes through the terry providers."""
    for prefix, replacement in _OPENCODE_PROVIDER_PREFIXES:
        if model.startswith(prefix):
            return replacement + model[len(prefix):]
    return model


def opencode_command(
    prompt: str,
    model: str,
    session_id: str | None = None,
    prompt_dir: str | None = None,
) -> tuple[str, Path]:
    """Build the `opencode run` pipeline. Returns (command, prompt_file)."""
    prompt_file = write_prompt_file(prompt, "opencode", prompt_dir)
    args = ["opencode", "run", "--model", opencode_model(model), "--format", "json"]
    if session_id:
        args += ["--session", session_id]
    command = f"cat {shlex.quote(str(prompt_file))} | {shlex.join(args)}"
    return command, prompt_file


# ─── Gemini stream-json parsing ──────────────────────────────────

@dataclass
class GeminiParserState:
    accumulated_content: str = ""
    last_message_type: str | None = None


def _assistant(content: Any, session_id: str = "") -> dict:
    return {
        "type": "assistant",
        "message": {"role": "assistant", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id,
    }


def _error_result(error: str, duration_ms: int = 0, session_id: str = "") -> dict:
    return {
        "type": "result",
        "subtype": "error_during_execution",
        "session_id": session_id,
        "error": error,
        "is_error": True,
        "num_turns": 0,
        "duration_ms": duration_ms,
    }


def flush_gemini_state(state: GeminiParserState) -> list[dict]:
    """Emit any accumulated assistant text (call at end of stream)."""
    if state.accumulated_content and state.last_message_type == "message":
        text, state.accumulated_content = state.accumulated_content, ""
        return [_assistant([{"type": "text", "text": text}])]
    return []


def parse_gemini_line(line: str, state: GeminiParserState) -> list[dict]:
    """Convert one line of Gemini stream-json into Claude-shaped messages."""
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return [_assistant(line)]
    if not isinstance(event, dict):
        return [_assistant(line)]

    kind = event.get("type")
    messages: list[dict] = []
    if state.last_message_type and state.last_message_type != kind:
        messages += flush_gemini_state(state)
    state.last_message_type = kind

    if kind == "init":
        messages.append({
            "type": "system",
            "subtype": "init",
            "session_id": event.get("session_id") or "",
            "tools": [],
            "mcp_servers": [],
        })
    elif kind == "message":
        content = event.get("content") or ""
        if event.get("role") == "assistant" and not content.startswith(_GEMINI_PROMPT_FLAG_WARNING):
            if event.get("delta"):
                state.accumulated_content += content
            else:
                messages.append(_assistant([{"type": "text", "text": content}]))
    elif kind == "tool_use":
        messages.append(_assistant([{
            "type": "tool_use",
            "name": event.get("tool_name"),
            "input": event.get("parameters") or {},
            "id": event.get("tool_id"),
        }]))
    elif kind == "tool_result":
        is_error = event.get("status") == "error"
        if is_error:
            err = event.get("error")
            content = f"{err['type']}: {err['message']}" if err else "Tool execution failed"
        else:
            content = event.get("output") or "Tool execution completed"
        messages.append({
            "type": "user",
            "message": {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": event.get("tool_id"),
                    "content": content,
                    "is_error": is_error,
                }],
            },
            "parent_tool_use_id": None,
            "session_id": "",
        })
    elif kind == "error":
        log.warning("Gemini error event (%s): %s", event.get("severity"), event.get("message"))
        if event.get("severity") == "error":
            messages.append(_error_result(event.get("message", "")))
    elif kind == "result":
        stats = event.get("stats") or {}
        duration_ms = stats.get("duration_ms", 0)
        if event.get("status") == "error" and event.get("error"):
            err = event["error"]
            messages.append(_error_result(f"{err['type']}: {err['message']}", duration_ms))
        elif event.get("status") == "success":
            messages.append({
                "type": "result",
                "subtype": "success",
                "session_id": "",
                "is_error": False,
                "num_turns": 1,
                "duration_ms": duration_ms,
                "duration_api_ms": duration_ms,
                "total_cost_usd": 0,
                "result": "Task completed successfully",
            })
    else:
        log.warning("Unknown Gemini message type: %s", kind)
    return messages


# ─── OpenCode json parsing ───────────────────────────────────────

@dataclass
class OpencodeParserState:
    working: bool = False


def _opencode_part(event: dict, part_type: str) -> dict | None:
    part = event.get("part")
    if not isinstance(part, dict) or part.get("type") != part_type:
        log.warning("Invalid OpenCode %s event: missing or wrong part type (%s)",
                    event.get("type"), part.get("type") if isinstance(part, dict) else None)
        return None
    return part


def _opencode_tool_messages(part: dict, session_id: str) -> list[dict]:
    tool = part.get("tool") or ""
    name = tool[:1].upper() + tool[1:]
    tool_state = part.get("state") or {}
    status = tool_state.get("status")
    call_id = part.get("callID")
    if status == "pending":
        return []
    if status not in ("running", "completed", "error"):
        log.warning("Unknown OpenCode tool state: %s", status)
        return []

    params = tool_state.get("input") or {}
    messages = [_assistant([{"type": "tool_use", "name": name, "input": params, "id": call_id}],
                           session_id)]
    if status == "running":
        return messages

    is_error = status == "error"
    if is_error:
        content = tool_state.get("error")
    else:
        content = normalize_tool_call("opencode", ToolCall(
            name=name, parameters=params, result=tool_state.get("output"),
        )).result
    messages.append({
        "type": "user",
        "message": {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": call_id,
                "content": content,
                "is_error": is_error,
            }],
        },
        "parent_tool_use_id": None,
        "session_id": session_id,
    })
    return messages


def parse_opencode_line(line: str, state: OpencodeParserState) -> list[dict]:
    """Convert one line of `opencode run --format json` output into Claude-shaped messages.

    Tool calls are reported once running and again with their result when
    they finish. Text is reported when the part is complete. Only the first
    step of a run produces the system init message.
    """
    try:
        event = json.loads(line)
    except json.JSONDecodeError as e:
        log.error("Failed to parse OpenCode output line %r: %s", line[:200], e)
        return []
    if not isinstance(event, dict):
        return []

    kind = event.get("type")
    session_id = event.get("sessionID") or ""

    if kind == "tool_use":
        part = _opencode_part(event, "tool")
        return _opencode_tool_messages(part, session_id) if part else []

    if kind == "text":
        part = _opencode_part(event, "text")
        if not part or not (part.get("time") or {}).get("end"):
            return []
        return [_assistant(part.get("text", ""), session_id)]

    if kind == "step_start":
        if not _opencode_part(event, "step-start") or state.working:
            return []
        state.working = True
        return [{
            "type": "system",
            "subtype": "init",
            "session_id": session_id,
            "tools": [],
            "mcp_servers": [],
        }]

    if kind == "step_finish":
        part = _opencode_part(event, "step-finish")
        if part:
            log.debug("OpenCode step finished (tokens %s, cost %s)",
                      part.get("tokens"), part.get("cost"))
        return []

    if kind == "error":
        error = event.get("error") or {}
        message = (error.get("data") or {}).get("message") or error.get("message") or "Unknown error"
        return [_error_result(message, session_id=session_id)]

    log.debug("Unknown OpenCode event type, ignoring: %s", kind)
    return []
