"""Tool call normalizer — one canonical tool vocabulary for every agent.

Agent CLIs name and shape their tools differently (Amp's `edit_file`,
Gemini's `run_shell_command`, OpenCode's `Websearch`). Everything the
daemon forwards is mapped onto the Claude Code names and parameters.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

log = logging.getLogger(__name__)

MCP_SERVER_NAME = "terry"
_MCP_PREFIX = re.compile(rf"^mcp__{MCP_SERVER_NAME}__(.+)$")


@dataclass(frozen=True)
class ToolCall:
    name: str
    parameters: dict[str, Any]
    result: str | None = None


@dataclass(frozen=True)
class ToolCallMapping:
    renamed_to: str | None = None
    transform_params: Callable[[dict], dict] | None = None
    transform_result: Callable[[str], str] | None = None


def _apply_mapping(tool_call: ToolCall, mapping: ToolCallMapping, agent: str) -> ToolCall:
    parameters = tool_call.parameters
    if mapping.transform_params:
        try:
            parameters = mapping.transform_params(parameters)
        except Exception as e:
            log.error("[%s] Error transforming parameters for %s: %s", agent, tool_call.name, e)
            parameters = tool_call.parameters

    result = tool_call.result
    if result and mapping.transform_result:
        try:
            result = mapping.transform_result(result)
        except Exception as e:
            log.error("[%s] Error transforming result for %s: %s", agent, tool_call.name, e)
            result = tool_call.result

    return replace(
        tool_call,
        name=mapping.renamed_to or tool_call.name,
        parameters=parameters,
        result=result,
    )


# ─── Amp ─────────────────────────────────────────────────────────

def _amp_glob_result(result: str) -> str:
    files = json.loads(result)
    if isinstance(files, list):
        return "\n".join(files)
    return result


AMP_TOOL_CALL_MAPPINGS: dict[str, ToolCallMapping] = {
    "Read": ToolCallMapping(
        transform_result=lambda result: json.loads(result)["content"],
    ),
    "edit_file": ToolCallMapping(
        renamed_to="Edit",
        transform_params=lambda p: {
            "file_path": p["path"],
            "new_string": p["new_str"],
            "old_string": p["old_str"],
        },
    ),
    "create_file": ToolCallMapping(
        renamed_to="Write",
        transform_params=lambda p: {"file_path": p["path"], "content": p["content"]},
    ),
    "todo_write": ToolCallMapping(renamed_to="TodoWrite"),
    "glob": ToolCallMapping(renamed_to="Glob", transform_result=_amp_glob_result),
}


# ─── Gemini ──────────────────────────────────────────────────────

GEMINI_TOOL_CALL_MAPPINGS: dict[str, ToolCallMapping] = {
    "write_file": ToolCallMapping(renamed_to="Write"),
    "run_shell_command": ToolCallMapping(renamed_to="Bash"),
    "write_todos": ToolCallMapping(
        renamed_to="TodoWrite",
        transform_params=lambda p: {
            "todos": [
                {"id": item.get("id"), "content": item["description"], "status": item["status"]}
                for item in p["todos"]
            ],
        },
    ),
    "replace": ToolCallMapping(renamed_to="Edit"),
}


# ─── OpenCode ────────────────────────────────────────────────────

_FILE_BLOCK = re.compile(r"<file>\n([\s\S]*?)\n</file>")
_LINE_NUMBER_PREFIX = re.compile(r"^(\d+\| )")


def _opencode_read_result(result: str) -> str:
    """Unwrap <file> blocks and strip the `00001| ` line number gutter."""
    match = _FILE_BLOCK.search(result)
    if not match:
        return result
    content = match.group(1)
    prefix_len = None
    stripped = []
    for line in content.split("\n"):
        m = _LINE_NUMBER_PREFIX.match(line)
        if not m:
            return content
        if prefix_len is None:
            prefix_len = len(m.group(1))
        if len(m.group(1)) == prefix_len:
            stripped.append(line[prefix_len:])
    return "\n".join(stripped)


OPENCODE_TOOL_CALL_MAPPINGS: dict[str, ToolCallMapping] = {
    "Todowrite": ToolCallMapping(renamed_to="TodoWrite"),
    "Todoread": ToolCallMapping(renamed_to="TodoRead"),
    "Websearch": ToolCallMapping(renamed_to="WebSearch"),
    "Edit": ToolCallMapping(
        transform_params=lambda p: {
            "file_path": p["filePath"],
            "old_string": p["oldString"],
            "new_string": p["newString"],
        },
    ),
    "Read": ToolCallMapping(transform_result=_opencode_read_result),
}


TOOL_CALL_MAPPINGS: dict[str, dict[str, ToolCallMapping]] = {
    "amp": AMP_TOOL_CALL_MAPPINGS,
    "gemini": GEMINI_TOOL_CALL_MAPPINGS,
    "opencode": OPENCODE_TOOL_CALL_MAPPINGS,
}


def normalize_tool_call(agent: str, tool_call: ToolCall) -> ToolCall:
    """Map an agent's tool call onto the canonical names and parameters."""
    m = _MCP_PREFIX.match(tool_call.name)
    if m:
        tool_call = replace(tool_call, name=m.group(1))

    mapping = TOOL_CALL_MAPPINGS.get(agent, {}).get(tool_call.name)
    if mapping is None:
        return tool_call
    return _apply_mapping(tool_call, mapping, agent)


def normalize_message_tool_uses(agent: str, message: dict) -> dict:
    """Normalize every tool_use part of a stream message in place."""
    inner = message.get("message")
    content = inner.get("content") if isinstance(inner, dict) else None
    if not isinstance(content, list):
        return message
    for part in content:
        if not isinstance(part, dict) or part.get("type") != "tool_use":
            continue
        params = part.get("input")
        normalized = normalize_tool_call(agent, ToolCall(
            name=str(part.get("name", "")),
            parameters=params if isinstance(params, dict) else {},
        ))
        part["name"] = normalized.name
        part["input"] = normalized.parameters
    return message
