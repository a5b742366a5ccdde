"""Session transcript repair.

The agent CLI writes each session as an append-only JSONL transcript under
~/.claude/projects/<slug>/<session_id>.jsonl. When a run is interrupted
mid-tool-call, the transcript ends with tool_use parts that never got a
tool_result, and resuming the session leaves the agent waiting forever.
Repair appends one synthetic, rejected tool_result line per orphaned call,
chained onto the last line's uuid. Existing lines are never rewritten.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)

TOOL_USE_REJECTED = (
    "The user doesn't want to proceed with this tool use. The tool use was "
    "rejected (eg. if it was a file edit, the new_string was NOT written to "
    "the file). STOP what you are doing and wait for the user to tell you "
    "how to proceed."
)

_UNSAFE_SESSION_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def project_slug(cwd: str | Path) -> str:
    return str(cwd).replace("/", "-")


def transcript_path(home: str | Path, cwd: str | Path, session_id: str) -> Path:
    return Path(home) / ".claude" / "projects" / project_slug(cwd) / f"{session_id}.jsonl"


def find_transcript(session_id: str, home: str | Path | None = None) -> Path | None:
    """Search every project directory for <session_id>.jsonl."""
    safe_id = _UNSAFE_SESSION_CHARS.sub("", session_id)
    if not safe_id:
        return None
    projects = Path(home or Path.home()) / ".claude" / "projects"
    if not projects.is_dir():
        return None
    for candidate in sorted(projects.glob(f"*/{safe_id}.jsonl")):
        if candidate.is_file():
            return candidate
    return None


def read_transcript(path: Path) -> list[dict]:
    """Parse a JSONL transcript, skipping blank and unparsable lines."""
    lines = []
    with open(path, encoding="utf-8") as f:
        for raw in f:
            raw = raw.strip()
            if not raw:
                continue
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                log.debug("Skipping unparsable transcript line in %s", path.name)
                continue
            if isinstance(entry, dict):
                lines.append(entry)
    return lines


def _content_parts(entry: dict) -> list[dict]:
    message = entry.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [p for p in content if isinstance(p, dict)]


def find_orphaned_tool_uses(entries: list[dict]) -> tuple[dict[str, dict], str | None]:
    """Return ({tool_use_id: producing line}, last uuid) for unanswered calls.

    The mapping preserves the order in which the tool calls were made.
    """
    producers: dict[str, dict] = {}
    answered: set[str] = set()
    last_uuid = None
    for entry in entries:
        kind = entry.get("type")
        if kind == "assistant":
            for part in _content_parts(entry):
                if part.get("type") == "tool_use" and part.get("id"):
                    producers[part["id"]] = entry
        elif kind == "user":
            for part in _content_parts(entry):
                if part.get("type") == "tool_result" and part.get("tool_use_id"):
                    answered.add(part["tool_use_id"])
        last_uuid = entry.get("uuid", last_uuid)
    orphaned = {tid: line for tid, line in producers.items() if tid not in answered}
    return orphaned, last_uuid


def _rejection_line(source: dict[str, Any], tool_use_id: str,
                    parent_uuid: str | None) -> dict[str, Any]:
    return {
        **source,
        "parentUuid": parent_uuid,
        "uuid": str(uuid.uuid4()),
        "type": "user",
        "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "message": {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "content": TOOL_USE_REJECTED,
                "is_error": True,
                "tool_use_id": tool_use_id,
            }],
        },
        "toolUseResult": f"Error: {TOOL_USE_REJECTED}",
    }


def _ends_with_newline(path: Path) -> bool:
    with open(path, "rb") as f:
        if f.seek(0, 2) == 0:
            return True
        f.seek(-1, 2)
        return f.read(1) == b"\n"


def repair_transcript(path: str | Path) -> int:
    """Append rejected tool_results for orphaned tool calls.

    Returns the number of lines appended; 0 when the transcript is already
    consistent, so running it twice is a no-op.
    """
    path = Path(path)
    orphaned, last_uuid = find_orphaned_tool_uses(read_transcript(path))
    if not orphaned:
        return 0

    log.info("Fixing %d orphaned tool calls in %s: %s",
             len(orphaned), path.name, list(orphaned))
    appended = []
    for tool_use_id, source in orphaned.items():
        line = _rejection_line(source, tool_use_id, last_uuid)
        last_uuid = line["uuid"]
        appended.append(line)

    with open(path, "a", encoding="utf-8") as f:
        if not _ends_with_newline(path):
            f.write("\n")
        for line in appended:
            f.write(json.dumps(line) + "\n")
    log.info("Appended %d lines to %s", len(appended), path)
    return len(appended)


def repair_session(session_id: str, home: str | Path | None = None) -> int:
    """Locate and repair a session transcript. Never raises."""
    try:
        path = find_transcript(session_id, home)
        if path is None:
            log.warning("No transcript found for session %s", session_id)
            return 0
        return repair_transcript(path)
    except Exception as e:
        log.error("Transcript repair failed for session %s: %s", session_id, e)
        return 0
