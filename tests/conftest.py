"""Shared fixtures for the sandboxd test suite.

All tests use temporary directories and mock objects.
Nothing touches ~/.claude/, ~/.sandboxd/ or a running daemon.
"""

import json
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

# Add project root to path so imports work
_root = Path(__file__).parent.parent
sys.path.insert(0, str(_root))


@pytest.fixture
def socket_dir():
    """Short directory for socket files (AF_UNIX paths are length-limited)."""
    d = tempfile.mkdtemp(prefix="sbd-", dir="/tmp")  # noqa: S108
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def socket_path(socket_dir):
    return str(socket_dir / "d.sock")


@pytest.fixture
def agents_dir(tmp_path):
    d = tmp_path / "workspace" / ".claude" / "agents"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def claude_home(tmp_path):
    """Fake home directory holding ~/.claude/projects/."""
    home = tmp_path / "home"
    (home / ".claude" / "projects").mkdir(parents=True)
    return home


@pytest.fixture
def write_transcript(claude_home):
    """Factory: write a JSONL transcript for a session and return its path."""
    def _write(session_id, entries, project="-repo", trailing_newline=True):
        d = claude_home / ".claude" / "projects" / project
        d.mkdir(parents=True, exist_ok=True)
        path = d / f"{session_id}.jsonl"
        text = "\n".join(e if isinstance(e, str) else json.dumps(e) for e in entries)
        if trailing_newline and entries:
            text += "\n"
        path.write_text(text)
        return path
    return _write


@pytest.fixture
def minimal_toml_data(tmp_path):
    """Minimal valid config data (as parsed dict, not raw TOML)."""
    return {
        "transport": {"socket_path": str(tmp_path / "sandboxd.sock")},
        "daemon": {"workspace": str(tmp_path / "workspace"), "home": str(tmp_path / "home")},
        "host": {"url": "http://host.test", "report_events": True},
        "paths": {
            "state_dir": str(tmp_path / "state"),
            "log_file": str(tmp_path / "state" / "sandboxd.log"),
        },
    }
