"""Tests for transcript.py — orphaned tool call repair."""

import json

import pytest

from transcript import (
    TOOL_USE_REJECTED,
    find_orphaned_tool_uses,
    find_transcript,
    project_slug,
    read_transcript,
    repair_session,
    repair_transcript,
    transcript_path,
)


def assistant_tool_use(uuid, *tool_ids, parent=None):
    """Assistant line calling one tool per id."""
    return {
        "type": "assistant",
        "uuid": uuid,
        "parentUuid": parent,
        "sessionId": "s1",
        "cwd": "/repo",
        "message": {
            "role": "assistant",
            "content": [
                {"type": "tool_use", "id": tid, "name": "Bash", "input": {"command": "ls"}}
                for tid in tool_ids
            ],
        },
    }


def user_tool_result(uuid, tool_id, parent=None):
    return {
        "type": "user",
        "uuid": uuid,
        "parentUuid": parent,
        "sessionId": "s1",
        "message": {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": "ok"}],
        },
    }


def _lines(path):
    return [json.loads(x) for x in path.read_text().splitlines() if x.strip()]


# ─── Paths ────────────────────────────────────────────────────────


class TestPaths:
    def test_project_slug(self):
        assert project_slug("/home/user/repo") == "-home-user-repo"

    def test_transcript_path(self, tmp_path):
        p = transcript_path(tmp_path, "/repo", "abc")
        assert p == tmp_path / ".claude" / "projects" / "-repo" / "abc.jsonl"

    def test_find_transcript_any_project(self, write_transcript, claude_home):
        path = write_transcript("sess-1", [{"type": "user"}], project="-other-proj")
        assert find_transcript("sess-1", claude_home) == path

    def test_find_transcript_missing(self, claude_home):
        assert find_transcript("nope", claude_home) is None

    def test_find_transcript_sanitises_id(self, write_transcript, claude_home):
        write_transcript("abc", [{"type": "user"}])
        assert find_transcript("a/b/c", claude_home) is not None
        assert find_transcript("*", claude_home) is None

    def test_find_transcript_no_projects_dir(self, tmp_path):
        assert find_transcript("x", tmp_path) is None


# ─── Parsing ──────────────────────────────────────────────────────


class TestReadTranscript:
    def test_skips_blank_and_bad_lines(self, write_transcript):
        path = write_transcript("s", [
            {"type": "user", "uuid": "u1"},
            "",
            "{not json",
            "[1, 2]",
            {"type": "assistant", "uuid": "a1"},
        ])
        entries = read_transcript(path)
        assert [e["uuid"] for e in entries] == ["u1", "a1"]


class TestFindOrphans:
    def test_answered_calls_not_orphaned(self):
        entries = [assistant_tool_use("a1", "t1"), user_tool_result("u1", "t1", parent="a1")]
        orphaned, last = find_orphaned_tool_uses(entries)
        assert orphaned == {}
        assert last == "u1"

    def test_orphans_in_call_order(self):
        entries = [
            assistant_tool_use("a1", "t1", "t2"),
            user_tool_result("u1", "t1", parent="a1"),
            assistant_tool_use("a2", "t3", parent="u1"),
        ]
        orphaned, last = find_orphaned_tool_uses(entries)
        assert list(orphaned) == ["t2", "t3"]
        assert orphaned["t3"]["uuid"] == "a2"
        assert last == "a2"

    def test_non_list_content_ignored(self):
        entries = [{"type": "assistant", "uuid": "a1", "message": {"content": "text"}}]
        orphaned, last = find_orphaned_tool_uses(entries)
        assert orphaned == {}
        assert last == "a1"


# ─── Repair ───────────────────────────────────────────────────────


class TestRepairTranscript:
    def test_consistent_transcript_untouched(self, write_transcript):
        path = write_transcript("s", [
            assistant_tool_use("a1", "t1"),
            user_tool_result("u1", "t1", parent="a1"),
        ])
        before = path.read_bytes()
        assert repair_transcript(path) == 0
        assert path.read_bytes() == before

    def test_appends_rejection_per_orphan(self, write_transcript):
        path = write_transcript("s", [assistant_tool_use("a1", "t1", "t2")])
        before = path.read_text()

        assert repair_transcript(path) == 2

        text = path.read_text()
        assert text.startswith(before)
        lines = _lines(path)
        assert len(lines) == 3
        first, second = lines[1], lines[2]
        assert first["type"] == "user"
        assert first["parentUuid"] == "a1"
        assert second["parentUuid"] == first["uuid"]
        assert first["uuid"] != second["uuid"]
        for line, tid in ((first, "t1"), (second, "t2")):
            part = line["message"]["content"][0]
            assert part == {
                "type": "tool_result",
                "content": TOOL_USE_REJECTED,
                "is_error": True,
                "tool_use_id": tid,
            }
            assert line["message"]["role"] == "user"
            assert line["toolUseResult"] == f"Error: {TOOL_USE_REJECTED}"
            assert line["timestamp"].endswith("Z")
            # Session metadata carried over from the producing line
            assert line["sessionId"] == "s1"
            assert line["cwd"] == "/repo"

    def test_repair_is_idempotent(self, write_transcript):
        path = write_transcript("s", [assistant_tool_use("a1", "t1")])
        assert repair_transcript(path) == 1
        after_first = path.read_text()
        assert repair_transcript(path) == 0
        assert path.read_text() == after_first

    def test_missing_trailing_newline(self, write_transcript):
        path = write_transcript("s", [assistant_tool_use("a1", "t1")], trailing_newline=False)
        assert repair_transcript(path) == 1
        lines = _lines(path)
        assert len(lines) == 2
        assert lines[0]["uuid"] == "a1"

    def test_chains_onto_last_line_not_producer(self, write_transcript):
        path = write_transcript("s", [
            assistant_tool_use("a1", "t1"),
            {"type": "system", "uuid": "sys1", "parentUuid": "a1"},
        ])
        repair_transcript(path)
        assert _lines(path)[-1]["parentUuid"] == "sys1"

    def test_empty_file(self, write_transcript):
        path = write_transcript("s", [])
        assert repair_transcript(path) == 0
        assert path.read_text() == ""


class TestRepairSession:
    def test_repairs_found_session(self, write_transcript, claude_home):
        path = write_transcript("sess", [assistant_tool_use("a1", "t1")])
        assert repair_session("sess", claude_home) == 1
        assert len(_lines(path)) == 2

    def test_missing_session_returns_zero(self, claude_home):
        assert repair_session("missing", claude_home) == 0

    def test_never_raises(self, write_transcript, claude_home, monkeypatch):
        write_transcript("sess", [assistant_tool_use("a1", "t1")])

        def boom(path):
            raise PermissionError("read-only")

        monkeypatch.setattr("transcript.repair_transcript", boom)
        assert repair_session("sess", claude_home) == 0

    @pytest.mark.parametrize("session_id", ["", "///"])
    def test_unusable_ids(self, session_id, claude_home):
        assert repair_session(session_id, claude_home) == 0
