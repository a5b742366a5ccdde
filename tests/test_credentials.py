"""Tests for credentials.py — CLI credential files and API key selection."""

import json
import subprocess
import time
from unittest.mock import patch

import pytest

from credentials import (
    anthropic_api_key_or_none,
    api_key_credentials_json,
    claude_credentials_json,
    opencode_api_key_or_none,
)


class TestCredentialsJson:
    def test_oauth_shape(self):
        data = json.loads(claude_credentials_json(
            "tok", expires_at_ms=123, scopes=["user:inference"], organization_type="claude_max",
        ))
        assert data == {"claudeAiOauth": {
            "accessToken": "tok",
            "refreshToken": "",
            "expiresAt": 123,
            "scopes": ["user:inference"],
            "subscriptionType": "max",
        }}

    def test_default_expiry_one_year(self):
        now_ms = int(time.time() * 1000)
        oauth = json.loads(claude_credentials_json("tok"))["claudeAiOauth"]
        year_ms = 365 * 24 * 60 * 60 * 1000
        assert now_ms + year_ms - 5000 <= oauth["expiresAt"] <= now_ms + year_ms + 5000
        assert oauth["scopes"] == []

    @pytest.mark.parametrize("org, expected", [
        ("claude_pro", "pro"),
        ("claude_team", "team"),
        ("claude_enterprise", "enterprise"),
        ("something_else", None),
        (None, None),
    ])
    def test_subscription_types(self, org, expected):
        oauth = json.loads(claude_credentials_json("t", organization_type=org))["claudeAiOauth"]
        assert oauth["subscriptionType"] == expected

    def test_api_key(self):
        assert json.loads(api_key_credentials_json("sk-1")) == {"anthropicApiKey": "sk-1"}


class TestAnthropicApiKey:
    def _write(self, home, content):
        d = home / ".claude"
        d.mkdir(parents=True, exist_ok=True)
        (d / ".credentials.json").write_text(content)

    def test_key_from_file(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        self._write(tmp_path, api_key_credentials_json("sk-file"))
        assert anthropic_api_key_or_none(tmp_path) == "sk-file"

    def test_oauth_file_means_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        self._write(tmp_path, claude_credentials_json("tok"))
        assert anthropic_api_key_or_none(tmp_path) == ""

    def test_no_file_falls_back_to_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        assert anthropic_api_key_or_none(tmp_path) == "sk-env"

    def test_no_file_no_env(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert anthropic_api_key_or_none(tmp_path) == ""

    def test_corrupt_file_falls_back(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        self._write(tmp_path, "{corrupt")
        assert anthropic_api_key_or_none(tmp_path) == "sk-env"

    def test_check_failure_falls_back(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        with patch("credentials.exec_sync",
                   side_effect=subprocess.TimeoutExpired("test", 10)):
            assert anthropic_api_key_or_none(tmp_path) == "sk-env"


class TestOpencodeApiKey:
    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENCODE_API_KEY", "oc-key")
        assert opencode_api_key_or_none() == "oc-key"

    def test_unset_is_empty(self, monkeypatch):
        monkeypatch.delenv("OPENCODE_API_KEY", raising=False)
        assert opencode_api_key_or_none() == ""
