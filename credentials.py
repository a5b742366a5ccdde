"""Agent provider credentials as consumed by the agent CLIs.

The Claude CLI reads ~/.claude/.credentials.json, which holds either OAuth tokens
({"claudeAiOauth": {...}}) or a plain API key ({"anthropicApiKey": ...}).
OpenCode takes its key from the environment.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from pathlib import Path

from process import exec_sync

log = logging.getLogger(__name__)

_DEFAULT_TOKEN_LIFETIME_MS = 365 * 24 * 60 * 60 * 1000

_SUBSCRIPTION_TYPES = {
    "claude_max": "max",
    "claude_pro": "pro",
    "claude_enterprise": "enterprise",
    "claude_team": "team",
}


def claude_credentials_json(
    access_token: str,
    expires_at_ms: int | None = None,
    scopes: list[str] | None = None,
    organization_type: str | None = None,
) -> str:
    """OAuth credentials file contents.

    The refresh token is left empty so the CLI never refreshes on its own.
    Tokens without an expiry are given one year.
    """
    if expires_at_ms is None:
        expires_at_ms = int(time.time() * 1000) + _DEFAULT_TOKEN_LIFETIME_MS
    return json.dumps({
        "claudeAiOauth": {
            "accessToken": access_token,
            "refreshToken": "",
            "expiresAt": expires_at_ms,
            "scopes": scopes or [],
            "subscriptionType": _SUBSCRIPTION_TYPES.get(organization_type or ""),
        },
    })


def api_key_credentials_json(api_key: str) -> str:
    return json.dumps({"anthropicApiKey": api_key})


def anthropic_api_key_or_none(home: str | Path | None = None) -> str:
    """Value for ANTHROPIC_API_KEY in the agent's environment.

    An API key in the credentials file wins. OAuth credentials mean the
    variable must stay empty. Without a credentials file the daemon's own
    ANTHROPIC_API_KEY is passed through.
    """
    fallback = os.environ.get("ANTHROPIC_API_KEY", "")
    home_dir = str(home) if home else "$HOME"
    try:
        status = exec_sync(
            f'test -f "{home_dir}/.claude/.credentials.json" && echo EXISTS || echo NOT_EXISTS'
        ).strip()
    except (subprocess.SubprocessError, OSError) as e:
        log.error("Could not check for credentials file: %s", e)
        return fallback
    if status != "EXISTS":
        return fallback

    path = Path(home or Path.home()) / ".claude" / ".credentials.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        log.error("Error parsing credentials: %s", e)
        return fallback
    if isinstance(data, dict) and data.get("anthropicApiKey"):
        log.info("Using anthropicApiKey from credentials file")
        return data["anthropicApiKey"]
    log.info("OAuth credentials present, not setting ANTHROPIC_API_KEY")
    return ""


def opencode_api_key_or_none() -> str:
    """Value for OPENCODE_API_KEY, passed through from the sandbox environment."""
    return os.environ.get("OPENCODE_API_KEY", "")
