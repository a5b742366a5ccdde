"""Agent catalog — custom sub-agent definitions bundled with a repository.

Agents are markdown files under <repo>/.claude/agents/ that start with a
`---` fenced frontmatter block (name, description, optional color).
Only those three keys are read, one `key: value` line each, so the
scanner does not need a YAML parser.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

_FIELDS = ("name", "description", "color")


@dataclass(frozen=True)
class AgentProperties:
    name: str
    description: str
    color: str | None = None


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def _parse_frontmatter(text: str) -> dict[str, str]:
    """Extract name/description/color from a leading frontmatter block.

    Returns {} when the text has no frontmatter or the block is never
    closed. The first occurrence of a key wins.
    """
    lines = text.split("\n")
    if not lines or lines[0].rstrip() != "---":
        return {}

    meta: dict[str, str] = {}
    for line in lines[1:]:
        stripped = line.strip()
        if stripped == "---":
            return meta
        if line[:1].isspace() or ":" not in stripped:
            continue
        key, _, value = stripped.partition(":")
        key = key.strip()
        value = value.strip()
        if key in _FIELDS and key not in meta:
            value = _strip_quotes(value).strip()
            if value:
                meta[key] = value
    # No closing fence
    return {}


class AgentCatalog:
    """Name-keyed registry of the agents found in one directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self._agents: dict[str, AgentProperties] = {}

    def load(self) -> None:
        """Rebuild the registry from scratch."""
        agents: dict[str, AgentProperties] = {}
        if not self.directory.is_dir():
            log.info("No agents directory at %s, skipping", self.directory)
            self._agents = agents
            return

        for path in sorted(self.directory.glob("*.md")):
            if not path.is_file():
                continue
            try:
                meta = _parse_frontmatter(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as e:
                log.error("Failed to read agent file %s: %s", path.name, e)
                continue

            name = meta.get("name")
            description = meta.get("description")
            if not name or not description:
                log.warning("Agent file %s missing required fields (name=%s, description=%s)",
                            path.name, bool(name), bool(description))
                continue

            color = meta.get("color")
            agent = AgentProperties(
                name=name,
                description=description,
                color=color.lower() if color else None,
            )
            if name in agents:
                log.info("Agent %r redefined by %s", name, path.name)
            agents[name] = agent
            log.debug("Loaded agent: %s", name)

        self._agents = agents
        log.info("Loaded %d agents from %s", len(agents), self.directory)

    def get(self, name: str) -> AgentProperties | None:
        return self._agents.get(name)

    def all(self) -> dict[str, AgentProperties]:
        return dict(self._agents)

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents
