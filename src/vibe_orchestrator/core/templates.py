"""Agent templates: markdown system prompts with +++ TOML frontmatter."""

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from vibe_orchestrator.db.models import AgentMode

logger = logging.getLogger(__name__)


class TemplateError(ValueError):
    """Raised when a template is missing or malformed."""


@dataclass
class AgentTemplate:
    name: str
    description: str
    system_prompt: str
    mode: AgentMode = AgentMode.HEADLESS
    permission_mode: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    source: str = "builtin"


BUILTIN_TEMPLATES: dict[str, str] = {
    "planner": """+++
description = "Break a feature into an ordered implementation plan"
mode = "headless"
permission_mode = "plan"
disallowed_tools = ["Edit", "Write"]
+++
You are a planning agent. Read the relevant code, then produce a numbered,
ordered plan of small, independently verifiable steps. Do not modify files.
""",
    "implementer": """+++
description = "Implement a well-scoped change end to end"
mode = "interactive"
permission_mode = "acceptEdits"
+++
You are an implementation agent working in an isolated git worktree. Make the
requested change, keep commits focused, and run the project's tests before
reporting back.
""",
    "reviewer": """+++
description = "Review the current branch for bugs and risky changes"
mode = "headless"
permission_mode = "plan"
allowed_tools = ["Read", "Grep", "Glob", "Bash(git diff:*)", "Bash(git log:*)"]
+++
You are a code reviewer. Inspect the diff against the base branch and report
concrete bugs, missing tests and unclear code, most severe first.
""",
    "tester": """+++
description = "Write and run tests for recent changes"
mode = "headless"
permission_mode = "acceptEdits"
+++
You are a testing agent. Add tests covering the recent changes, run the suite
and summarize failures with their likely cause.
""",
}


def parse_template(name: str, content: str, source: str = "builtin") -> AgentTemplate:
    parts = content.split("+++", 2)
    if len(parts) != 3:
        raise TemplateError(f"Template '{name}' missing +++ frontmatter delimiters")

    try:
        meta = tomllib.loads(parts[1].strip())
    except tomllib.TOMLDecodeError as e:
        raise TemplateError(f"Template '{name}' frontmatter error: {e}") from e

    if "description" not in meta:
        raise TemplateError(f"Template '{name}' frontmatter error: missing description")

    mode = AgentMode.INTERACTIVE if meta.get("mode") == "interactive" else AgentMode.HEADLESS
    return AgentTemplate(
        name=name,
        description=meta["description"],
        system_prompt=parts[2].strip(),
        mode=mode,
        permission_mode=meta.get("permission_mode"),
        allowed_tools=list(meta.get("allowed_tools", [])),
        disallowed_tools=list(meta.get("disallowed_tools", [])),
        source=source,
    )


def load_template(name: str, search_dirs: list[Path]) -> AgentTemplate:
    """Resolve a template by name; the first directory that has it wins."""
    for d in search_dirs:
        path = Path(d) / f"{name}.md"
        if path.is_file():
            return parse_template(name, path.read_text(), source=str(path))

    if name in BUILTIN_TEMPLATES:
        return parse_template(name, BUILTIN_TEMPLATES[name])

    raise TemplateError(f"Template '{name}' not found")


def list_templates(search_dirs: list[Path]) -> list[AgentTemplate]:
    """Every resolvable template, higher-priority directories shadowing later ones."""
    templates: list[AgentTemplate] = []
    seen: set[str] = set()

    for d in search_dirs:
        for path in sorted(Path(d).glob("*.md")):
            if path.stem in seen:
                continue
            try:
                templates.append(parse_template(path.stem, path.read_text(), source=str(path)))
            except TemplateError as e:
                logger.warning("Skipping template %s: %s", path, e)
                continue
            seen.add(path.stem)

    for name, content in BUILTIN_TEMPLATES.items():
        if name not in seen:
            templates.append(parse_template(name, content))
            seen.add(name)

    return templates
