"""
YAML frontmatter read/write for work item files.

A work item file looks like:

    ---
    id: STAGE-001-001-001
    status: Design
    ---
    Free-form markdown body.

Only the block between the first two `---` fences is parsed; the body is
carried through untouched on write.
"""

import datetime
from dataclasses import dataclass, field
from pathlib import Path

import yaml

FENCE = "---"


class MetadataError(Exception):
    """A work item file is missing, unreadable or has invalid frontmatter."""
    pass


@dataclass
class Frontmatter:
    """Parsed frontmatter plus the markdown body that follows it."""
    data: dict = field(default_factory=dict)
    content: str = ""


def _normalize(value):
    # yaml turns unquoted ISO dates into date objects; keep them as strings
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    return value


def parse_frontmatter(text: str, source: str = "<string>") -> Frontmatter:
    """Split text into frontmatter data and body.

    Raises:
        MetadataError: If there is no frontmatter block or the YAML is invalid.
    """
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].strip() != FENCE:
        raise MetadataError(f"No frontmatter found in {source}")

    end = None
    for i in range(1, len(lines)):
        if lines[i].strip() == FENCE:
            end = i
            break
    if end is None:
        raise MetadataError(f"Unterminated frontmatter in {source}")

    raw = "".join(lines[1:end])
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise MetadataError(f"Invalid YAML frontmatter in {source}: {e}") from None

    if data is None:
        raise MetadataError(f"No frontmatter found in {source}")
    if not isinstance(data, dict):
        raise MetadataError(f"Frontmatter in {source} must be a mapping")

    return Frontmatter(data=_normalize(data), content="".join(lines[end + 1:]))


def dump_frontmatter(data: dict, content: str = "") -> str:
    """Render frontmatter data and body back to file text."""
    rendered = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return f"{FENCE}\n{rendered}{FENCE}\n{content}"


def read_frontmatter(path: Path) -> Frontmatter:
    """Read and parse a work item file."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise MetadataError(f"Cannot read {path}: {e}") from None
    return parse_frontmatter(text, str(path))


def write_frontmatter(path: Path, data: dict, content: str = "") -> None:
    """Write frontmatter data and body to a work item file."""
    Path(path).write_text(dump_frontmatter(data, content), encoding="utf-8")


def update_frontmatter(path: Path, **changes) -> dict:
    """Read-modify-write helper. Returns the data as written."""
    fm = read_frontmatter(path)
    fm.data.update(changes)
    write_frontmatter(path, fm.data, fm.content)
    return fm.data
