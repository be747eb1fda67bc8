"""Task document codec (YAML front matter followed by a Markdown body).

Layout::

    ---
    id: auth.login
    module: auth
    priority: 1
    status: pending
    estimatedMinutes: 30
    dependencies:
    - setup.init
    testRequirements:
      unit:
        required: true
        pattern: tests/auth/**
    ---

    # Login form

    ## Acceptance Criteria
    1. Renders email and password fields
    2. Rejects empty submissions

    ## Notes
    Completed in 25m

The title line carries the description, the numbered list the acceptance
criteria, and the optional Notes section the append-only notes. Empty
dependency lists and absent timestamps are omitted from the front matter.
"""

import re
from typing import Any

import yaml

from taskweave.exceptions import ParseError
from taskweave.models.domain import Task

_FRONT_MATTER_RE = re.compile(r"\A---\n(.*?)\n---\n(.*)\Z", re.DOTALL)
_TITLE_RE = re.compile(r"^# (.*)$", re.MULTILINE)
_SECTION_RE = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)
_CRITERION_RE = re.compile(r"^\d+\.\s+(.+)$")
# Note lines starting with "#" (optionally after backslashes) get one extra
# leading backslash so they never read back as headings.
_NOTE_HASH_LINE_RE = re.compile(r"^(\\*#)", re.MULTILINE)
_ESCAPED_NOTE_HASH_LINE_RE = re.compile(r"^\\(\\*#)", re.MULTILINE)

ACCEPTANCE_CRITERIA_HEADING = "Acceptance Criteria"
NOTES_HEADING = "Notes"


def render_task(task: Task) -> str:
    """Render ``task`` as a document."""
    data = task.to_dict()
    front_matter: dict[str, Any] = {
        "id": data["id"],
        "module": data["module"],
        "priority": data["priority"],
        "status": data["status"],
    }
    if data["estimatedMinutes"] is not None:
        front_matter["estimatedMinutes"] = data["estimatedMinutes"]
    if data["dependencies"]:
        front_matter["dependencies"] = data["dependencies"]
    if data["testRequirements"]:
        front_matter["testRequirements"] = data["testRequirements"]
    for key in ("startedAt", "completedAt", "failedAt"):
        if data[key] is not None:
            front_matter[key] = data[key]

    header = yaml.safe_dump(front_matter, sort_keys=False, allow_unicode=True)

    body = f"# {task.description}\n\n"
    if task.acceptance_criteria:
        body += f"## {ACCEPTANCE_CRITERIA_HEADING}\n"
        for number, criterion in enumerate(task.acceptance_criteria, start=1):
            body += f"{number}. {criterion}\n"
        body += "\n"
    if task.notes:
        notes = _NOTE_HASH_LINE_RE.sub(r"\\\1", task.notes)
        body += f"## {NOTES_HEADING}\n{notes}\n"

    return f"---\n{header}---\n\n{body}"


def parse_task(content: str, path: str | None = None) -> Task:
    """Parse a task document.

    Args:
        content: Document text
        path: Store path, used in error messages

    Raises:
        ParseError: If the front matter is missing or invalid.
    """
    match = _FRONT_MATTER_RE.match(content.replace("\r\n", "\n"))
    if not match:
        raise ParseError("Invalid task document: missing front matter", path=path)

    header_text, body = match.groups()
    try:
        header = yaml.safe_load(header_text)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid YAML front matter: {e}", path=path) from e
    if not isinstance(header, dict):
        raise ParseError("Front matter must be a mapping", path=path)

    sections = _split_sections(body)
    title = _TITLE_RE.search(body)

    data = dict(header)
    data["description"] = title.group(1).strip() if title else ""
    data["acceptanceCriteria"] = _parse_criteria(sections.get(ACCEPTANCE_CRITERIA_HEADING, ""))
    notes = _ESCAPED_NOTE_HASH_LINE_RE.sub(r"\1", sections.get(NOTES_HEADING, "").strip("\n"))
    data["notes"] = notes if notes.strip() else None

    try:
        return Task.from_dict(data)
    except ParseError as e:
        raise ParseError(e.message, path=path) from e


def _split_sections(body: str) -> dict[str, str]:
    headings = list(_SECTION_RE.finditer(body))
    sections: dict[str, str] = {}
    for i, heading in enumerate(headings):
        end = headings[i + 1].start() if i + 1 < len(headings) else len(body)
        sections[heading.group(1)] = body[heading.end() : end]
    return sections


def _parse_criteria(section: str) -> list[str]:
    criteria = []
    for line in section.splitlines():
        match = _CRITERION_RE.match(line.strip())
        if match:
            criteria.append(match.group(1).strip())
    return criteria
