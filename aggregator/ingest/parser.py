from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from aggregator.models import Parsed, ParseOutcome, Skipped
from aggregator.utils import read_source_text

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 80

# Bounded quantifiers throughout: inputs may be machine-generated and huge.
_TABLE_ID_RE = re.compile(r"(?:DEDUP|CANON|LEGACY)-\d{1,10}")
_EFFORT_RE = re.compile(r"^E\d$")
_CELL_SPLIT_RE = re.compile(r"(?<!\\)\|")
_CATEGORY_HEADER_RE = re.compile(r"^## Category: (.{1,200})")
_SEVERITY_HEADER_RE = re.compile(r"^### S(\d) ")

_SECTION_SPLIT_RE = re.compile(r"(?=^### \[)", re.MULTILINE)
_SECTION_HEADER_RE = re.compile(r"^### \[([^\]\n]{1,100})\] ([^\n]+)")
_CANON_ID_RE = re.compile(r"\*\*CANON-ID\*\*:[ \t]{0,10}((?:CANON|LEGACY)-\d{1,10})")
_SEVERITY_FIELD_RE = re.compile(r"\*\*Severity\*\*:[ \t]{0,10}(S\d)")
_EFFORT_FIELD_RE = re.compile(r"\*\*Effort\*\*:[ \t]{0,10}(E\d)")


def _preview(line: str) -> str:
    line = line.strip()
    return line if len(line) <= _PREVIEW_CHARS else line[: _PREVIEW_CHARS - 3] + "..."


def parse_jsonl_file(file_path: str | Path) -> list[dict[str, Any]]:
    """Parse a JSONL file into a list of dicts, one per valid line.

    - Missing or unreadable file → warning, empty list
    - Blank lines are ignored
    - A line that is not valid JSON, or not a JSON object, is skipped with a
      warning naming its 1-based line number and a short preview
    """
    content = read_source_text(file_path)
    if content is None:
        return []

    items: list[dict[str, Any]] = []
    for line_number, raw in enumerate(content.split("\n"), start=1):
        # strip() also handles CRLF files
        line = raw.strip()
        if not line:
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning(
                "%s parsing JSON at line %d in %s: %s",
                type(exc).__name__,
                line_number,
                file_path,
                _preview(line),
            )
            continue
        if not isinstance(item, dict):
            logger.warning(
                "Skipping non-object JSON at line %d in %s: %s",
                line_number,
                file_path,
                _preview(line),
            )
            continue
        items.append(item)

    logger.debug("Parsed %d items from %s", len(items), file_path)
    return items


def _split_row(line: str) -> list[str]:
    return [cell.strip() for cell in _CELL_SPLIT_RE.split(line)]


def parse_backlog_table(content: str) -> list[ParseOutcome]:
    """Extract findings from Markdown table rows of the refactor backlog.

    Row shape: ``| **ID** | Title | EN | deps | pr-bucket |``. Effort, deps and
    PR bucket are taken by position from the end of the row so that a title
    containing ``|`` still parses; all middle cells are joined back into the
    title. ``## Category: X`` and ``### S<n> `` headers set the category and
    severity for the rows that follow.
    """
    outcomes: list[ParseOutcome] = []
    current_category = "unknown"
    current_severity = "S2"

    for line_number, line in enumerate(content.split("\n"), start=1):
        line = line.rstrip("\r")

        category_match = _CATEGORY_HEADER_RE.match(line)
        if category_match:
            current_category = category_match.group(1).strip()
            continue
        severity_match = _SEVERITY_HEADER_RE.match(line)
        if severity_match:
            current_severity = f"S{severity_match.group(1)}"
            continue

        if not line.startswith("|"):
            continue

        # Expected: ['', 'ID', 'Title...', 'Effort', 'Deps', 'PR', '']
        parts = _split_row(line)
        if len(parts) < 3:
            continue
        id_match = _TABLE_ID_RE.search(parts[1])
        if not id_match:
            continue
        item_id = id_match.group(0)

        if len(parts) < 6:
            outcomes.append(Skipped(reason=f"{item_id}: too few cells ({len(parts)})", line=line_number))
            continue

        effort = parts[-4]
        deps = parts[-3]
        pr = parts[-2]
        title = " | ".join(parts[2:-4]).replace("\\|", "|").strip()

        if not _EFFORT_RE.match(effort):
            outcomes.append(Skipped(reason=f"{item_id}: invalid effort '{effort}'", line=line_number))
            continue

        outcomes.append(
            Parsed(
                item={
                    "id": item_id,
                    "title": title,
                    "effort": effort,
                    "deps": deps,
                    "pr": pr,
                    "category": current_category,
                    "severity": current_severity,
                    "source": "backlog",
                },
                line=line_number,
            )
        )

    return outcomes


def parse_finding_sections(content: str) -> list[ParseOutcome]:
    """Extract findings from ``### [Category] Title`` sections.

    The document is split on header boundaries first; each field is then
    matched with a small bounded regex inside its own section, so a long
    section can neither hide a field nor blow up a single whole-file match.
    """
    outcomes: list[ParseOutcome] = []
    line_number = 1

    for section in _SECTION_SPLIT_RE.split(content):
        start_line = line_number
        line_number += section.count("\n")

        header = _SECTION_HEADER_RE.match(section)
        if not header:
            continue

        category = header.group(1)
        title = header.group(2).strip()
        canon_id = _CANON_ID_RE.search(section)
        severity = _SEVERITY_FIELD_RE.search(section)
        effort = _EFFORT_FIELD_RE.search(section)

        missing = [
            name
            for name, match in (("CANON-ID", canon_id), ("Severity", severity), ("Effort", effort))
            if match is None
        ]
        if missing:
            outcomes.append(
                Skipped(reason=f"'{title[:60]}': missing {', '.join(missing)}", line=start_line)
            )
            continue

        outcomes.append(
            Parsed(
                item={
                    "id": canon_id.group(1),
                    "title": title,
                    "category": category,
                    "severity": severity.group(1),
                    "effort": effort.group(1),
                    "source": "audit-backlog",
                },
                line=start_line,
            )
        )

    return outcomes


def _read_markdown(
    file_path: str | Path, parse: Callable[[str], list[ParseOutcome]]
) -> list[ParseOutcome]:
    content = read_source_text(file_path)
    if content is None:
        return []
    outcomes = parse(content)
    for outcome in outcomes:
        if isinstance(outcome, Skipped):
            logger.debug("Skipped %s line %s: %s", file_path, outcome.line, outcome.reason)
    return outcomes


def parse_markdown_backlog(file_path: str | Path) -> list[ParseOutcome]:
    """Read and parse the refactor backlog table file."""
    return _read_markdown(file_path, parse_backlog_table)


def parse_audit_findings_backlog(file_path: str | Path) -> list[ParseOutcome]:
    """Read and parse the sectioned audit-findings backlog file."""
    return _read_markdown(file_path, parse_finding_sections)


def parsed_items(outcomes: list[ParseOutcome]) -> list[dict[str, Any]]:
    return [o.item for o in outcomes if isinstance(o, Parsed)]
