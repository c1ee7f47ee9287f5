"""Parsers for work that is already tracked outside the audit pipeline.

ROADMAP.md and TECHNICAL_DEBT_MASTER.md are free-form Markdown edited by
hand, so every pattern here is line-anchored with bounded repetition.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from aggregator.models import TrackedItem
from aggregator.utils import read_source_text

logger = logging.getLogger(__name__)

_TRACK_RE = re.compile(
    r"^###[ \t]{1,10}Track[ \t]{1,10}([A-Z])\b[ \t]{0,10}[-–—]?[ \t]{0,10}(.{0,200})",
    re.IGNORECASE,
)
_SECTION_RE = re.compile(r"^####[ \t]{1,10}(.{1,200})")
_CHECKBOX_RE = re.compile(
    r"^[-*][ \t]{0,10}\[([ xX])\][ \t]{0,10}\*\*([A-Z][A-Z0-9-]{0,40}\d):\*\*[ \t]{0,10}(.{1,2000})"
)
_EMOJI_ITEM_RE = re.compile(
    r"^[-*][ \t]{0,10}(?:✅|\U0001F504|\U0001F4CB|⏳|⚠️?){1,5}[ \t]{0,10}"
    r"\*\*([A-Z][A-Z0-9-]{0,40}\d):?\*{0,2}[ \t]{0,10}(.{1,2000})"
)
_ROADMAP_ROW_RE = re.compile(
    r"^\|[ \t]{0,10}([\w.-]{1,60})[ \t]{0,10}\|([^|]{1,2000})\|([^|]{1,2000})\|"
)
_ROADMAP_ID_RE = re.compile(r"^[A-Z][A-Z0-9.-]{0,60}\d$", re.IGNORECASE)
_FILE_REF_RE = re.compile(r"`([^`\n]{1,300}\.(?:tsx?|jsx?|mjs|cjs|json|md))(?::(\d{1,7}))?`")
_FILE_LIKE_RE = re.compile(r"[/\\]|\.(?:tsx?|jsx?|mjs|cjs|json|md)$", re.IGNORECASE)
_FILE_EXT_RE = re.compile(r"\.(?:tsx?|jsx?|mjs|cjs|json|md)$", re.IGNORECASE)
_FILE_LINE_RE = re.compile(r"^(.{1,300}):(\d{1,7})$")
_STATUS_EMOJI_RE = re.compile("[✅\U0001F504\U0001F4CB⏳]")
_TRAILING_EFFORT_RE = re.compile(r"[ \t]{0,10}\([SMLE][ \t]{1,5}effort\)[ \t]{0,10}$", re.IGNORECASE)

_TECH_DEBT_ROW_RE = re.compile(
    r"^\|[ \t]{0,10}\*{0,2}([\w-]{1,60}?)\*{0,2}[ \t]{0,10}\|([^|]{1,2000})\|([^|]{1,2000})\|([^|]{1,2000})\|"
)
_TECH_DEBT_ID_RE = re.compile(r"^[A-Z]{1,20}-\d{1,10}$")

_COMPLETE = "✅"


def _file_refs(text: str) -> tuple[list[str], list[tuple[str, int]]]:
    files: list[str] = []
    file_lines: list[tuple[str, int]] = []
    for match in _FILE_REF_RE.finditer(text):
        files.append(match.group(1))
        if match.group(2):
            file_lines.append((match.group(1), int(match.group(2))))
    return files, file_lines


def _clean(description: str) -> str:
    return _STATUS_EMOJI_RE.sub("", description).strip()


def parse_roadmap_text(content: str) -> list[TrackedItem]:
    items: dict[str, TrackedItem] = {}
    track = ""
    section = ""

    for line in content.split("\n"):
        line = line.rstrip("\r")

        track_match = _TRACK_RE.match(line)
        if track_match:
            track = track_match.group(1).upper()
            section = track_match.group(2).strip()
            continue
        section_match = _SECTION_RE.match(line)
        if section_match:
            section = section_match.group(1).strip()
            continue

        checkbox = _CHECKBOX_RE.match(line)
        if checkbox:
            description = checkbox.group(3).strip()
            files, file_lines = _file_refs(description)
            items.setdefault(
                checkbox.group(2),
                TrackedItem(
                    id=checkbox.group(2),
                    source="roadmap",
                    title=_clean(description),
                    status="complete" if checkbox.group(1).lower() == "x" else "pending",
                    track=track,
                    section=section,
                    files=files,
                    file_lines=file_lines,
                ),
            )
            continue

        emoji = _EMOJI_ITEM_RE.match(line)
        if emoji:
            description = emoji.group(2).strip()
            description = _TRAILING_EFFORT_RE.sub("", description.rstrip("*")).strip()
            files, file_lines = _file_refs(description)
            items.setdefault(
                emoji.group(1),
                TrackedItem(
                    id=emoji.group(1),
                    source="roadmap",
                    title=_clean(description),
                    status="complete" if _COMPLETE in line else "pending",
                    track=track,
                    section=section,
                    files=files,
                    file_lines=file_lines,
                ),
            )
            continue

        row = _ROADMAP_ROW_RE.match(line)
        if row and _ROADMAP_ID_RE.match(row.group(1).strip()):
            item_id = row.group(1).strip()
            col2 = row.group(2).strip().strip("`")
            col3 = row.group(3).strip().strip("`")

            col2_is_file = bool(_FILE_LIKE_RE.search(col2))
            file_cell = col2 if col2_is_file else (col3 if _FILE_EXT_RE.search(col3) else None)
            files: list[str] = []
            file_lines: list[tuple[str, int]] = []
            if file_cell:
                file_line = _FILE_LINE_RE.match(file_cell)
                if file_line:
                    files.append(file_line.group(1))
                    file_lines.append((file_line.group(1), int(file_line.group(2))))
                else:
                    files.append(file_cell)

            items.setdefault(
                item_id,
                TrackedItem(
                    id=item_id,
                    source="roadmap",
                    title=col3 if col2_is_file else col2,
                    status="complete" if _COMPLETE in line else "pending",
                    track=track,
                    section=section,
                    files=files,
                    file_lines=file_lines,
                ),
            )

    return list(items.values())


def parse_tech_debt_text(content: str) -> list[TrackedItem]:
    items: list[TrackedItem] = []
    for line in content.split("\n"):
        row = _TECH_DEBT_ROW_RE.match(line.rstrip("\r"))
        if not row:
            continue
        item_id = row.group(1).strip()
        if not _TECH_DEBT_ID_RE.match(item_id):
            continue
        title = row.group(2).strip()
        status = row.group(3).strip()
        if title.lower() == "title" or "FALSE POSITIVE" in status:
            continue
        items.append(
            TrackedItem(
                id=item_id,
                source="tech-debt",
                title=title,
                status="complete" if _COMPLETE in status else "pending",
            )
        )
    return items


def parse_roadmap_items(file_path: str | Path) -> list[TrackedItem]:
    """Tracked items from ROADMAP.md (checkboxes, status-emoji bullets, table rows)."""
    content = read_source_text(file_path)
    if content is None:
        return []
    return parse_roadmap_text(content)


def parse_tech_debt_items(file_path: str | Path) -> list[TrackedItem]:
    """Tracked items from TECHNICAL_DEBT_MASTER.md table rows."""
    content = read_source_text(file_path)
    if content is None:
        return []
    return parse_tech_debt_text(content)
