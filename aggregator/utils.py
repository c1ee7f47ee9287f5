from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def read_source_text(path: str | Path) -> str | None:
    """Read an input file, returning None (with a warning) if it is missing or unreadable.

    Only the exception type is logged for read failures so that permission
    errors don't echo file contents. Invalid UTF-8 is replaced, not fatal.
    """
    path = Path(path)
    if not path.exists():
        logger.warning("File not found: %s", path)
        return None
    try:
        # Undecodable bytes become U+FFFD so one bad line cannot drop the whole file
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("%s reading file %s", type(exc).__name__, path)
        return None


def write_jsonl(path: str | Path, records: Iterable[BaseModel]) -> int:
    """Overwrite path with one JSON object per line. Returns the record count.

    Writes directly (no temp file + rename); consumers only read these files
    after the run finishes.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        json.dumps(r.model_dump(mode="json", exclude_none=True), ensure_ascii=False)
        for r in records
    ]
    path.write_text("\n".join(lines) + ("\n" if lines else ""), encoding="utf-8")
    logger.info("Wrote %s (%d records)", path, len(lines))
    return len(lines)
