#!/usr/bin/env python3
"""Validate a MASTER_ISSUE_LIST.jsonl file for ordering and consistency."""

import json
import sys
from pathlib import Path

DEFAULT_PATH = "docs/aggregation/MASTER_ISSUE_LIST.jsonl"


def validate(list_path: str) -> list[str]:
    """Validate the master list and return a list of error messages (empty = passed)."""
    errors: list[str] = []
    path = Path(list_path)

    if not path.exists():
        return [f"File not found: {list_path}"]

    records: list[dict] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            errors.append(f"Line {lineno}: invalid JSON: {e}")
            continue
        if not isinstance(record, dict):
            errors.append(f"Line {lineno}: expected a JSON object")
            continue
        records.append(record)

    previous: tuple[int, str] | None = None
    for index, record in enumerate(records, start=1):
        oid = record.get("original_id", "?")

        for field in ["master_id", "priority_score", "pr_bucket", "category", "title"]:
            if field not in record:
                errors.append(f"{oid}: missing field: {field}")

        expected = f"MASTER-{index:04d}"
        if record.get("master_id") != expected:
            errors.append(f"{oid}: master_id={record.get('master_id')} expected {expected}")

        score = record.get("priority_score")
        if not isinstance(score, int) or not 0 <= score <= 100:
            errors.append(f"{oid}: priority_score={score} outside 0-100")
            continue

        # Sorted by score descending, original_id ascending on ties
        key = (-score, str(record.get("original_id", "")))
        if previous is not None and key < previous:
            errors.append(f"{oid}: out of order after score {-previous[0]} / {previous[1]}")
        previous = key

        if oid in record.get("dependencies", []):
            errors.append(f"{oid}: depends on itself")

        merged_from = record.get("merged_from", [])
        if len(merged_from) != len(set(merged_from)):
            errors.append(f"{oid}: duplicate ids in merged_from")

    return errors


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_PATH
    errors = validate(path)

    if errors:
        print(f"VALIDATION FAILED ({len(errors)} errors):")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)
    else:
        print("VALIDATION PASSED")


if __name__ == "__main__":
    main()
