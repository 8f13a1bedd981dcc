"""Diff parsing: unified diff to per-file patches and line-numbered hunks."""

from __future__ import annotations

import logging
import re
from typing import Optional

from review_agent.models import FileChange

logger = logging.getLogger(__name__)

HUNK_HEADER = re.compile(r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@(.*)")

_NO_NEWLINE_MARKER = "\\ No newline at end of file"


def split_diff(diff_text: str) -> list[FileChange]:
    """Split a ``git diff`` blob into one FileChange per file.

    Each patch holds the hunks only (starting at the first ``@@`` line),
    which is the shape version-control hosts return per file.
    """
    files: list[FileChange] = []
    current: Optional[FileChange] = None
    old_path: Optional[str] = None
    in_hunks = False
    patch_lines: list[str] = []

    def _flush() -> None:
        if current is not None:
            current.patch = "\n".join(patch_lines)
            files.append(current)

    for line in diff_text.splitlines():
        if line.startswith("diff --git"):
            _flush()
            parts = line.split()
            old_path = parts[2].removeprefix("a/") if len(parts) >= 4 else None
            new_path = parts[3].removeprefix("b/") if len(parts) >= 4 else None
            current = FileChange(filename=new_path or old_path or "<unknown>", patch="")
            patch_lines = []
            in_hunks = False
            continue

        if current is None:
            continue

        if not in_hunks:
            if line.startswith("+++ "):
                target = line[4:].strip()
                if target != "/dev/null":
                    current.filename = target.removeprefix("b/")
                elif old_path:
                    current.filename = old_path
                continue
            if not line.startswith("@@"):
                # index, mode, rename and --- headers
                continue
            in_hunks = True

        patch_lines.append(line)

    _flush()
    logger.debug("Split diff into %d file(s)", len(files))
    return files


def number_new_lines(patch: str) -> str:
    """Prefix every non-removed hunk line with its line number in the new file.

    Hunk headers are kept as they are and reset the counter to the ``+c``
    start they declare. Removed lines are dropped and consume no number.
    """
    numbered: list[str] = []
    new_line_no: Optional[int] = None

    for line in patch.split("\n"):
        hunk_match = HUNK_HEADER.match(line)
        if hunk_match:
            new_line_no = int(hunk_match.group(3))
            numbered.append(line)
            continue

        if new_line_no is None or line.startswith(_NO_NEWLINE_MARKER):
            # Preamble before the first hunk, or git's trailing marker
            numbered.append(line)
            continue

        if line.startswith("-"):
            continue

        numbered.append(f"{new_line_no}: {line}")
        new_line_no += 1

    return "\n".join(numbered)


def strip_removed_lines(patch: str) -> str:
    """Drop every deletion line from a patch."""
    return "\n".join(line for line in patch.split("\n") if not line.startswith("-"))
