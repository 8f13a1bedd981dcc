"""Patch rendering: turn a FileChange into the text block sent for review."""

from __future__ import annotations

from review_agent.diff_parser import number_new_lines
from review_agent.models import FileChange


def raw_patch(file: FileChange) -> str:
    """The host-provided patch under a filename header."""
    return f"## {file.filename}\n\n{file.patch}"


def numbered_patch(file: FileChange) -> str:
    """The patch with every kept line prefixed by its new-file line number."""
    return f"## {file.filename}\n\n{number_new_lines(file.patch)}"


def render_patch(file: FileChange) -> str:
    """Pick the rendering strategy for a file.

    Line numbers are only trustworthy when both sides of the file were
    fetched; deleted, binary and unfetchable files get the raw patch.
    """
    if file.old_contents is None or file.current_contents is None:
        return raw_patch(file)
    return numbered_patch(file)


def render_patches(files: list[FileChange] | tuple[FileChange, ...]) -> str:
    return "\n".join(render_patch(f) for f in files)
