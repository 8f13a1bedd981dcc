"""Suggestion refinement: dedup, comment rendering and inline code fixes."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Optional
from urllib.parse import quote

from review_agent.config import (
    ISSUE_BODY_MAX_CHARS,
    ISSUE_CODE_MAX_CHARS,
    ISSUE_HOST,
    ISSUE_PLACEHOLDER_LINK,
    ISSUE_TITLE_MAX_CHARS,
    ISSUE_URL_MAX_CHARS,
    MAX_INDENT_CHARS,
    REPO_NAME_PATTERN,
)
from review_agent.llm import CompleteFn
from review_agent.models import FileChange, InlineFix, Suggestion
from review_agent.prompts import (
    INLINE_FIX_TOOL,
    NO_SUGGESTIONS_COMMENT,
    SUGGESTION_TEMPLATE,
    build_inline_fix_conversation,
)

logger = logging.getLogger(__name__)

_REPO_NAME = re.compile(REPO_NAME_PATTERN)
_INDENT = re.compile(rf"^[ \t]{{0,{MAX_INDENT_CHARS}}}")


def is_valid_repo_name(name: str) -> bool:
    return bool(name) and _REPO_NAME.match(name) is not None


def dedup_suggestions(suggestions: Sequence[Suggestion]) -> list[Suggestion]:
    """Keep one suggestion per identity."""
    by_identity: dict[str, Suggestion] = {}
    for suggestion in suggestions:
        by_identity[suggestion.identity] = suggestion
    return list(by_identity.values())


# ── Issue links ──────────────────────────────────────────────────────────────


def _encode(text: str) -> str:
    # Same reserved set as JavaScript's encodeURIComponent
    return quote(text, safe="-_.!~*'()")


def generate_issue_link(
    owner: str,
    repo: str,
    title: str,
    body: str,
    code: Optional[str] = None,
) -> str:
    """Markdown link that opens a prefilled issue for a suggestion.

    The URL never exceeds ISSUE_URL_MAX_CHARS: the code block is dropped
    first, then the body is shortened. Owner or repo names outside the
    allowed character set produce a placeholder link.
    """
    if not is_valid_repo_name(owner) or not is_valid_repo_name(repo):
        logger.warning("Invalid owner or repo name format: %r, %r", owner, repo)
        return ISSUE_PLACEHOLDER_LINK

    base = f"{ISSUE_HOST}/{owner}/{repo}/issues/new"
    encoded_title = _encode((title or "")[:ISSUE_TITLE_MAX_CHARS])
    body = (body or "")[:ISSUE_BODY_MAX_CHARS]
    code = (code or "")[:ISSUE_CODE_MAX_CHARS]

    encoded_code = _encode(f"\n{code}\n") if code else ""
    url = f"{base}?title={encoded_title}&body={_encode(body)}{encoded_code}"
    if len(url) <= ISSUE_URL_MAX_CHARS:
        return f"[Create Issue]({url})"

    url = f"{base}?title={encoded_title}&body={_encode(body)}"
    while len(url) > ISSUE_URL_MAX_CHARS and body:
        # Every raw character encodes to at least one URL character
        body = body[: max(0, len(body) - (len(url) - ISSUE_URL_MAX_CHARS))]
        url = f"{base}?title={encoded_title}&body={_encode(body)}"

    if len(url) > ISSUE_URL_MAX_CHARS:
        return ISSUE_PLACEHOLDER_LINK
    return f"[Create Issue]({url})"


# ── Comment rendering ────────────────────────────────────────────────────────


def render_file_comments(
    owner: str, repo: str, suggestions: Sequence[Suggestion]
) -> list[str]:
    """One markdown section per file, each suggestion rendered from the template."""
    by_file: dict[str, list[Suggestion]] = {}
    for suggestion in suggestions:
        by_file.setdefault(suggestion.filename, []).append(suggestion)

    comments: list[str] = []
    for filename, file_suggestions in by_file.items():
        parts = [f"## {filename}\n"]
        for suggestion in file_suggestions:
            issue_link = generate_issue_link(
                owner,
                repo,
                suggestion.description,
                suggestion.comment,
                suggestion.code,
            )
            parts.append(
                SUGGESTION_TEMPLATE.format(
                    comment=suggestion.comment,
                    issue_link=issue_link,
                    code=suggestion.code,
                )
            )
        comments.append("\n".join(parts))
    return comments


def render_review_comment(
    owner: str, repo: str, suggestions: Sequence[Suggestion]
) -> str:
    comment = "\n".join(render_file_comments(owner, repo, suggestions))
    if not comment.strip():
        return NO_SUGGESTIONS_COMMENT
    return comment


# ── Inline fixes ─────────────────────────────────────────────────────────────


def indent_code_fix(contents: str, code: str, line_start: int) -> str:
    """Re-indent ``code`` with the leading whitespace of line ``line_start``."""
    file_lines = contents.split("\n")
    if line_start < 1 or line_start > len(file_lines):
        return code

    indentation = _INDENT.match(file_lines[line_start - 1]).group(0)
    return "\n".join(indentation + line for line in code.split("\n"))


def is_new_code(contents: str, fix: InlineFix) -> bool:
    """False when the fix would rewrite its range with the same text."""
    file_lines = contents.split("\n")
    target = "\n".join(file_lines[fix.line_start - 1 : fix.line_end])
    return target.strip() != fix.correction.strip()


def _parse_fix_arguments(arguments: str, line_count: int) -> Optional[dict]:
    try:
        args = json.loads(arguments)
    except (json.JSONDecodeError, TypeError) as e:
        logger.info("Inline fix arguments are not valid JSON: %s", e)
        return None

    if not isinstance(args, dict):
        logger.info("Inline fix arguments are not an object")
        return None

    code = args.get("code")
    line_start = args.get("lineStart")
    line_end = args.get("lineEnd")
    if not isinstance(code, str) or not code:
        logger.info("Inline fix is missing code")
        return None
    for bound in (line_start, line_end):
        # bool is an int subclass; reject it explicitly
        if not isinstance(bound, int) or isinstance(bound, bool):
            logger.info("Inline fix has non-integer line bounds")
            return None
    if not 1 <= line_start <= line_end <= line_count:
        logger.info(
            "Inline fix range %d-%d is outside the file (1-%d)",
            line_start,
            line_end,
            line_count,
        )
        return None

    comment = args.get("comment")
    args["comment"] = comment if isinstance(comment, str) else ""
    return args


async def generate_inline_fix(
    suggestion: Suggestion,
    file: FileChange,
    complete: CompleteFn,
) -> Optional[InlineFix]:
    """Ask the service for an exact line-range edit implementing ``suggestion``.

    Returns None for files without current contents, malformed tool output,
    failed requests, and edits that would not change the file.
    """
    contents = file.current_contents
    if contents is None:
        logger.info("No current contents for %s, skipping inline fix", file.filename)
        return None

    conversation = build_inline_fix_conversation(contents, suggestion)
    # A failed fix costs only this suggestion's fix, never the review
    try:
        result = await complete(conversation, INLINE_FIX_TOOL)
        tool_call = result.tool_call
    except Exception as e:
        logger.warning(
            "Inline fix request failed for %s: %s: %s",
            file.filename,
            type(e).__name__,
            e,
        )
        return None

    if tool_call is None:
        logger.info("No tool call in inline fix reply for %s", file.filename)
        return None

    args = _parse_fix_arguments(tool_call.arguments, len(contents.split("\n")))
    if args is None:
        return None

    fix = InlineFix(
        filename=suggestion.filename,
        line_start=args["lineStart"],
        line_end=args["lineEnd"],
        correction=indent_code_fix(contents, args["code"], args["lineStart"]),
        comment=args["comment"],
    )
    if not is_new_code(contents, fix):
        logger.info(
            "Discarding no-op inline fix for %s lines %d-%d",
            fix.filename,
            fix.line_start,
            fix.line_end,
        )
        return None
    return fix
