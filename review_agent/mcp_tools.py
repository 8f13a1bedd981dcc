"""MCP tool definitions for the batched pull-request reviewer."""

from __future__ import annotations

import json
import logging
import traceback
from typing import Optional

from fastmcp import FastMCP

from review_agent.analyzer import ReviewConfig, process_change_set
from review_agent.diff_parser import split_diff
from review_agent.sources import StaticContentSource

logger = logging.getLogger(__name__)

BASE_REF = "base"
HEAD_REF = "head"


def _error_response(tool_name: str, error: Exception) -> str:
    """Build a structured JSON error response for MCP tool failures."""
    logger.error("Tool %s failed: %s\n%s", tool_name, error, traceback.format_exc())
    return json.dumps(
        {
            "verdict": "ERROR",
            "summary": f"Tool '{tool_name}' failed: {error}",
            "review": None,
            "fixes": [],
            "error": str(error),
        },
        indent=2,
    )


def _load_contents(raw: Optional[str], name: str) -> dict[str, str]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in parsed.items()
    ):
        raise ValueError(f"{name} must be a JSON object mapping paths to file text")
    return parsed


async def review_change_set(
    diff: str,
    owner: str,
    repo: str,
    base_contents: Optional[str] = None,
    head_contents: Optional[str] = None,
    include_fixes: bool = False,
) -> str:
    """Batched review of a git diff with structured code suggestions.

    Splits the diff into per-file patches, packs them into requests that fit
    the model context, and returns the rendered review plus the suggestions
    it was built from.

    Args:
        diff: The unified diff output (e.g., from `git diff main...HEAD`)
        owner: Repository owner, used for issue links
        repo: Repository name, used for issue links
        base_contents: Optional JSON object {path: text} of files before the change
        head_contents: Optional JSON object {path: text} of files after the change
        include_fixes: Also derive exact inline fixes (needs head_contents)
    """
    try:
        source = StaticContentSource(
            {
                BASE_REF: _load_contents(base_contents, "base_contents"),
                HEAD_REF: _load_contents(head_contents, "head_contents"),
            }
        )
        files = split_diff(diff)
        result = await process_change_set(
            files,
            ReviewConfig(owner=owner, repo=repo),
            source,
            base_ref=BASE_REF,
            head_ref=HEAD_REF,
            include_fixes=include_fixes,
        )
        return result.to_json()
    except json.JSONDecodeError as e:
        return _error_response(
            "review_change_set",
            ValueError(f"base_contents and head_contents must be valid JSON: {e}"),
        )
    except Exception as e:
        return _error_response("review_change_set", e)


def register_tools(mcp: FastMCP) -> None:
    """Register all review tools on the given FastMCP server instance."""
    mcp.tool()(review_change_set)
