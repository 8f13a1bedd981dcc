import json
import re

import pytest

from review_agent.config import ISSUE_PLACEHOLDER_LINK, ISSUE_URL_MAX_CHARS
from review_agent.models import CompletionResult, FileChange, Suggestion, ToolCall
from review_agent.prompts import INLINE_FIX_TOOL, NO_SUGGESTIONS_COMMENT
from review_agent.suggestions import (
    dedup_suggestions,
    generate_inline_fix,
    generate_issue_link,
    indent_code_fix,
    is_valid_repo_name,
    render_file_comments,
    render_review_comment,
)


def make_suggestion(**overrides):
    fields = dict(
        description="Rename variable",
        category="readability",
        comment="Use a descriptive name.",
        code="b = 2",
        filename="src/app.py",
    )
    fields.update(overrides)
    return Suggestion(**fields)


def link_url(link):
    match = re.fullmatch(r"\[Create Issue\]\((.*)\)", link)
    assert match, link
    return match.group(1)


class TestIdentity:
    def test_same_content_same_identity(self):
        assert make_suggestion().identity == make_suggestion().identity

    def test_any_field_changes_identity(self):
        base = make_suggestion().identity
        for name in ("description", "category", "comment", "code", "filename"):
            assert make_suggestion(**{name: "other"}).identity != base

    def test_dedup_keeps_first_occurrence_order(self):
        a, b = make_suggestion(), make_suggestion(filename="src/other.py")
        assert dedup_suggestions([a, b, make_suggestion()]) == [a, b]


class TestIssueLinks:
    def test_valid_link(self):
        url = link_url(generate_issue_link("octo", "hello.world", "Fix it", "Body text", "x = 1"))
        assert url.startswith("https://github.com/octo/hello.world/issues/new?title=Fix%20it&body=")
        assert "x%20%3D%201" in url

    @pytest.mark.parametrize("owner, repo", [("bad owner", "repo"), ("owner", "re/po"), ("", "repo")])
    def test_invalid_names_give_placeholder(self, owner, repo):
        assert generate_issue_link(owner, repo, "t", "b") == ISSUE_PLACEHOLDER_LINK

    def test_repo_name_charset(self):
        assert is_valid_repo_name("my-repo_1.0")
        assert not is_valid_repo_name("my repo")
        assert not is_valid_repo_name("")

    def test_long_code_is_dropped_first(self):
        url = link_url(generate_issue_link("octo", "repo", "t", "short body", "y" * 3000))
        assert len(url) <= ISSUE_URL_MAX_CHARS
        assert "short%20body" in url
        assert "yyyy" not in url

    def test_long_multibyte_body_is_shortened(self):
        url = link_url(generate_issue_link("octo", "repo", "t", "é" * 4000))
        assert len(url) <= ISSUE_URL_MAX_CHARS
        assert "%C3%A9" in url


class TestRendering:
    def test_groups_by_file(self):
        suggestions = [
            make_suggestion(),
            make_suggestion(filename="lib/util.py", comment="Other file."),
            make_suggestion(comment="Second note."),
        ]
        comments = render_file_comments("octo", "repo", suggestions)
        assert len(comments) == 2
        assert comments[0].startswith("## src/app.py\n")
        assert "Use a descriptive name." in comments[0]
        assert "Second note." in comments[0]
        assert "Other file." in comments[1]

    def test_empty_review_gets_default_comment(self):
        assert render_review_comment("octo", "repo", []) == NO_SUGGESTIONS_COMMENT

    def test_review_comment_contains_code_and_link(self):
        comment = render_review_comment("octo", "repo", [make_suggestion()])
        assert "b = 2" in comment
        assert "[Create Issue](https://github.com/octo/repo/issues/new" in comment


class TestIndentCodeFix:
    def test_uses_target_line_indentation(self):
        contents = "def f():\n    a = 1\n\treturn a"
        assert indent_code_fix(contents, "x = 1\ny = 2", 2) == "    x = 1\n    y = 2"
        assert indent_code_fix(contents, "return b", 3) == "\treturn b"

    def test_out_of_range_line_leaves_code_alone(self):
        assert indent_code_fix("a\nb", "c", 0) == "c"
        assert indent_code_fix("a\nb", "c", 9) == "c"


CONTENTS = "def f():\n    a = 1\n    return a\n"


def tool_reply(arguments):
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return CompletionResult(
        text="",
        tool_call=ToolCall(name=INLINE_FIX_TOOL["name"], arguments=arguments),
        stop_reason="tool_use",
    )


def fake_complete(result):
    calls = []

    async def complete(conversation, tool_spec=None):
        calls.append((conversation, tool_spec))
        if isinstance(result, Exception):
            raise result
        return result

    complete.calls = calls
    return complete


@pytest.fixture
def changed_file():
    return FileChange(filename="src/app.py", patch="@@ -1 +1 @@\n+x", current_contents=CONTENTS)


@pytest.mark.asyncio
class TestGenerateInlineFix:
    async def test_valid_fix_is_reindented(self, changed_file):
        complete = fake_complete(
            tool_reply({"code": "b = 2", "lineStart": 2, "lineEnd": 2, "comment": "rename"})
        )
        fix = await generate_inline_fix(make_suggestion(), changed_file, complete)

        assert fix is not None
        assert (fix.line_start, fix.line_end) == (2, 2)
        assert fix.correction == "    b = 2"
        assert fix.comment == "rename"
        assert fix.filename == "src/app.py"
        (_, tool_spec), = complete.calls
        assert tool_spec is INLINE_FIX_TOOL

    async def test_noop_fix_is_discarded(self, changed_file):
        complete = fake_complete(tool_reply({"code": "a = 1", "lineStart": 2, "lineEnd": 2}))
        assert await generate_inline_fix(make_suggestion(), changed_file, complete) is None

    @pytest.mark.parametrize(
        "arguments",
        [
            "{not json",
            json.dumps(["code"]),
            {"code": "b = 2", "lineStart": "2", "lineEnd": 2},
            {"code": "b = 2", "lineStart": True, "lineEnd": 2},
            {"code": "b = 2", "lineStart": 2},
            {"code": "b = 2", "lineStart": 3, "lineEnd": 2},
            {"code": "b = 2", "lineStart": 2, "lineEnd": 50},
            {"code": "", "lineStart": 2, "lineEnd": 2},
            {"lineStart": 2, "lineEnd": 2},
        ],
    )
    async def test_malformed_tool_output_yields_none(self, changed_file, arguments):
        complete = fake_complete(tool_reply(arguments))
        assert await generate_inline_fix(make_suggestion(), changed_file, complete) is None

    async def test_missing_tool_call(self, changed_file):
        complete = fake_complete(CompletionResult(text="I would rename it."))
        assert await generate_inline_fix(make_suggestion(), changed_file, complete) is None

    @pytest.mark.parametrize(
        "error",
        [RuntimeError("throttled"), TimeoutError("timed out"), ConnectionError("reset")],
    )
    async def test_request_failure(self, changed_file, error):
        complete = fake_complete(error)
        assert await generate_inline_fix(make_suggestion(), changed_file, complete) is None

    async def test_odd_reply_object(self, changed_file):
        complete = fake_complete(object())
        assert await generate_inline_fix(make_suggestion(), changed_file, complete) is None

    async def test_no_contents_means_no_request(self):
        complete = fake_complete(tool_reply({"code": "b", "lineStart": 1, "lineEnd": 1}))
        file = FileChange(filename="src/app.py", patch="")
        assert await generate_inline_fix(make_suggestion(), file, complete) is None
        assert complete.calls == []
