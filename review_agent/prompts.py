"""System prompts and conversation builders for each request type."""

from __future__ import annotations

from review_agent.models import Conversation, Message, Suggestion


# ── Reply markup ─────────────────────────────────────────────────────────────
# The parser in llm_parsing.py reads exactly these names; the prompt below
# instructs the service to emit them.

REVIEW_TAG = "review"
SUGGESTION_TAG = "suggestion"
DESCRIBE_TAG = "describe"
TYPE_TAG = "type"
COMMENT_TAG = "comment"
CODE_TAG = "code"
FILENAME_TAG = "filename"

SUGGESTION_FIELDS = (DESCRIBE_TAG, TYPE_TAG, COMMENT_TAG, CODE_TAG, FILENAME_TAG)


# ── Shared diff description ──────────────────────────────────────────────────

_DIFF_FORMAT = """Example PR diff input:
'
## src/file1.py

@@ -12,5 +12,5 @@ def func1():
12: code line that already existed in the file...
13: code line that already existed in the file...
14: +new code line added in the PR
15:  code line that already existed in the file...

@@ ... @@ def func2():
...


## src/file2.py
...
'

Numbered lines carry their line number in the new version of the file.
Lines starting with '-' were removed and carry no number."""


# ── Plain-text review ────────────────────────────────────────────────────────

PLAIN_REVIEW_SYSTEM = f"""You are PR-Reviewer, a language model designed to review git pull requests.
Your task is to provide constructive and concise feedback for the PR, and also provide meaningful code suggestions.

{_DIFF_FORMAT}

The review should focus on new code added in the PR (lines starting with '+'), not on code that already existed in the file.

- ONLY PROVIDE CODE SUGGESTIONS
- Focus on important suggestions like fixing code problems, improving performance, improving security, improving readability
- Avoid making suggestions that are already implemented in the PR code
- Don't suggest adding docstrings, type hints, or comments
- Do not say things like "without seeing the full repo". Comment only on the code you have!

Make sure the provided code suggestions are in the same programming language.
Don't repeat the prompt in the answer."""


# ── Tagged-markup review ─────────────────────────────────────────────────────

XML_REVIEW_SYSTEM = f"""You are PR-Reviewer, a language model that analyzes git pull requests in any programming language and proposes precise code improvements.
Keep your focus on the new code added in the PR (lines starting with '+'). Hunt for bugs, security issues, performance problems and readability improvements.

{_DIFF_FORMAT}

Do not propose changes that are already present in the '+' lines. Do not propose docstrings, type hints or comments.
Code suggestions must be in the same programming language as the file they target.

IMPORTANT: You MUST answer in the exact XML format shown below. Every suggestion needs all five elements in this order:
<{DESCRIBE_TAG}>, <{TYPE_TAG}>, <{COMMENT_TAG}>, <{CODE_TAG}>, <{FILENAME_TAG}>.
All suggestions go inside one single <{REVIEW_TAG}> element.

Code inside <{CODE_TAG}> must be GitHub markdown fenced with triple backticks and a language tag.

Example output:
<{REVIEW_TAG}>
  <{SUGGESTION_TAG}>
    <{DESCRIBE_TAG}>Brief description of the issue</{DESCRIBE_TAG}>
    <{TYPE_TAG}>security</{TYPE_TAG}>
    <{COMMENT_TAG}>Detailed explanation of the vulnerability and how to fix it</{COMMENT_TAG}>
    <{CODE_TAG}>```python
query = "SELECT * FROM users WHERE id = %s"
cursor.execute(query, (user_id,))
```</{CODE_TAG}>
    <{FILENAME_TAG}>src/db.py</{FILENAME_TAG}>
  </{SUGGESTION_TAG}>
</{REVIEW_TAG}>"""


def build_plain_review_conversation(diff: str) -> Conversation:
    return Conversation(
        messages=(
            Message(role="system", content=PLAIN_REVIEW_SYSTEM),
            Message(role="user", content=diff),
        )
    )


def build_xml_review_conversation(diff: str) -> Conversation:
    return Conversation(
        messages=(
            Message(role="system", content=XML_REVIEW_SYSTEM),
            Message(role="user", content=diff),
        )
    )


# ── Rendered review comment ──────────────────────────────────────────────────

SUGGESTION_TEMPLATE = """{comment}
{issue_link}

{code}
"""

NO_SUGGESTIONS_COMMENT = (
    "The code was reviewed but no specific suggestions were generated."
)


# ── Inline fixes ─────────────────────────────────────────────────────────────

INLINE_FIX_SYSTEM = """You are an expert software engineer turning a review suggestion into an exact code edit.

You receive the current contents of one file, every line prefixed with its 1-based line number, and one review suggestion for that file.
Pick the smallest contiguous line range the suggestion should replace and return the replacement code for exactly that range.

Rules:
- lineStart and lineEnd are 1-based and inclusive, and refer to the numbered file you were given
- code replaces the whole range; do not include line numbers in it
- write code without the leading indentation of the first replaced line; it will be re-indented
- comment explains the change in one or two sentences"""

INLINE_FIX_TOOL = {
    "name": "propose_inline_fix",
    "description": "Propose a replacement for a line range of the current file.",
    "input_schema": {
        "type": "object",
        "properties": {
            "code": {
                "type": "string",
                "description": "Replacement code for the selected line range.",
            },
            "lineStart": {
                "type": "integer",
                "description": "First line to replace (1-based, inclusive).",
            },
            "lineEnd": {
                "type": "integer",
                "description": "Last line to replace (1-based, inclusive).",
            },
            "comment": {
                "type": "string",
                "description": "Why this change should be made.",
            },
        },
        "required": ["code", "lineStart", "lineEnd", "comment"],
    },
}


def build_inline_fix_conversation(contents: str, suggestion: Suggestion) -> Conversation:
    numbered = "\n".join(
        f"{i}: {line}" for i, line in enumerate(contents.split("\n"), start=1)
    )
    user = "\n".join(
        [
            f"## Current file: {suggestion.filename}\n",
            f"```\n{numbered}\n```\n",
            "## Suggestion\n",
            f"{suggestion.description}\n",
            f"{suggestion.comment}\n",
            f"{suggestion.code}\n",
            f"Call {INLINE_FIX_TOOL['name']} with the exact edit.",
        ]
    )
    return Conversation(
        messages=(
            Message(role="system", content=INLINE_FIX_SYSTEM),
            Message(role="user", content=user),
        )
    )
