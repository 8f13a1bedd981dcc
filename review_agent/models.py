"""Data models for the batched pull-request reviewer."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional


@dataclass
class FileChange:
    """One changed file in a review.

    Created from the external file list, then enriched in place with the
    before/after contents and the token length of its rendered patch.
    """

    filename: str
    patch: str
    old_contents: Optional[str] = None
    current_contents: Optional[str] = None
    patch_token_length: int = 0

    @property
    def extension(self) -> str:
        basename = self.filename.rsplit("/", 1)[-1]
        if "." not in basename:
            return ""
        return basename.rsplit(".", 1)[-1].lower()


@dataclass(frozen=True)
class Message:
    """A single role-tagged segment of a conversation."""

    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass(frozen=True)
class Conversation:
    """One request to the completion service, built fresh per batch."""

    messages: tuple[Message, ...]

    @property
    def system_prompt(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role == "system")

    @property
    def turns(self) -> list[dict[str, str]]:
        """Non-system messages in the shape the Messages API expects."""
        return [
            {"role": m.role, "content": m.content}
            for m in self.messages
            if m.role != "system"
        ]


@dataclass(frozen=True)
class Batch:
    """A non-empty group of files reviewed in a single request.

    ``degraded`` marks batches built from files whose deletion lines were
    stripped because the full patch did not fit.
    """

    files: tuple[FileChange, ...]
    degraded: bool = False

    def __post_init__(self) -> None:
        if not self.files:
            raise ValueError("Batch must contain at least one file")

    @property
    def filenames(self) -> list[str]:
        return [f.filename for f in self.files]


@dataclass
class BatchPlan:
    """Output of the batch planner: batches plus files left out of the review."""

    batches: list[Batch] = field(default_factory=list)
    excluded: list[FileChange] = field(default_factory=list)


@dataclass(frozen=True)
class Suggestion:
    """A single code suggestion extracted from a review reply."""

    description: str
    category: str
    comment: str
    code: str
    filename: str

    @property
    def identity(self) -> str:
        """Content hash over every field; equal content means equal identity."""
        payload = json.dumps(
            [self.description, self.category, self.comment, self.code, self.filename],
            ensure_ascii=False,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class InlineFix:
    """A precise replacement for a line range of the current file (1-based, inclusive)."""

    filename: str
    line_start: int
    line_end: int
    correction: str
    comment: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReviewResult:
    """Rendered review comment plus the suggestions that produced it."""

    comment: str
    suggestions: list[Suggestion] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "comment": self.comment,
            "suggestions": [s.to_dict() for s in self.suggestions],
        }


@dataclass(frozen=True)
class ToolCall:
    """A forced structured call returned by the completion service."""

    name: str
    arguments: str  # JSON-encoded


@dataclass(frozen=True)
class CompletionResult:
    """Raw output of one completion request."""

    text: str
    tool_call: Optional[ToolCall] = None
    stop_reason: str = "end_turn"


@dataclass
class ChangeSetReview:
    """Everything produced for one change set, handed to the posting side."""

    review: Optional[ReviewResult] = None
    fixes: list[InlineFix] = field(default_factory=list)
    excluded_files: list[str] = field(default_factory=list)
    reviewed_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> dict:
        return {
            "review": self.review.to_dict() if self.review else None,
            "fixes": [f.to_dict() for f in self.fixes],
            "excluded_files": self.excluded_files,
            "reviewed_at": self.reviewed_at,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
