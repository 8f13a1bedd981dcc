"""Review orchestration: batch, query, parse, and fall back across strategies."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from review_agent import llm
from review_agent.chunking import filter_files, plan_batches
from review_agent.llm import CompleteFn
from review_agent.llm_parsing import parse_suggestions
from review_agent.models import (
    BatchPlan,
    ChangeSetReview,
    Conversation,
    FileChange,
    InlineFix,
    ReviewResult,
)
from review_agent.patches import render_patches
from review_agent.prompts import (
    build_plain_review_conversation,
    build_xml_review_conversation,
)
from review_agent.sources import ContentSource
from review_agent.suggestions import (
    dedup_suggestions,
    generate_inline_fix,
    is_valid_repo_name,
    render_review_comment,
)
from review_agent.tokens import TokenBudget

logger = logging.getLogger(__name__)


class ReviewFailedError(RuntimeError):
    """Every review strategy failed; carries each (strategy, error) attempt."""

    def __init__(self, attempts: list[tuple[str, Exception]]):
        self.attempts = attempts
        names = ", ".join(name for name, _ in attempts) or "none"
        super().__init__(f"All review strategies failed (tried: {names})")


@dataclass(frozen=True)
class ReviewConfig:
    """Per-review settings, bound once and passed to every strategy."""

    owner: str
    repo: str
    budget: TokenBudget = field(default_factory=TokenBudget)


ResponseBuilder = Callable[[Sequence[str], ReviewConfig], ReviewResult]


@dataclass(frozen=True)
class ReviewStrategy:
    """A prompt format paired with the parser that understands its replies."""

    name: str
    build_conversation: Callable[[str], Conversation]
    build_response: ResponseBuilder


@dataclass
class ReviewOutcome:
    strategy: str
    result: ReviewResult
    plan: BatchPlan


# ── Response builders ────────────────────────────────────────────────────────


def xml_response_builder(replies: Sequence[str], config: ReviewConfig) -> ReviewResult:
    """Parse tagged replies (with fenced-block fallback) into a rendered review."""
    suggestions = dedup_suggestions(parse_suggestions(replies))
    return ReviewResult(
        comment=render_review_comment(config.owner, config.repo, suggestions),
        suggestions=suggestions,
    )


def plain_response_builder(replies: Sequence[str], config: ReviewConfig) -> ReviewResult:
    """Pass the replies through as the review, with no structured suggestions."""
    return ReviewResult(comment="\n".join(replies))


XML_STRATEGY = ReviewStrategy(
    name="xml",
    build_conversation=build_xml_review_conversation,
    build_response=xml_response_builder,
)

PLAIN_STRATEGY = ReviewStrategy(
    name="plain",
    build_conversation=build_plain_review_conversation,
    build_response=plain_response_builder,
)

DEFAULT_STRATEGIES = (XML_STRATEGY, PLAIN_STRATEGY)


# ── Single strategy run ──────────────────────────────────────────────────────


async def review_changes(
    files: Sequence[FileChange],
    strategy: ReviewStrategy,
    config: ReviewConfig,
    complete: CompleteFn,
) -> ReviewOutcome:
    """Plan batches, query them concurrently and build the review.

    Any failed batch request fails the whole run; a review never covers
    only part of the change set.
    """

    def conversation_for(group: Sequence[FileChange]) -> Conversation:
        return strategy.build_conversation(render_patches(group))

    plan = plan_batches(files, conversation_for, config.budget.fits)

    results = await asyncio.gather(
        *(complete(conversation_for(batch.files), None) for batch in plan.batches)
    )
    replies = [r.text for r in results]
    logger.info(
        "Strategy %s received %d reply(ies) for %d batch(es)",
        strategy.name,
        len(replies),
        len(plan.batches),
    )
    return ReviewOutcome(
        strategy=strategy.name,
        result=strategy.build_response(replies, config),
        plan=plan,
    )


# ── Strategy fallback ────────────────────────────────────────────────────────


class RunnerState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"

    def __str__(self) -> str:
        return self.value


class StrategyRunner:
    """Tries strategies in order until one completes.

    PENDING -> RUNNING -> SUCCEEDED, or RUNNING -> EXHAUSTED once the last
    strategy has failed. A runner is single-use.
    """

    def __init__(self, strategies: Sequence[ReviewStrategy] = DEFAULT_STRATEGIES):
        if not strategies:
            raise ValueError("At least one review strategy is required")
        self.strategies = tuple(strategies)
        self.state = RunnerState.PENDING
        self.attempts: list[tuple[str, Exception]] = []
        self._index = 0

    @property
    def current(self) -> Optional[ReviewStrategy]:
        if self._index < len(self.strategies):
            return self.strategies[self._index]
        return None

    def _fail(self, strategy: ReviewStrategy, error: Exception) -> None:
        self.attempts.append((strategy.name, error))
        self._index += 1
        if self.current is None:
            self.state = RunnerState.EXHAUSTED

    async def run(
        self,
        files: Sequence[FileChange],
        config: ReviewConfig,
        complete: CompleteFn,
    ) -> ReviewOutcome:
        if self.state is not RunnerState.PENDING:
            raise RuntimeError(f"StrategyRunner already used (state={self.state})")
        self.state = RunnerState.RUNNING

        while (strategy := self.current) is not None:
            logger.info(
                "Trying review strategy %s (%d/%d)",
                strategy.name,
                self._index + 1,
                len(self.strategies),
            )
            try:
                outcome = await review_changes(files, strategy, config, complete)
            except Exception as e:
                logger.warning(
                    "Review strategy %s failed, trying next one: %s", strategy.name, e
                )
                self._fail(strategy, e)
                continue
            self.state = RunnerState.SUCCEEDED
            return outcome

        logger.error("All %d review strategies failed", len(self.strategies))
        raise ReviewFailedError(self.attempts)


# ── Change-set entry point ───────────────────────────────────────────────────


async def _prefetch_contents(
    file: FileChange, source: ContentSource, base_ref: str, head_ref: str
) -> None:
    async def fetch(ref: str) -> Optional[str]:
        try:
            return await source.fetch_file_content(ref, file.filename)
        except Exception as e:
            logger.warning("Could not fetch %s at %s: %s", file.filename, ref, e)
            return None

    file.old_contents, file.current_contents = await asyncio.gather(
        fetch(base_ref), fetch(head_ref)
    )


async def process_change_set(
    files: Sequence[FileChange],
    config: ReviewConfig,
    source: ContentSource,
    base_ref: str,
    head_ref: str,
    complete: CompleteFn = llm.complete,
    include_fixes: bool = False,
    strategies: Sequence[ReviewStrategy] = DEFAULT_STRATEGIES,
) -> ChangeSetReview:
    """
    Review a change set end to end.

    Args:
        files: Changed files with their patches
        config: Owner/repo and token budget for this review
        source: Where to fetch before/after file contents from
        base_ref: Ref of the "before" side
        head_ref: Ref of the "after" side
        complete: Async completion capability
        include_fixes: Also derive inline fixes for each suggestion
        strategies: Strategy order to try

    Raises:
        ReviewFailedError: If every strategy failed
    """
    filtered = filter_files(files)
    logger.info("%d of %d file(s) remain after filtering", len(filtered), len(files))
    if not filtered:
        logger.info("Nothing to review, all files were filtered out")
        return ChangeSetReview()

    if not is_valid_repo_name(config.owner) or not is_valid_repo_name(config.repo):
        logger.warning("Invalid owner or repo name format: %r/%r", config.owner, config.repo)
        return ChangeSetReview()

    await asyncio.gather(
        *(_prefetch_contents(f, source, base_ref, head_ref) for f in filtered)
    )

    outcome = await StrategyRunner(strategies).run(filtered, config, complete)
    logger.info("Review produced by strategy %s", outcome.strategy)

    fixes: list[InlineFix] = []
    if include_fixes and outcome.result.suggestions:
        by_name = {f.filename: f for f in filtered}
        targets = [
            (s, by_name[s.filename])
            for s in outcome.result.suggestions
            if s.filename in by_name
        ]
        logger.info("Deriving inline fixes for %d suggestion(s)", len(targets))
        derived = await asyncio.gather(
            *(generate_inline_fix(s, f, complete) for s, f in targets)
        )
        fixes = [fix for fix in derived if fix is not None]
        logger.info("Generated %d valid inline fix(es)", len(fixes))

    return ChangeSetReview(
        review=outcome.result,
        fixes=fixes,
        excluded_files=[f.filename for f in outcome.plan.excluded],
    )
