"""Batch planning: split changed files into requests that fit the token budget."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Sequence

from review_agent.config import IGNORED_EXTENSIONS, IGNORED_FILENAMES
from review_agent.diff_parser import strip_removed_lines
from review_agent.models import Batch, BatchPlan, Conversation, FileChange
from review_agent.patches import render_patch
from review_agent.tokens import estimate_tokens

logger = logging.getLogger(__name__)

ConversationBuilder = Callable[[Sequence[FileChange]], Conversation]
BudgetCheck = Callable[[Conversation], bool]


def filter_files(files: Sequence[FileChange]) -> list[FileChange]:
    """Drop lockfiles, manifests, docs, media and extension-less files."""
    kept: list[FileChange] = []
    for f in files:
        basename = f.filename.lower().rsplit("/", 1)[-1]
        if basename in IGNORED_FILENAMES:
            logger.info("Filtering out ignored file: %s", f.filename)
            continue
        if not f.extension:
            logger.info("Filtering out file with no extension: %s", f.filename)
            continue
        if f.extension in IGNORED_EXTENSIONS:
            logger.info(
                "Filtering out file with ignored extension: %s (.%s)",
                f.filename,
                f.extension,
            )
            continue
        kept.append(f)
    return kept


def group_by_extension(files: Sequence[FileChange]) -> dict[str, list[FileChange]]:
    groups: dict[str, list[FileChange]] = {}
    for f in files:
        groups.setdefault(f.extension, []).append(f)
    return groups


def plan_batches(
    files: Sequence[FileChange],
    build_conversation: ConversationBuilder,
    fits: BudgetCheck,
) -> BatchPlan:
    """Partition files into batches whose conversations pass ``fits``.

    Every input file ends up in exactly one batch, or in ``excluded`` when
    even its deletion-stripped patch is over budget on its own.
    """
    plan = BatchPlan()
    if not files:
        return plan

    for f in files:
        f.patch_token_length = estimate_tokens(render_patch(f))

    within: list[FileChange] = []
    outside: list[FileChange] = []
    for f in files:
        if fits(build_conversation([f])):
            within.append(f)
        else:
            outside.append(f)

    logger.info(
        "Files within limits: %d, over limits on their own: %d",
        len(within),
        len(outside),
    )

    plan.batches.extend(_pack_within_limit(within, build_conversation, fits))

    degraded, excluded = _pack_outside_limit(outside, build_conversation, fits)
    plan.batches.extend(degraded)
    plan.excluded.extend(excluded)

    logger.info(
        "Planned %d batch(es) for %d file(s), %d excluded",
        len(plan.batches),
        len(files),
        len(plan.excluded),
    )
    return plan


def _pack_within_limit(
    files: Sequence[FileChange],
    build_conversation: ConversationBuilder,
    fits: BudgetCheck,
    degraded: bool = False,
) -> list[Batch]:
    """Pack files that each fit alone.

    Whole set first, then per-extension groups, then a greedy smallest-first
    fill inside any extension group that is still too large.
    """
    if not files:
        return []

    if fits(build_conversation(files)):
        return [Batch(files=tuple(files), degraded=degraded)]

    batches: list[Batch] = []
    for extension, group in group_by_extension(files).items():
        if fits(build_conversation(group)):
            batches.append(Batch(files=tuple(group), degraded=degraded))
            continue

        logger.info(
            "Extension group .%s (%d files) exceeds model limit, packing greedily",
            extension,
            len(group),
        )
        current: list[FileChange] = []
        for f in sorted(group, key=lambda g: g.patch_token_length):
            if fits(build_conversation([*current, f])):
                current.append(f)
                continue
            if current:
                batches.append(Batch(files=tuple(current), degraded=degraded))
            current = [f]
        if current:
            batches.append(Batch(files=tuple(current), degraded=degraded))

    return batches


def _pack_outside_limit(
    files: Sequence[FileChange],
    build_conversation: ConversationBuilder,
    fits: BudgetCheck,
) -> tuple[list[Batch], list[FileChange]]:
    """Retry oversized files with their deletion lines stripped.

    Returns the degraded batches and the files that still do not fit alone.
    """
    if not files:
        return [], []

    stripped: list[FileChange] = []
    for f in files:
        copy = dataclasses.replace(f, patch=strip_removed_lines(f.patch))
        copy.patch_token_length = estimate_tokens(render_patch(copy))
        stripped.append(copy)

    if fits(build_conversation(stripped)):
        return [Batch(files=tuple(stripped), degraded=True)], []

    fitting: list[FileChange] = []
    excluded: list[FileChange] = []
    for original, copy in zip(files, stripped):
        if fits(build_conversation([copy])):
            fitting.append(copy)
        else:
            logger.warning(
                "Excluding %s from review: patch is ~%d tokens even without "
                "removed lines and does not fit the model context",
                original.filename,
                copy.patch_token_length,
            )
            excluded.append(original)

    return _pack_within_limit(fitting, build_conversation, fits, degraded=True), excluded
