import asyncio
import json

import pytest

from review_agent.analyzer import (
    DEFAULT_STRATEGIES,
    ReviewConfig,
    ReviewFailedError,
    ReviewStrategy,
    RunnerState,
    StrategyRunner,
    plain_response_builder,
    process_change_set,
    review_changes,
    xml_response_builder,
)
from review_agent.models import CompletionResult, Conversation, FileChange, Message, ToolCall
from review_agent.prompts import (
    INLINE_FIX_SYSTEM,
    INLINE_FIX_TOOL,
    NO_SUGGESTIONS_COMMENT,
    PLAIN_REVIEW_SYSTEM,
    XML_REVIEW_SYSTEM,
)
from review_agent.sources import StaticContentSource
from review_agent.tokens import TokenBudget

pytestmark = pytest.mark.asyncio

PATCH = "@@ -1,3 +1,3 @@\n def f():\n-    a = 1\n+    a = 2\n     return a"
CURRENT = "def f():\n    a = 2\n    return a\n"
PREVIOUS = "def f():\n    a = 1\n    return a\n"

XML_REPLY = """<review>
  <suggestion>
    <describe>Name the constant</describe>
    <type>readability</type>
    <comment>Magic numbers are hard to follow.</comment>
    <code>```python
    value = DEFAULT_VALUE
    ```</code>
    <filename>src/app.py</filename>
  </suggestion>
  <suggestion>
    <describe>Unrelated</describe>
    <type>style</type>
    <comment>A file outside the change set.</comment>
    <code>pass</code>
    <filename>ghost.py</filename>
  </suggestion>
</review>"""


class FakeService:
    """Answers review, fallback and inline-fix requests by system prompt."""

    def __init__(self, xml_reply=XML_REPLY, plain_reply="Looks fine overall.", fail=(), fix=None):
        self.xml_reply = xml_reply
        self.plain_reply = plain_reply
        self.fail = set(fail)
        self.fix = fix
        self.calls = []

    async def __call__(self, conversation, tool_spec=None):
        system = conversation.system_prompt
        self.calls.append(system)
        if system == XML_REVIEW_SYSTEM:
            if "xml" in self.fail:
                raise RuntimeError("Bedrock API error: throttled")
            return CompletionResult(text=self.xml_reply)
        if system == PLAIN_REVIEW_SYSTEM:
            if "plain" in self.fail:
                raise RuntimeError("Bedrock API error: throttled")
            return CompletionResult(text=self.plain_reply)
        if system == INLINE_FIX_SYSTEM:
            assert tool_spec is INLINE_FIX_TOOL
            return CompletionResult(
                text="",
                tool_call=ToolCall(name=INLINE_FIX_TOOL["name"], arguments=json.dumps(self.fix)),
                stop_reason="tool_use",
            )
        if not system:
            return CompletionResult(text=self.plain_reply)
        raise AssertionError(f"Unexpected conversation: {system[:40]!r}")


def changed_files():
    return [FileChange(filename="src/app.py", patch=PATCH)]


CONFIG = ReviewConfig(owner="octo", repo="widgets")

TINY_CONFIG = ReviewConfig(
    owner="octo", repo="widgets", budget=TokenBudget(model="t", limits={"t": 150})
)

TINY_STRATEGY = ReviewStrategy(
    name="tiny",
    build_conversation=lambda diff: Conversation(messages=(Message("user", diff),)),
    build_response=plain_response_builder,
)


def padded(name, n=280):
    return FileChange(filename=name, patch="@@ -1 +1 @@\n+" + "x" * n)


class TestStrategyRunner:
    async def test_first_strategy_wins(self):
        runner = StrategyRunner()
        outcome = await runner.run(changed_files(), CONFIG, FakeService())

        assert outcome.strategy == "xml"
        assert runner.state is RunnerState.SUCCEEDED
        assert [s.filename for s in outcome.result.suggestions] == ["src/app.py", "ghost.py"]
        assert outcome.result.suggestions[0].code == "value = DEFAULT_VALUE"
        assert "## src/app.py" in outcome.result.comment

    async def test_falls_back_to_plain(self):
        service = FakeService(fail={"xml"})
        runner = StrategyRunner()
        outcome = await runner.run(changed_files(), CONFIG, service)

        assert outcome.strategy == "plain"
        assert outcome.result.comment == "Looks fine overall."
        assert outcome.result.suggestions == []
        assert [name for name, _ in runner.attempts] == ["xml"]

    async def test_all_strategies_fail(self):
        runner = StrategyRunner()
        with pytest.raises(ReviewFailedError) as excinfo:
            await runner.run(changed_files(), CONFIG, FakeService(fail={"xml", "plain"}))

        assert [name for name, _ in excinfo.value.attempts] == ["xml", "plain"]
        assert all(isinstance(e, RuntimeError) for _, e in excinfo.value.attempts)
        assert runner.state is RunnerState.EXHAUSTED
        assert runner.current is None

    async def test_runner_is_single_use(self):
        runner = StrategyRunner()
        await runner.run(changed_files(), CONFIG, FakeService())
        with pytest.raises(RuntimeError):
            await runner.run(changed_files(), CONFIG, FakeService())

    async def test_requires_a_strategy(self):
        with pytest.raises(ValueError):
            StrategyRunner(())

    async def test_default_order(self):
        assert [s.name for s in DEFAULT_STRATEGIES] == ["xml", "plain"]


class TestReviewChanges:
    async def test_structured_reply_without_markup_uses_fallback(self):
        reply = "Consider guarding this call against None values here.\n```python\nif a is not None:\n    go(a)\n```"
        outcome = await review_changes(
            changed_files(), DEFAULT_STRATEGIES[0], CONFIG, FakeService(xml_reply=reply)
        )
        (suggestion,) = outcome.result.suggestions
        assert suggestion.category == "improvement"
        assert suggestion.filename == "code-suggestion.py"

    async def test_duplicate_suggestions_across_batches_collapse(self):
        strategy = ReviewStrategy(
            name="tiny-xml",
            build_conversation=TINY_STRATEGY.build_conversation,
            build_response=xml_response_builder,
        )
        service = FakeService(plain_reply=XML_REPLY)
        files = [padded("a.py"), padded("b.py"), padded("c.py")]
        outcome = await review_changes(files, strategy, TINY_CONFIG, service)

        assert len(service.calls) == 3
        assert len(outcome.result.suggestions) == 2

    async def test_empty_reply_renders_default_comment(self):
        outcome = await review_changes(
            changed_files(), DEFAULT_STRATEGIES[0], CONFIG, FakeService(xml_reply="LGTM")
        )
        assert outcome.result.comment == NO_SUGGESTIONS_COMMENT

    async def test_batches_are_requested_concurrently(self):
        active = 0
        peak = 0

        async def complete(conversation, tool_spec=None):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return CompletionResult(text=conversation.messages[-1].content[:8])

        files = [padded("a.py"), padded("b.py"), padded("c.py")]
        outcome = await review_changes(files, TINY_STRATEGY, TINY_CONFIG, complete)

        assert len(outcome.plan.batches) == 3
        assert peak == 3
        assert outcome.result.comment.count("## ") == 3

    async def test_one_failed_batch_fails_the_strategy(self):
        async def complete(conversation, tool_spec=None):
            if "b.py" in conversation.messages[-1].content:
                raise RuntimeError("Bedrock API error: boom")
            return CompletionResult(text="ok")

        files = [padded("a.py"), padded("b.py"), padded("c.py")]
        with pytest.raises(ReviewFailedError):
            await StrategyRunner([TINY_STRATEGY]).run(files, TINY_CONFIG, complete)


class TestProcessChangeSet:
    async def test_everything_filtered_out(self):
        service = FakeService()
        files = [FileChange(filename="README.md", patch="+docs"), FileChange(filename="yarn.lock", patch="+x")]
        result = await process_change_set(
            files, CONFIG, StaticContentSource({}), "base", "head", complete=service
        )
        assert result.review is None
        assert service.calls == []

    async def test_invalid_owner_skips_review(self):
        service = FakeService()
        result = await process_change_set(
            changed_files(),
            ReviewConfig(owner="bad owner", repo="widgets"),
            StaticContentSource({}),
            "base",
            "head",
            complete=service,
        )
        assert result.review is None
        assert service.calls == []

    async def test_review_with_inline_fixes(self):
        service = FakeService(
            fix={"code": "a = DEFAULT_VALUE", "lineStart": 2, "lineEnd": 2, "comment": "Name it."}
        )
        source = StaticContentSource(
            {"base": {"src/app.py": PREVIOUS}, "head": {"src/app.py": CURRENT}}
        )
        files = changed_files()
        result = await process_change_set(
            files, CONFIG, source, "base", "head", complete=service, include_fixes=True
        )

        assert files[0].old_contents == PREVIOUS
        assert files[0].current_contents == CURRENT
        assert len(result.review.suggestions) == 2
        # ghost.py is not part of the change set
        (fix,) = result.fixes
        assert fix.filename == "src/app.py"
        assert fix.correction == "    a = DEFAULT_VALUE"
        assert service.calls.count(INLINE_FIX_SYSTEM) == 1
        assert result.excluded_files == []

    async def test_fixes_not_requested_by_default(self):
        service = FakeService()
        result = await process_change_set(
            changed_files(), CONFIG, StaticContentSource({}), "base", "head", complete=service
        )
        assert result.fixes == []
        assert INLINE_FIX_SYSTEM not in service.calls

    async def test_failing_source_is_tolerated(self):
        class BrokenSource:
            async def fetch_file_content(self, ref, filename):
                raise ConnectionError("unreachable")

        service = FakeService(fix={"code": "x", "lineStart": 1, "lineEnd": 1})
        result = await process_change_set(
            changed_files(), CONFIG, BrokenSource(), "base", "head",
            complete=service, include_fixes=True,
        )
        assert result.review is not None
        assert result.fixes == []

    async def test_failed_fix_request_keeps_review(self):
        class TimingOutFixes(FakeService):
            async def __call__(self, conversation, tool_spec=None):
                if conversation.system_prompt == INLINE_FIX_SYSTEM:
                    raise TimeoutError("inline fix request timed out")
                return await super().__call__(conversation, tool_spec)

        source = StaticContentSource({"head": {"src/app.py": CURRENT}})
        result = await process_change_set(
            changed_files(), CONFIG, source, "base", "head",
            complete=TimingOutFixes(), include_fixes=True,
        )
        assert result.review is not None
        assert len(result.review.suggestions) == 2
        assert result.fixes == []

    async def test_oversized_files_are_reported(self):
        service = FakeService()
        files = [padded("small.py"), padded("huge.py", 2000)]
        result = await process_change_set(
            files, TINY_CONFIG, StaticContentSource({}), "base", "head",
            complete=service, strategies=[TINY_STRATEGY],
        )
        assert result.excluded_files == ["huge.py"]
        assert result.to_dict()["excluded_files"] == ["huge.py"]

    async def test_all_strategies_failing_propagates(self):
        with pytest.raises(ReviewFailedError):
            await process_change_set(
                changed_files(), CONFIG, StaticContentSource({}), "base", "head",
                complete=FakeService(fail={"xml", "plain"}),
            )
