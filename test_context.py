"""
Tests for agent/history.py, agent/cache.py and agent/context.py
"""
import pytest

from agent.cache import HotMessageStore, ResultCache, SUMMARY_TTL, TOOL_RESULT_TTL
from agent.context import CompactionSummary, ContextWindowManager
from agent.errors import FatalError
from agent.history import (
    HeuristicSummarizer,
    Message,
    ModelSummarizer,
    SummaryResult,
    TokenAccountant,
    ToolCall,
)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FixedSummarizer:
    def __init__(self, summary="Summary of earlier work.", key_points=None):
        self.summary = summary
        self.key_points = key_points or []
        self.calls = 0

    async def summarize(self, messages):
        self.calls += 1
        return SummaryResult(summary=self.summary, key_points=list(self.key_points))


def long_text(n_chars: int = 1000) -> str:
    return ("lorem ipsum " * (n_chars // 12 + 1))[:n_chars]


def filled_manager(count: int = 10, max_tokens: int = 100000, **kwargs) -> ContextWindowManager:
    manager = ContextWindowManager("session-1", max_tokens, **kwargs)
    for i in range(count):
        role = "user" if i % 2 == 0 else "assistant"
        manager.append(Message(role=role, content=long_text()))
    return manager


class TestTokenAccountant:

    def test_estimates_are_deterministic(self):
        acc = TokenAccountant()
        assert acc.estimate_tokens("") == 0
        assert acc.estimate_tokens("a") == 1
        assert acc.estimate_tokens("abcdefg") == 2
        # 4 overhead + "user" (1) + content (2)
        assert acc.message_tokens(Message(role="user", content="abcdefg")) == 7

    def test_structured_content_uses_sorted_serialization(self):
        acc = TokenAccountant()
        a = Message(role="user", content=[{"type": "text", "text": "hi", "extra": 1}])
        b = Message(role="user", content=[{"extra": 1, "text": "hi", "type": "text"}])
        assert acc.message_tokens(a) == acc.message_tokens(b)

    def test_tool_calls_add_to_message_cost(self):
        acc = TokenAccountant()
        plain = Message(role="assistant", content="running")
        with_call = Message(
            role="assistant",
            content="running",
            tool_calls=[ToolCall(id="call_1", name="read_file", arguments={"path": "a.py"})],
        )
        assert acc.message_tokens(with_call) > acc.message_tokens(plain)
        assert acc.message_tokens(with_call) - acc.message_tokens(plain) == acc.tool_call_tokens(
            with_call.tool_calls[0]
        )

    def test_unknown_role_rejected(self):
        with pytest.raises(ValueError):
            Message(role="robot", content="beep")


class TestHotMessageStore:

    def test_evicts_down_to_retain_ratio(self):
        store = HotMessageStore(max_size=10)
        dropped = [store.add(Message(role="user", content=str(i))) for i in range(11)]

        assert dropped[:10] == [0] * 10
        assert dropped[10] == 3
        assert len(store) == 8
        assert store.evicted == 3
        assert store.recent(1)[0].content == "10"
        assert store.recent()[0].content == "3"


class TestResultCache:

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = ResultCache(default_ttl=10, clock=clock)
        cache.set("k", "v")
        assert cache.get("k") == "v"
        assert cache.remaining_ttl("k") == 10

        clock.now = 11
        assert cache.get("k") is None
        assert not cache.has("k")
        assert cache.size() == 0

    def test_evicts_lowest_recency_frequency_score(self):
        clock = FakeClock()
        cache = ResultCache(max_size=2, default_ttl=1000, clock=clock)
        cache.set("old", 1)
        cache.get("old")
        clock.now = 100
        cache.set("new", 2)
        cache.get("new")

        cache.set("third", 3)
        assert not cache.has("old")
        assert cache.has("new")
        assert cache.has("third")

    def test_never_accessed_entry_evicted_first(self):
        cache = ResultCache(max_size=2, clock=FakeClock())
        cache.set("used", 1)
        cache.get("used")
        cache.set("unused", 2)
        cache.set("fresh", 3)
        assert cache.has("used")
        assert not cache.has("unused")

    def test_cleanup_and_stats(self):
        clock = FakeClock()
        cache = ResultCache(clock=clock)
        cache.set("short", 1, ttl=5)
        cache.set("long", 2, ttl=50)
        cache.get("long")
        cache.get("missing")

        clock.now = 10
        assert cache.cleanup() == 1
        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["top_keys"][0]["key"] == "long"

    def test_typed_keys_and_ttls(self):
        clock = FakeClock()
        cache = ResultCache(clock=clock)
        key = cache.tool_key("read_file", {"path": "a.py", "limit": 5})
        assert key == cache.tool_key("read_file", {"limit": 5, "path": "a.py"})
        assert key.startswith("tool:read_file:")
        assert len(key.split(":")[-1]) == 16

        cache.cache_tool_result("read_file", {"path": "a.py"}, "contents")
        covered = [Message(role="user", content="fix the bug"), Message(role="assistant", content="done")]
        cache.cache_summary("session-1", covered, "summary")
        key = cache.summary_key("session-1", covered)
        assert key.startswith("summary:session-1:2:")
        assert key != cache.summary_key("session-1", [Message(role="user", content="other"), covered[1]])
        assert cache.remaining_ttl(cache.tool_key("read_file", {"path": "a.py"})) == TOOL_RESULT_TTL
        assert cache.remaining_ttl(key) == SUMMARY_TTL

        clock.now = SUMMARY_TTL + 1
        assert cache.get_summary("session-1", covered) is None
        assert cache.get_tool_result("read_file", {"path": "a.py"}) == "contents"


class TestContextAccounting:

    def test_append_tracks_total(self):
        manager = ContextWindowManager("s", 1000)
        cost = manager.append(Message(role="user", content="hello there"))
        assert manager.token_count() == cost
        assert manager.recompute_tokens() == cost
        manager.verify()

    def test_should_compact_at_exact_threshold(self):
        sample = Message(role="user", content=long_text(70))
        cost = TokenAccountant().message_tokens(sample)

        at_limit = ContextWindowManager("s", cost * 2)
        at_limit.append(sample)
        assert at_limit.compaction_limit(0.5) == cost
        assert at_limit.should_compact(0.5)

        below = ContextWindowManager("s", cost * 2 + 2)
        below.append(sample)
        assert not below.should_compact(0.5)

    def test_drift_is_fatal(self):
        manager = filled_manager(3)
        manager.window.token_usage.total += 5
        with pytest.raises(FatalError):
            manager.verify()

    def test_record_usage_kept_apart_from_total(self):
        manager = filled_manager(2)
        total = manager.token_count()
        manager.record_usage(input_tokens=500, output_tokens=40)
        assert manager.token_count() == total
        assert manager.window.token_usage.input == 500
        assert manager.window.token_usage.output == 40

    def test_record_tool_call_tracks_files(self):
        manager = ContextWindowManager("s", 1000, max_tool_history=2)
        for i in range(3):
            manager.record_tool_call(ToolCall(id=f"c{i}", name="read_file", arguments={"path": f"f{i}.py"}), True, "x")
        assert [r.tool_call_id for r in manager.window.tool_history.recent_calls] == ["c1", "c2"]
        assert manager.window.workspace.current_files == ["f0.py", "f1.py", "f2.py"]


class TestCompaction:

    @pytest.mark.asyncio
    async def test_compaction_strictly_reduces_and_recomputes(self):
        manager = filled_manager(10)
        before = manager.token_count()

        result = await manager.compact(HeuristicSummarizer(), keep_recent=2)

        assert result is not None
        assert result.pre_tokens == before
        assert result.post_tokens < before
        assert manager.token_count() == result.post_tokens
        assert manager.token_count() == manager.recompute_tokens()
        assert len(manager.messages) == 2
        assert manager.summary.compacted_count == 8
        assert result.compacted_messages == 8

    @pytest.mark.asyncio
    async def test_orphaned_tool_messages_are_dropped(self):
        manager = ContextWindowManager("s", 100000)
        manager.append(Message(role="user", content=long_text()))
        manager.append(Message(
            role="assistant",
            content=long_text(),
            tool_calls=[ToolCall(id="c1", name="read_file", arguments={"path": "a.py"})],
        ))
        manager.append(Message(role="tool", content=long_text(), tool_call_id="c1"))
        manager.append(Message(role="user", content=long_text()))
        manager.append(Message(role="assistant", content=long_text()))

        result = await manager.compact(FixedSummarizer(), keep_recent=3)

        assert [m.role for m in manager.messages] == ["user", "assistant"]
        assert result.retained_messages == 2
        assert result.compacted_messages == 3

    @pytest.mark.asyncio
    async def test_nothing_to_compact(self):
        manager = filled_manager(1)
        assert await manager.compact(FixedSummarizer(), keep_recent=6) is None

    @pytest.mark.asyncio
    async def test_repeated_compaction_merges_summaries(self):
        manager = filled_manager(6)
        await manager.compact(FixedSummarizer("First pass.", ["a"]), keep_recent=2)
        for _ in range(4):
            manager.append(Message(role="user", content=long_text()))

        await manager.compact(FixedSummarizer("Second pass.", ["b"]), keep_recent=2)

        summary = manager.summary
        assert summary.compacted_count == 8
        assert "First pass." in summary.summary and "Second pass." in summary.summary
        assert summary.key_points == ["a", "b"]
        assert manager.token_count() == manager.recompute_tokens()

    @pytest.mark.asyncio
    async def test_compaction_that_cannot_shrink_is_fatal(self):
        manager = ContextWindowManager("s", 100000)
        for text in ("a", "b", "c"):
            manager.append(Message(role="user", content=text))
        before = manager.token_count()

        with pytest.raises(FatalError):
            await manager.compact(FixedSummarizer("x" * 2000), keep_recent=1)

        assert len(manager.messages) == 3
        assert manager.token_count() == before
        assert manager.summary is None

    @pytest.mark.asyncio
    async def test_summary_is_cached(self):
        cache = ResultCache()
        manager = filled_manager(8, cache=cache)
        old = list(manager.messages[:6])
        summarizer = FixedSummarizer()

        await manager.compact(summarizer, keep_recent=2)

        assert summarizer.calls == 1
        assert cache.get_summary("session-1", old).summary == "Summary of earlier work."

    @pytest.mark.asyncio
    async def test_new_messages_at_same_count_are_summarized(self):
        class BatchSummarizer:
            def __init__(self):
                self.seen = []

            async def summarize(self, messages):
                self.seen.append([m.content for m in messages])
                return SummaryResult(summary=f"summary of {messages[0].content}")

        cache = ResultCache()
        manager = ContextWindowManager("session-1", 100000, cache=cache)
        for i in range(8):
            manager.append(Message(role="user", content=f"batchA-{i} " + long_text(400)))
        summarizer = BatchSummarizer()
        await manager.compact(summarizer, keep_recent=2)

        for i in range(6):
            manager.append(Message(role="user", content=f"batchB-{i} " + long_text(400)))
        assert len(manager.messages) == 8
        await manager.compact(summarizer, keep_recent=2)

        assert len(summarizer.seen) == 2
        assert summarizer.seen[1][0].startswith("batchA-6")
        assert any(text.startswith("batchB-0") for text in summarizer.seen[1])
        assert "summary of batchA-6" in manager.summary.summary

    @pytest.mark.asyncio
    async def test_model_summarizer_falls_back_on_error(self):
        class BrokenClient:
            async def send(self, messages, model_params=None):
                raise RuntimeError("model unavailable")

        summarizer = ModelSummarizer(BrokenClient())
        result = await summarizer.summarize([Message(role="user", content="fix the bug")])
        assert "Requested: fix the bug" in result.key_points

    @pytest.mark.asyncio
    async def test_model_summarizer_parses_key_points(self):
        class Client:
            def send(self, messages, model_params=None):
                assert model_params["max_tokens"] == 2000
                return {"content": "Working on the parser.\n- fixed tokenizer\n- tests pending", "usage": {}}

        result = await ModelSummarizer(Client()).summarize([Message(role="user", content="hi")])
        assert result.key_points == ["fixed tokenizer", "tests pending"]


class TestFormatting:

    def test_trims_oldest_first(self):
        manager = ContextWindowManager("s", 100000, system_prompt="sys")
        for i in range(5):
            role = "user" if i % 2 == 0 else "assistant"
            manager.append(Message(role=role, content=f"{i}" + "x" * 349))

        messages, trimmed = manager.get_formatted(max_tokens=250)

        assert trimmed
        assert [m["role"] for m in messages] == ["system", "assistant", "user"]
        assert messages[-1]["content"].startswith("4")
        assert len(manager.messages) == 5

    def test_untrimmed_includes_summary_and_digests(self):
        manager = ContextWindowManager("s", 100000, system_prompt="sys")
        manager.window.conversation.summary = CompactionSummary(summary="Earlier: set up project.")
        manager.append(Message(role="user", content="next"))
        manager.record_tool_call(ToolCall(id="c1", name="read_file", arguments={"path": "a.py"}), True, "x")

        messages, trimmed = manager.get_formatted(include_tools=True, include_workspace=True)

        assert not trimmed
        assert messages[0] == {"role": "system", "content": "sys"}
        assert messages[1]["content"].startswith("<conversation_summary>")
        assert messages[2]["content"] == "next"
        assert "<recent_tool_calls>" in messages[3]["content"]
        assert "a.py" in messages[4]["content"]


class TestSnapshot:

    @pytest.mark.asyncio
    async def test_restore_recomputes_totals(self):
        manager = filled_manager(6, system_prompt="sys")
        await manager.compact(FixedSummarizer(), keep_recent=2)
        manager.record_usage(10, 5)
        data = manager.snapshot()
        data["token_usage"]["total"] = 1

        restored = ContextWindowManager("session-1", 100000)
        restored.restore(data)

        assert restored.token_count() == manager.token_count()
        assert [m.to_dict() for m in restored.messages] == [m.to_dict() for m in manager.messages]
        assert restored.summary.summary == manager.summary.summary
        assert restored.window.system.prompt == "sys"
        assert restored.window.token_usage.input == 10
        assert len(restored.hot_store) == 2
        restored.verify()

    def test_summary_dict_uses_camel_case_keys(self):
        summary = CompactionSummary(
            summary="s",
            key_points=["k"],
            recent_messages=[Message(role="user", content="m")],
            compacted_count=3,
        )
        data = summary.to_dict()
        assert set(data) == {"summary", "keyPoints", "recentMessages", "compactedCount"}
        assert CompactionSummary.from_dict(data).recent_messages[0].content == "m"
