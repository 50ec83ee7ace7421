import asyncio
import logging

import pytest

from quickcal_bot.core.models import TriageConfig
from quickcal_bot.temporal.batch_scheduler import BatchScheduler

from conftest import START_MS, RecordingAnalyzer, make_message


@pytest.mark.asyncio
async def test_message_arms_debounce_timer(scheduler, analyzer, clock):
    scheduler.add_message("chat", make_message("sounds good to me"))

    assert scheduler.get_buffer_size("chat") == 1
    assert scheduler.has_pending_timer("chat")
    assert [t.due_at for t in clock.armed] == [START_MS + 45_000]

    clock.advance(45_000)
    await scheduler.wait_idle()

    assert len(analyzer.calls) == 1
    assert analyzer.texts() == ["sounds good to me"]
    assert scheduler.get_buffer_size("chat") == 0
    assert scheduler.get_last_flushed_at("chat") == START_MS + 45_000
    assert scheduler.stats["timer_flushes"] == 1


@pytest.mark.asyncio
async def test_full_batch_flushes_synchronously(scheduler, analyzer, clock):
    for i in range(9):
        scheduler.add_message("chat", make_message(f"chatter number {i}"))
    assert scheduler.get_buffer_size("chat") == 9
    assert scheduler.has_pending_timer("chat")

    scheduler.add_message("chat", make_message("chatter number 9"))

    assert scheduler.get_buffer_size("chat") == 0
    assert not scheduler.has_pending_timer("chat")
    assert clock.armed == []

    await scheduler.wait_idle()
    assert len(analyzer.calls) == 1
    assert analyzer.texts() == [f"chatter number {i}" for i in range(10)]
    assert scheduler.stats["size_flushes"] == 1


@pytest.mark.asyncio
async def test_high_priority_message_flushes_immediately(scheduler, analyzer, clock):
    scheduler.add_message("chat", make_message("urgent meeting asap"))

    assert scheduler.get_buffer_size("chat") == 0
    assert clock.armed == []
    await scheduler.wait_idle()
    assert analyzer.texts() == ["urgent meeting asap"]
    assert scheduler.stats["priority_flushes"] == 1


@pytest.mark.asyncio
async def test_priority_flush_includes_earlier_pending_messages(scheduler, analyzer):
    scheduler.add_message("chat", make_message("hey everyone"))
    scheduler.add_message("chat", make_message("can you book an appointment for us"))

    await scheduler.wait_idle()
    assert analyzer.texts() == ["hey everyone", "can you book an appointment for us"]


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Please schedule the team meeting", True),
        ("BOOK me an APPOINTMENT", True),
        ("zoom call tomorrow?", True),
        ("sending a calendar invite now", True),
        ("need this ASAP", True),
        ("meeting to schedule", False),
        ("lunch tomorrow?", False),
    ],
)
def test_is_high_priority(text, expected):
    assert BatchScheduler.is_high_priority(text) is expected


@pytest.mark.asyncio
async def test_new_message_restarts_debounce(scheduler, analyzer, clock):
    scheduler.add_message("chat", make_message("first message"))
    clock.advance(44_000)
    scheduler.add_message("chat", make_message("second message", timestamp=START_MS + 44_000))

    clock.advance(1_000)  # original deadline from the first message
    await scheduler.wait_idle()
    assert analyzer.calls == []
    assert scheduler.get_buffer_size("chat") == 2

    clock.advance(43_999)
    await scheduler.wait_idle()
    assert analyzer.calls == []

    clock.advance(1)
    await scheduler.wait_idle()
    assert analyzer.texts() == ["first message", "second message"]
    assert scheduler.get_last_flushed_at("chat") == START_MS + 44_000 + 45_000


@pytest.mark.asyncio
async def test_at_most_one_timer_per_conversation(scheduler, clock):
    for i in range(5):
        scheduler.add_message("chat", make_message(f"chatter number {i}"))
    scheduler.add_message("other", make_message("other chat message"))

    assert len(clock.armed) == 2


@pytest.mark.asyncio
async def test_conversations_are_independent(scheduler, analyzer, clock):
    scheduler.add_message("a", make_message("message for a"))
    clock.advance(20_000)
    scheduler.add_message("b", make_message("message for b"))

    clock.advance(25_000)
    await scheduler.wait_idle()
    assert [call[0] for call in analyzer.calls] == ["a"]

    clock.advance(20_000)
    await scheduler.wait_idle()
    assert [call[0] for call in analyzer.calls] == ["a", "b"]


@pytest.mark.asyncio
async def test_flush_with_nothing_pending_is_noop(scheduler, analyzer):
    assert scheduler.flush("missing") is None

    scheduler.add_message("chat", make_message("urgent meeting asap"))
    await scheduler.wait_idle()
    assert scheduler.flush("chat") is None
    assert len(analyzer.calls) == 1


@pytest.mark.asyncio
async def test_context_provider_supplies_context(analyzer, clock):
    context = [make_message("earlier message")]
    scheduler = BatchScheduler(
        analyzer=analyzer,
        context_provider=lambda cid: context if cid == "chat" else [],
        clock=clock.now,
        timer_factory=clock.call_later,
    )

    scheduler.add_message("chat", make_message("urgent meeting asap"))
    await scheduler.wait_idle()

    assert [m.text for m in analyzer.calls[0][2]] == ["earlier message"]


@pytest.mark.asyncio
async def test_analyzer_failure_is_swallowed_and_batch_dropped(clock, caplog):
    analyzer = RecordingAnalyzer(error=RuntimeError("LLM down"))
    dropped = []
    scheduler = BatchScheduler(
        analyzer=analyzer,
        clock=clock.now,
        timer_factory=clock.call_later,
        on_flush_error=lambda cid, messages, error: dropped.append((cid, len(messages), str(error))),
    )

    with caplog.at_level(logging.ERROR):
        scheduler.add_message("chat", make_message("urgent meeting asap"))
        await scheduler.wait_idle()

    assert dropped == [("chat", 1, "LLM down")]
    assert scheduler.get_buffer_size("chat") == 0
    assert scheduler.stats["batches_failed"] == 1
    assert "Failed to process message batch for chat" in caplog.text

    # Nothing is retried
    clock.advance(120_000)
    await scheduler.wait_idle()
    assert len(analyzer.calls) == 1


@pytest.mark.asyncio
async def test_async_flush_error_hook_is_awaited(clock):
    seen = []

    async def on_error(conversation_id, messages, error):
        seen.append(conversation_id)

    scheduler = BatchScheduler(
        analyzer=RecordingAnalyzer(error=ValueError("bad reply")),
        clock=clock.now,
        timer_factory=clock.call_later,
        on_flush_error=on_error,
    )
    scheduler.add_message("chat", make_message("urgent meeting asap"))
    await scheduler.wait_idle()

    assert seen == ["chat"]


@pytest.mark.asyncio
async def test_failing_hook_does_not_escape(clock, caplog):
    def on_error(conversation_id, messages, error):
        raise RuntimeError("metrics backend down")

    scheduler = BatchScheduler(
        analyzer=RecordingAnalyzer(error=ValueError("bad reply")),
        clock=clock.now,
        timer_factory=clock.call_later,
        on_flush_error=on_error,
    )
    with caplog.at_level(logging.ERROR):
        scheduler.add_message("chat", make_message("urgent meeting asap"))
        await scheduler.wait_idle()

    assert "Flush error hook failed for chat" in caplog.text


@pytest.mark.asyncio
async def test_discard_cancels_timer_and_drops_messages(scheduler, analyzer, clock):
    scheduler.add_message("chat", make_message("sounds good to me"))

    assert scheduler.discard("chat") == 1
    assert clock.armed == []
    assert "chat" not in scheduler

    clock.advance(60_000)
    await scheduler.wait_idle()
    assert analyzer.calls == []
    assert scheduler.discard("chat") == 0


@pytest.mark.asyncio
async def test_flush_all_processes_every_pending_buffer(scheduler, analyzer, clock):
    scheduler.add_message("a", make_message("message for a"))
    scheduler.add_message("b", make_message("message for b"))

    await scheduler.flush_all()

    assert sorted(call[0] for call in analyzer.calls) == ["a", "b"]
    assert clock.armed == []


@pytest.mark.asyncio
async def test_cancel_all_stops_timers_without_flushing(scheduler, analyzer, clock):
    scheduler.add_message("a", make_message("message for a"))
    scheduler.cancel_all()

    clock.advance(60_000)
    await scheduler.wait_idle()
    assert analyzer.calls == []
    assert scheduler.get_pending_messages("a")[0].text == "message for a"


@pytest.mark.asyncio
async def test_default_asyncio_timer_fires():
    analyzer = RecordingAnalyzer()
    scheduler = BatchScheduler(analyzer=analyzer, config=TriageConfig(batch_timeout_ms=20))

    scheduler.add_message("chat", make_message("sounds good to me"))
    await asyncio.sleep(0.2)
    await scheduler.wait_idle()

    assert analyzer.texts() == ["sounds good to me"]


@pytest.mark.asyncio
async def test_default_asyncio_timer_is_cancelled_by_new_message():
    analyzer = RecordingAnalyzer()
    scheduler = BatchScheduler(analyzer=analyzer, config=TriageConfig(batch_timeout_ms=100))

    scheduler.add_message("chat", make_message("first message"))
    await asyncio.sleep(0.05)
    scheduler.add_message("chat", make_message("second message"))
    await asyncio.sleep(0.3)
    await scheduler.wait_idle()

    assert len(analyzer.calls) == 1
    assert analyzer.texts() == ["first message", "second message"]


def test_priority_flush_without_event_loop_runs_inline(scheduler, analyzer):
    scheduler.add_message("chat", make_message("urgent meeting asap"))

    assert analyzer.texts() == ["urgent meeting asap"]
    assert scheduler.get_buffer_size("chat") == 0
    assert scheduler.stats["batches_flushed"] == 1
    assert scheduler.stats["priority_flushes"] == 1


def test_size_flush_without_event_loop_runs_inline(scheduler, analyzer, clock):
    for i in range(10):
        scheduler.add_message("chat", make_message(f"chatter number {i}"))

    assert len(analyzer.calls) == 1
    assert clock.armed == []
    assert scheduler.stats["size_flushes"] == 1


def test_timer_flush_without_event_loop_runs_inline(scheduler, analyzer, clock):
    scheduler.add_message("chat", make_message("sounds good to me"))
    assert analyzer.calls == []

    clock.advance(45_000)

    assert analyzer.texts() == ["sounds good to me"]
    assert scheduler.get_last_flushed_at("chat") == START_MS + 45_000
    assert scheduler.stats["timer_flushes"] == 1


def test_analyzer_failure_without_event_loop_reaches_hook(clock):
    dropped = []
    scheduler = BatchScheduler(
        analyzer=RecordingAnalyzer(error=RuntimeError("LLM down")),
        clock=clock.now,
        timer_factory=clock.call_later,
        on_flush_error=lambda cid, messages, error: dropped.append(str(error)),
    )

    scheduler.add_message("chat", make_message("urgent meeting asap"))

    assert dropped == ["LLM down"]
    assert scheduler.stats["batches_failed"] == 1


def test_failed_dispatch_keeps_batch_pending(clock, caplog):
    analyzer = RecordingAnalyzer()
    dropped = []

    def broken_runner(coro):
        raise RuntimeError("no running event loop")

    scheduler = BatchScheduler(
        analyzer=analyzer,
        clock=clock.now,
        timer_factory=clock.call_later,
        on_flush_error=lambda cid, messages, error: dropped.append((cid, len(messages), str(error))),
        task_runner=broken_runner,
    )

    with caplog.at_level(logging.ERROR):
        scheduler.add_message("chat", make_message("urgent meeting asap"))

    assert analyzer.calls == []
    assert dropped == [("chat", 1, "no running event loop")]
    assert scheduler.get_pending_messages("chat")[0].text == "urgent meeting asap"
    assert scheduler.get_last_flushed_at("chat") == START_MS
    assert scheduler.stats["batches_flushed"] == 0
    assert scheduler.stats["priority_flushes"] == 0
    assert scheduler.stats["batches_failed"] == 1
    assert "Failed to dispatch message batch for chat" in caplog.text


@pytest.mark.asyncio
async def test_injected_task_runner_is_used(analyzer, clock):
    started = []

    def runner(coro):
        started.append(coro)
        return asyncio.get_running_loop().create_task(coro)

    scheduler = BatchScheduler(
        analyzer=analyzer,
        clock=clock.now,
        timer_factory=clock.call_later,
        task_runner=runner,
    )
    scheduler.add_message("chat", make_message("urgent meeting asap"))
    await scheduler.wait_idle()

    assert len(started) == 1
    assert analyzer.texts() == ["urgent meeting asap"]
