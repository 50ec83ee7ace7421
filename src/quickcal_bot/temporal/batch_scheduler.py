"""
Batch Scheduler - Coalesces bursts of chat messages with debounce timer logic.

Analyzing every chat message with an LLM is slow and expensive, and a single
scheduling request is often spread over several quick messages. The
BatchScheduler collects messages per conversation and hands them to the
analyzer as one batch.

The debounce pattern works as follows:
1. When a message arrives, it's appended to the conversation's buffer
2. Any armed timer for that conversation is cancelled
3. If the buffer is full or the message is urgent, the buffer flushes now
4. Otherwise a fresh timer is armed; when it fires, the buffer flushes

Flushing is fire-and-forget: the pending list is cleared synchronously and
the analyzer runs as an asyncio task. Without a running event loop the
analysis runs to completion inline instead, so the scheduler also works
from plain synchronous code. Analyzer failures are logged and the batch is
dropped, never retried.
"""

import asyncio
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Coroutine, Optional, Protocol, Union

from quickcal_bot.core.models import (
    BatchBuffer,
    InboundMessage,
    TimerHandle,
    TriageConfig,
    now_ms,
)

logger = logging.getLogger(__name__)

# Messages that skip the debounce window entirely
HIGH_PRIORITY_PATTERNS = [
    re.compile(r"schedule.*meeting", re.IGNORECASE),
    re.compile(r"book.*appointment", re.IGNORECASE),
    re.compile(r"zoom.*tomorrow", re.IGNORECASE),
    re.compile(r"calendar.*invite", re.IGNORECASE),
    re.compile(r"urgent.*meeting", re.IGNORECASE),
    re.compile(r"asap", re.IGNORECASE),
]


class BatchAnalyzer(Protocol):
    """Downstream collaborator that analyzes a flushed batch."""

    async def analyze_conversation_batch(
        self,
        conversation_id: str,
        messages: list[InboundMessage],
        context_messages: list[InboundMessage],
    ) -> Any:
        ...


# Type aliases for injected collaborators
TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
ContextProvider = Callable[[str], list[InboundMessage]]
FlushErrorHook = Callable[
    [str, list[InboundMessage], Exception], Union[None, Awaitable[None]]
]
TaskRunner = Callable[[Coroutine[Any, Any, None]], Optional[asyncio.Future]]


def asyncio_timer(delay_seconds: float, callback: Callable[[], None]) -> asyncio.Task:
    """
    Default timer: an asyncio task that sleeps, then runs the callback.

    Must be called with a running event loop. Cancelling the returned task
    cancels the timer.
    """
    async def timer_task():
        await asyncio.sleep(delay_seconds)
        callback()

    return asyncio.get_running_loop().create_task(timer_task())


class BatchScheduler:
    """
    Per-conversation debounced batching with priority override.

    Invariants:
    - At most one armed timer per conversation
    - Messages are flushed in arrival order
    - A flush with nothing pending makes no analyzer call

    Attributes:
        config: Shared timing/size limits (batch_timeout_ms, max_batch_size)
        stats: Counters for batching activity

    Example:
        scheduler = BatchScheduler(
            analyzer=LLMBatchAnalyzer(),
            context_provider=store.recent_messages,
        )
        scheduler.add_message("chat-1", InboundMessage(text="lunch asap?", sender="+15550100"))
        await scheduler.wait_idle()
    """

    def __init__(
        self,
        analyzer: BatchAnalyzer,
        context_provider: Optional[ContextProvider] = None,
        config: Optional[TriageConfig] = None,
        clock: Callable[[], int] = now_ms,
        timer_factory: Optional[TimerFactory] = None,
        on_flush_error: Optional[FlushErrorHook] = None,
        task_runner: Optional[TaskRunner] = None,
    ):
        """
        Initialize the BatchScheduler.

        Args:
            analyzer: Receives each flushed batch via analyze_conversation_batch()
            context_provider: Returns the recent-message context for a
                              conversation at flush time
            config: Timing and size limits. Defaults to TriageConfig()
            clock: Returns the current time in epoch ms
            timer_factory: Arms a delayed callback and returns a cancellable
                           handle. Defaults to an asyncio task timer.
            on_flush_error: Called with (conversation_id, messages, error)
                            when the analyzer fails or a batch cannot be
                            dispatched; may be sync or async
            task_runner: Starts the analysis coroutine of a flushed batch.
                         Defaults to an asyncio task on the running loop,
                         or an inline run when no loop is running.
        """
        self.config = config or TriageConfig()
        self._analyzer = analyzer
        self._context_provider = context_provider
        self._clock = clock
        self._timer_factory = timer_factory or asyncio_timer
        self._on_flush_error = on_flush_error
        self._task_runner = task_runner or self._spawn
        self._buffers: dict[str, BatchBuffer] = {}
        self._inflight: set[asyncio.Future] = set()
        self.stats = {
            "messages_batched": 0,
            "batches_flushed": 0,
            "batches_failed": 0,
            "size_flushes": 0,
            "priority_flushes": 0,
            "timer_flushes": 0,
        }

        logger.debug(
            f"BatchScheduler initialized: batch_timeout_ms={self.config.batch_timeout_ms}, "
            f"max_batch_size={self.config.max_batch_size}"
        )

    @staticmethod
    def is_high_priority(text: str) -> bool:
        """Check if a message should bypass the debounce window."""
        return any(pattern.search(text) for pattern in HIGH_PRIORITY_PATTERNS)

    def add_message(self, conversation_id: str, message: InboundMessage) -> None:
        """
        Add a message to the conversation's batch.

        Inside a running event loop this never waits for the analyzer: an
        immediate flush only schedules the analysis task. Never raises for a
        batch that cannot be dispatched.

        Args:
            conversation_id: Chat/thread identifier
            message: The inbound message
        """
        buffer = self._buffers.get(conversation_id)
        if buffer is None:
            buffer = BatchBuffer(last_flushed_at=self._clock())
            self._buffers[conversation_id] = buffer
            logger.debug(f"Created new batch buffer for {conversation_id}")

        buffer.pending.append(message)
        buffer.generation += 1
        self.stats["messages_batched"] += 1

        logger.debug(
            f"Added message to batch for {conversation_id}, "
            f"batch size: {len(buffer.pending)}"
        )

        self._cancel_timer(buffer)

        if len(buffer.pending) >= self.config.max_batch_size:
            logger.info(
                f"Batch for {conversation_id} reached max size ({len(buffer.pending)}), "
                f"flushing immediately"
            )
            self.flush(conversation_id, reason="size")
            return

        if self.is_high_priority(message.text):
            logger.info(f"High-priority message in {conversation_id}, flushing immediately")
            self.flush(conversation_id, reason="priority")
            return

        current_gen = buffer.generation
        buffer.timer = self._timer_factory(
            self.config.batch_timeout_ms / 1000,
            lambda: self._on_timer(conversation_id, current_gen),
        )

    def _on_timer(self, conversation_id: str, generation: int) -> None:
        buffer = self._buffers.get(conversation_id)
        if buffer is None:
            logger.debug(f"Timer fired for evicted conversation {conversation_id}, skipping")
            return
        if buffer.generation != generation:
            logger.debug(
                f"Timer for {conversation_id} is stale "
                f"(gen {generation} vs {buffer.generation}), skipping flush"
            )
            return

        buffer.timer = None
        self.flush(conversation_id, reason="timer")

    @staticmethod
    def _cancel_timer(buffer: BatchBuffer) -> None:
        if buffer.timer is not None:
            buffer.timer.cancel()
            buffer.timer = None

    def flush(
        self, conversation_id: str, reason: Optional[str] = None
    ) -> Optional[asyncio.Future]:
        """
        Hand the pending batch to the analyzer.

        The pending list is cleared before the analyzer runs, so the batch
        counts as processed whether or not analysis succeeds. If the
        analysis cannot be started at all, the messages go back to the
        buffer, the failure is logged and reported to on_flush_error, and
        they stay pending until the next message or flush.

        Args:
            conversation_id: Chat/thread identifier
            reason: "size", "priority" or "timer"; counted in stats

        Returns:
            The analysis task, or None if there was nothing to flush or the
            analysis already ran inline
        """
        buffer = self._buffers.get(conversation_id)
        if buffer is None or not buffer.pending:
            logger.debug(f"No messages to flush for {conversation_id}")
            return None

        self._cancel_timer(buffer)
        messages = buffer.pending
        buffer.pending = []

        context = self._context_provider(conversation_id) if self._context_provider else []

        logger.info(f"Processing batch for {conversation_id}: {len(messages)} message(s)")

        analysis = self._run_analysis(conversation_id, messages, context)
        try:
            task = self._task_runner(analysis)
        except Exception as e:
            analysis.close()
            buffer.pending = messages + buffer.pending
            self.stats["batches_failed"] += 1
            logger.error(f"Failed to dispatch message batch for {conversation_id}: {e}")
            self._track(self._spawn(self._notify_flush_error(conversation_id, messages, e)))
            return None

        buffer.last_flushed_at = self._clock()
        self.stats["batches_flushed"] += 1
        if reason is not None:
            self.stats[f"{reason}_flushes"] += 1

        self._track(task)
        return task

    def _track(self, task: Optional[asyncio.Future]) -> None:
        if isinstance(task, asyncio.Future) and not task.done():
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coro)
            return None
        return loop.create_task(coro)

    async def _run_analysis(
        self,
        conversation_id: str,
        messages: list[InboundMessage],
        context: list[InboundMessage],
    ) -> None:
        try:
            await self._analyzer.analyze_conversation_batch(conversation_id, messages, context)
            logger.debug(f"Batch analysis completed for {conversation_id}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats["batches_failed"] += 1
            logger.error(
                f"Failed to process message batch for {conversation_id}: {e}. "
                f"Messages were: {[m.text[:50] for m in messages]}"
            )
            await self._notify_flush_error(conversation_id, messages, e)

    async def _notify_flush_error(
        self,
        conversation_id: str,
        messages: list[InboundMessage],
        error: Exception,
    ) -> None:
        if self._on_flush_error is None:
            return
        try:
            result = self._on_flush_error(conversation_id, messages, error)
            if inspect.isawaitable(result):
                await result
        except Exception as hook_error:
            logger.error(f"Flush error hook failed for {conversation_id}: {hook_error}")

    def discard(self, conversation_id: str) -> int:
        """
        Cancel the timer and drop the buffer without flushing.

        Used by conversation eviction.

        Returns:
            Number of pending messages that were dropped
        """
        buffer = self._buffers.pop(conversation_id, None)
        if buffer is None:
            return 0
        self._cancel_timer(buffer)
        if buffer.pending:
            logger.warning(
                f"Discarded {len(buffer.pending)} unflushed message(s) for {conversation_id}"
            )
        return len(buffer.pending)

    async def wait_idle(self) -> None:
        """Wait until every in-flight analysis task has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def flush_all(self) -> None:
        """
        Flush all pending buffers and wait for the analyzer.

        Useful for graceful shutdown so buffered messages are not lost.
        """
        conversation_ids = [cid for cid, b in self._buffers.items() if b.pending]
        logger.info(f"Flushing all batches: {len(conversation_ids)} conversation(s)")
        for conversation_id in conversation_ids:
            self.flush(conversation_id)
        await self.wait_idle()

    def cancel_all(self) -> None:
        """Cancel all armed timers without flushing."""
        armed = [b for b in self._buffers.values() if b.timer is not None]
        logger.info(f"Cancelling all timers: {len(armed)} timer(s)")
        for buffer in armed:
            self._cancel_timer(buffer)

    def get_buffer_size(self, conversation_id: str) -> int:
        buffer = self._buffers.get(conversation_id)
        return len(buffer.pending) if buffer else 0

    def get_pending_messages(self, conversation_id: str) -> list[InboundMessage]:
        """Copy of the pending messages without flushing."""
        buffer = self._buffers.get(conversation_id)
        return list(buffer.pending) if buffer else []

    def has_pending_timer(self, conversation_id: str) -> bool:
        buffer = self._buffers.get(conversation_id)
        return buffer is not None and buffer.timer is not None

    def get_last_flushed_at(self, conversation_id: str) -> Optional[int]:
        buffer = self._buffers.get(conversation_id)
        return buffer.last_flushed_at if buffer else None

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def __repr__(self) -> str:
        active_buffers = len([b for b in self._buffers.values() if b.pending])
        active_timers = len([b for b in self._buffers.values() if b.timer is not None])
        return (
            f"BatchScheduler(batch_timeout_ms={self.config.batch_timeout_ms}, "
            f"max_batch_size={self.config.max_batch_size}, "
            f"active_buffers={active_buffers}, "
            f"active_timers={active_timers})"
        )
