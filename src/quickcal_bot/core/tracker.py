"""
Conversation tracker - single entry point of the triage engine.

Every inbound chat message goes through add_message(): it is scored by the
relevance classifier, applied to the conversation's calendar context, and
appended to the conversation's batch. Stale conversations are removed by
cleanup_old_conversations(), which the host calls periodically.
"""
import logging
from typing import Callable, Optional

from quickcal_bot.core.models import (
    CalendarHints,
    ConversationState,
    InboundMessage,
    TriageConfig,
    now_ms,
)
from quickcal_bot.temporal.batch_scheduler import (
    BatchAnalyzer,
    BatchScheduler,
    FlushErrorHook,
    TaskRunner,
    TimerFactory,
)
from quickcal_bot.temporal.conversation_state import ConversationStateStore
from quickcal_bot.triage.relevance import MessageClassifier, RelevanceClassifier, extract_hints

logger = logging.getLogger(__name__)


class ConversationTracker:
    """
    Orchestrates relevance scoring, conversation state and batching.

    The tracker owns its state store and batch scheduler; independent
    trackers share nothing, so tests and multi-account hosts can run
    several in one process.

    Example:
        tracker = ConversationTracker(analyzer=LLMBatchAnalyzer())
        state = tracker.add_message("group-42", "Lunch tomorrow at 1pm?", "+15550100")
        if tracker.should_analyze_conversation("group-42"):
            ...
    """

    def __init__(
        self,
        analyzer: BatchAnalyzer,
        classifier: Optional[MessageClassifier] = None,
        config: Optional[TriageConfig] = None,
        clock: Callable[[], int] = now_ms,
        timer_factory: Optional[TimerFactory] = None,
        on_flush_error: Optional[FlushErrorHook] = None,
        task_runner: Optional[TaskRunner] = None,
    ):
        """
        Args:
            analyzer: Receives flushed batches (usually LLMBatchAnalyzer)
            classifier: Relevance classifier. Defaults to RelevanceClassifier()
            config: Timing and size limits. Defaults to TriageConfig()
            clock: Returns the current time in epoch ms
            timer_factory: Debounce timer factory passed to the scheduler
            on_flush_error: Hook for dropped batches, passed to the scheduler
            task_runner: Starts batch analysis, passed to the scheduler
        """
        self.config = config or TriageConfig()
        self.classifier = classifier or RelevanceClassifier()
        self._clock = clock
        self.store = ConversationStateStore(self.config)
        self.scheduler = BatchScheduler(
            analyzer=analyzer,
            context_provider=self.store.recent_messages,
            config=self.config,
            clock=clock,
            timer_factory=timer_factory,
            on_flush_error=on_flush_error,
            task_runner=task_runner,
        )

    def add_message(
        self,
        conversation_id: str,
        text: str,
        sender: str,
        timestamp: Optional[int] = None,
    ) -> ConversationState:
        """
        Ingest one inbound chat message.

        Args:
            conversation_id: Chat/thread identifier
            text: Message text
            sender: Sender identifier (phone number, username, ...)
            timestamp: Arrival time in epoch ms. Defaults to now.

        Returns:
            The conversation's live state after the update
        """
        if timestamp is None:
            timestamp = self._clock()

        message = InboundMessage(text=text, sender=sender, timestamp=timestamp)
        relevance = self.classifier.classify(text)
        state = self.store.ingest(conversation_id, message, relevance)
        self.scheduler.add_message(conversation_id, message)
        return state

    def should_analyze_conversation(self, conversation_id: str) -> bool:
        return self.store.should_analyze(conversation_id, self._clock())

    def get_conversation_state(self, conversation_id: str) -> Optional[ConversationState]:
        return self.store.get(conversation_id)

    def get_calendar_hints(self, conversation_id: str) -> CalendarHints:
        """Merged scheduling hints across the conversation's recent messages."""
        hints = CalendarHints()
        for message in self.store.recent_messages(conversation_id):
            hints = hints.merge(extract_hints(message.text))
        return hints

    def cleanup_old_conversations(self) -> list[str]:
        """
        Evict conversations idle longer than conversation_max_age_ms.

        Removes both the conversation state and its batch buffer. Safe to
        call repeatedly.

        Returns:
            IDs of the conversations that were evicted
        """
        stale = self.store.stale_ids(self._clock())
        for conversation_id in stale:
            self.store.remove(conversation_id)
            self.scheduler.discard(conversation_id)

        if stale:
            logger.info(f"Evicted {len(stale)} stale conversation(s)")
        return stale

    async def shutdown(self, flush: bool = True) -> None:
        """
        Stop batching.

        Args:
            flush: Flush pending batches and wait for the analyzer (graceful).
                   When False, armed timers are cancelled and pending
                   messages stay unanalyzed.
        """
        if flush:
            await self.scheduler.flush_all()
        else:
            self.scheduler.cancel_all()
            await self.scheduler.wait_idle()

    @property
    def active_conversations(self) -> int:
        return len(self.store)
