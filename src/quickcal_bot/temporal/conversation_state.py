"""
Per-conversation calendar context tracking.

Each conversation is either Cold (calendar_context_active is False) or Hot.
A relevant message makes it Hot; once the last calendar mention is older
than the context timeout, the next ingested message turns it Cold again.

A conversation that has never had a relevant message compares against a
last_calendar_mention_at of 0, so it starts (and stays) Cold until its
first relevant message.
"""
import logging
from typing import Optional

from quickcal_bot.core.models import (
    ConversationState,
    InboundMessage,
    RelevanceResult,
    TriageConfig,
)

logger = logging.getLogger(__name__)


class ConversationStateStore:
    """
    Owns the ConversationState of every tracked conversation.

    One store per tracker; nothing else writes to it.

    Attributes:
        config: Timing and window limits shared with the tracker
    """

    def __init__(self, config: Optional[TriageConfig] = None):
        self.config = config or TriageConfig()
        self._states: dict[str, ConversationState] = {}

    def get(self, conversation_id: str) -> Optional[ConversationState]:
        return self._states.get(conversation_id)

    def ingest(
        self,
        conversation_id: str,
        message: InboundMessage,
        relevance: RelevanceResult,
    ) -> ConversationState:
        """
        Apply one inbound message to the conversation's state.

        Runs for every message regardless of relevance:
        1. Record the sender and the activity time
        2. Bump the messages-since-calendar-mention counter
        3. Append to the rolling window, dropping the oldest beyond the limit
        4. On a relevant message, refresh the calendar mention and go Hot
        5. Go Cold if the last calendar mention is older than the timeout

        Args:
            conversation_id: Chat/thread identifier
            message: The inbound message
            relevance: Classifier verdict for message.text

        Returns:
            The live (mutated) ConversationState
        """
        state = self._states.get(conversation_id)
        if state is None:
            state = ConversationState(conversation_id=conversation_id)
            self._states[conversation_id] = state
            logger.debug(f"Tracking new conversation {conversation_id}")

        now = message.timestamp

        state.participants.add(message.sender)
        state.last_activity_at = now
        state.messages_since_calendar_mention += 1

        state.recent_messages.append(message)
        overflow = len(state.recent_messages) - self.config.recent_messages_limit
        if overflow > 0:
            del state.recent_messages[:overflow]

        if relevance.relevant:
            state.last_calendar_mention_at = now
            state.messages_since_calendar_mention = 0
            if not state.calendar_context_active:
                logger.info(f"Conversation {conversation_id} entered calendar context")
            state.calendar_context_active = True

        if now - state.last_calendar_mention_at > self.config.calendar_context_timeout_ms:
            if state.calendar_context_active:
                logger.info(f"Calendar context expired for {conversation_id}")
            state.calendar_context_active = False

        return state

    def should_analyze(self, conversation_id: str, now: int) -> bool:
        """
        Check whether the whole conversation currently warrants LLM analysis.

        True only while the conversation had activity within the recent
        activity window, is Hot, and has not drifted too many messages away
        from the last calendar mention.
        """
        state = self._states.get(conversation_id)
        if state is None:
            return False

        recent_activity = now - state.last_activity_at < self.config.recent_activity_window_ms
        not_too_many_messages = (
            state.messages_since_calendar_mention < self.config.max_messages_since_calendar
        )
        return recent_activity and state.calendar_context_active and not_too_many_messages

    def recent_messages(self, conversation_id: str) -> list[InboundMessage]:
        """Copy of the rolling context window (empty for unknown conversations)."""
        state = self._states.get(conversation_id)
        return list(state.recent_messages) if state else []

    def stale_ids(self, now: int) -> list[str]:
        """Conversations idle for longer than the eviction threshold."""
        max_age = self.config.conversation_max_age_ms
        return [
            cid for cid, state in self._states.items()
            if now - state.last_activity_at > max_age
        ]

    def remove(self, conversation_id: str) -> bool:
        return self._states.pop(conversation_id, None) is not None

    def conversation_ids(self) -> list[str]:
        return list(self._states.keys())

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._states
