"""
Pydantic models for the QuickCal triage engine.

Messages, relevance verdicts, per-conversation state and the shapes
exchanged with the LLM analyzer all live here so every layer shares
one vocabulary.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class InboundMessage(BaseModel):
    """A single chat message received from the messaging transport."""
    model_config = ConfigDict(frozen=True)

    text: str
    sender: str
    timestamp: int = Field(default_factory=now_ms)  # epoch ms


class RelevanceSignals(BaseModel):
    """Which heuristic signals fired for a message."""
    has_keywords: bool = False
    has_time_pattern: bool = False
    has_date_pattern: bool = False
    has_mentions: bool = False
    has_calendar_phrase: bool = False


class RelevanceResult(BaseModel):
    """
    Verdict of the relevance classifier.

    Attributes:
        relevant: True when the message is worth analyzing for calendar intent
        score: Additive heuristic score (0 when the message was excluded)
        confidence: min(score / 5, 1.0), a relative ranking signal only
        signals: Individual signals that contributed to the score
        excluded: True when the length check or acknowledgement list
                  rejected the message before scoring
    """
    relevant: bool
    score: int = 0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    signals: RelevanceSignals = Field(default_factory=RelevanceSignals)
    excluded: bool = False


class CalendarHints(BaseModel):
    """Raw substrings that look like scheduling details."""
    times: list[str] = Field(default_factory=list)
    dates: list[str] = Field(default_factory=list)
    mentions: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.times or self.dates or self.mentions or self.keywords)

    def merge(self, other: "CalendarHints") -> "CalendarHints":
        """Combine two hint sets, keeping first-seen order without duplicates."""
        def _union(a: list[str], b: list[str]) -> list[str]:
            return list(dict.fromkeys([*a, *b]))

        return CalendarHints(
            times=_union(self.times, other.times),
            dates=_union(self.dates, other.dates),
            mentions=_union(self.mentions, other.mentions),
            keywords=_union(self.keywords, other.keywords),
        )


class ConversationState(BaseModel):
    """
    Per-conversation triage state, owned by a ConversationStateStore.

    The calendar_context_active flag is recomputed on every ingested
    message; see ConversationStateStore.ingest for the transitions.
    """
    conversation_id: str
    last_calendar_mention_at: int = 0  # epoch ms, 0 = never
    last_activity_at: int = 0
    participants: set[str] = Field(default_factory=set)
    messages_since_calendar_mention: int = 0
    calendar_context_active: bool = False
    recent_messages: list[InboundMessage] = Field(default_factory=list)


class TimerHandle(Protocol):
    """Cancellable handle for an armed debounce timer."""

    def cancel(self) -> Any:
        ...


@dataclass
class BatchBuffer:
    """Pending messages for one conversation plus its debounce timer."""
    pending: list[InboundMessage] = field(default_factory=list)
    timer: Optional[TimerHandle] = None  # at most one per conversation
    generation: int = 0  # bumped on every add so stale timers can detect themselves
    last_flushed_at: int = 0


class CalendarEventDraft(BaseModel):
    """Event details the LLM extracted from a conversation batch."""
    title: str
    date: Optional[str] = None  # YYYY-MM-DD
    time: Optional[str] = None  # HH:MM
    duration_minutes: Optional[int] = None
    description: str = ""
    attendees: list[str] = Field(default_factory=list)


class BatchAnalysis(BaseModel):
    """Result of analyzing one flushed batch."""
    conversation_id: str
    has_calendar_intent: bool = False
    events: list[CalendarEventDraft] = Field(default_factory=list)
    suggestion: Optional[str] = None


class TriageConfig(BaseModel):
    """
    Global timing and size limits for the triage engine.

    These apply to every conversation handled by a tracker; nothing is
    configurable per call.
    """
    batch_timeout_ms: int = 45_000  # debounce window
    max_batch_size: int = 10  # flush immediately at this many pending messages
    recent_messages_limit: int = 10  # rolling context window per conversation
    calendar_context_timeout_ms: int = 5 * 60 * 1000  # Hot -> Cold after this
    recent_activity_window_ms: int = 2 * 60 * 1000
    max_messages_since_calendar: int = 15
    conversation_max_age_ms: int = 30 * 60 * 1000  # eviction threshold
    cleanup_interval_seconds: int = 300

    @field_validator(
        "batch_timeout_ms",
        "max_batch_size",
        "recent_messages_limit",
        "calendar_context_timeout_ms",
        "recent_activity_window_ms",
        "max_messages_since_calendar",
        "conversation_max_age_ms",
        "cleanup_interval_seconds",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v
