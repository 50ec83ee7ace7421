"""Core triage models and configuration."""

from quickcal_bot.core.models import (
    BatchAnalysis,
    BatchBuffer,
    CalendarEventDraft,
    CalendarHints,
    ConversationState,
    InboundMessage,
    RelevanceResult,
    RelevanceSignals,
    TimerHandle,
    TriageConfig,
)
from quickcal_bot.core.config import load_config

__all__ = [
    "BatchAnalysis",
    "BatchBuffer",
    "CalendarEventDraft",
    "CalendarHints",
    "ConversationState",
    "InboundMessage",
    "RelevanceResult",
    "RelevanceSignals",
    "TimerHandle",
    "TriageConfig",
    "load_config",
]
