"""Temporal processing modules (conversation context, batching, clocks)."""

from quickcal_bot.temporal.batch_scheduler import BatchScheduler
from quickcal_bot.temporal.conversation_state import ConversationStateStore
from quickcal_bot.temporal.logical_clock import LogicalClock

__all__ = [
    "BatchScheduler",
    "ConversationStateStore",
    "LogicalClock",
]
