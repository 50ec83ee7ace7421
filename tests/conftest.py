from typing import Optional

import pytest

from quickcal_bot.core.models import InboundMessage, TriageConfig
from quickcal_bot.core.tracker import ConversationTracker
from quickcal_bot.temporal.batch_scheduler import BatchScheduler
from quickcal_bot.temporal.logical_clock import LogicalClock

START_MS = 1_700_000_000_000
MINUTE_MS = 60_000


class RecordingAnalyzer:
    """Analyzer double that records every batch it receives."""

    def __init__(self, error: Optional[Exception] = None):
        self.calls: list[tuple[str, list[InboundMessage], list[InboundMessage]]] = []
        self.error = error

    async def analyze_conversation_batch(self, conversation_id, messages, context_messages):
        self.calls.append((conversation_id, list(messages), list(context_messages)))
        if self.error is not None:
            raise self.error

    def texts(self, index: int = 0) -> list[str]:
        return [m.text for m in self.calls[index][1]]


@pytest.fixture
def clock():
    return LogicalClock(start_ms=START_MS)


@pytest.fixture
def analyzer():
    return RecordingAnalyzer()


@pytest.fixture
def config():
    return TriageConfig()


@pytest.fixture
def scheduler(analyzer, clock, config):
    return BatchScheduler(
        analyzer=analyzer,
        config=config,
        clock=clock.now,
        timer_factory=clock.call_later,
    )


@pytest.fixture
def tracker(analyzer, clock, config):
    return ConversationTracker(
        analyzer=analyzer,
        config=config,
        clock=clock.now,
        timer_factory=clock.call_later,
    )


def make_message(text: str, sender: str = "alice", timestamp: int = START_MS) -> InboundMessage:
    return InboundMessage(text=text, sender=sender, timestamp=timestamp)
