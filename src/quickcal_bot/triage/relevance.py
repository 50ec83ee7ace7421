"""
Message relevance classification.

Cheap keyword/pattern heuristics that decide whether a chat message is
worth sending to the LLM for calendar-intent analysis. The classifier is
stateless: every call looks only at the text it is given.

Scoring:
    calendar keyword        +3
    clock time (3pm, 10:30 am)  +2
    date or weekday         +2
    @mention                +1
    calendar-intent phrase  +2

A message is relevant at score >= 3. Very short messages and bare social
acknowledgements ("ok", "thanks", a single emoji) are rejected before any
scoring happens.
"""
import logging
import re
from typing import Optional, Protocol

from quickcal_bot.core.models import CalendarHints, RelevanceResult, RelevanceSignals

logger = logging.getLogger(__name__)

MIN_MESSAGE_LENGTH = 8
RELEVANCE_THRESHOLD = 3
CONFIDENCE_SCALE = 5

KEYWORD_WEIGHT = 3
TIME_WEIGHT = 2
DATE_WEIGHT = 2
MENTION_WEIGHT = 1
PHRASE_WEIGHT = 2

CALENDAR_KEYWORDS = [
    "meeting", "call", "zoom", "teams", "schedule", "appointment",
    "tomorrow", "today", "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday", "pm", "am", "calendar", "book",
    "reschedule", "cancel", "invite", "demo", "standup", "sync",
    "catchup", "coffee", "lunch", "dinner", "conference", "workshop",
]

CALENDAR_PHRASES = [
    "let's meet", "let's schedule", "can we schedule", "available for", "free at",
    "busy at", "book a", "set up a", "plan a", "organize a",
]

TIME_PATTERN = re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)\b", re.IGNORECASE)
DATE_PATTERN = re.compile(
    r"\b(?:today|tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday"
    r"|\d{1,2}/\d{1,2}|\d{1,2}-\d{1,2}|next\s+week|this\s+week)\b",
    re.IGNORECASE,
)
MENTION_PATTERN = re.compile(r"@\w+")

# Full-string matches that are never scheduling talk
ACKNOWLEDGEMENT_PATTERNS = [
    re.compile(r"^(?:hi|hello|hey|thanks|thank you|ok|okay|yes|no|lol|haha)$", re.IGNORECASE),
    re.compile(r"^(?:👍|👎|😊|😄|❤️|🔥)$"),
    re.compile(r"^(?:k|kk|sure|cool|nice|great)$", re.IGNORECASE),
]

_PREPROCESS_STRIP = re.compile(r"[^\w\s@:/\-.,!?]")
_WHITESPACE = re.compile(r"\s+")


class MessageClassifier(Protocol):
    """Anything that can score a message for calendar relevance."""

    def classify(self, text: str, metadata: Optional[dict] = None) -> RelevanceResult:
        ...


def is_acknowledgement(text: str) -> bool:
    """Check if the trimmed text is a bare social acknowledgement."""
    stripped = text.strip()
    return any(pattern.match(stripped) for pattern in ACKNOWLEDGEMENT_PATTERNS)


def preprocess_message(text: str) -> str:
    """
    Normalize a message before it goes into an LLM prompt.

    Keeps word characters, whitespace and basic punctuation (@ : / - . , ! ?),
    replaces everything else with a space, then collapses whitespace.
    """
    cleaned = _PREPROCESS_STRIP.sub(" ", text)
    return _WHITESPACE.sub(" ", cleaned).strip()


def extract_hints(text: str) -> CalendarHints:
    """
    Pull out the raw substrings that matched each pattern.

    Independent of scoring: a message below the relevance threshold can
    still yield hints.
    """
    lower = text.lower()
    return CalendarHints(
        times=[m.group(0) for m in TIME_PATTERN.finditer(text)],
        dates=[m.group(0) for m in DATE_PATTERN.finditer(text)],
        mentions=MENTION_PATTERN.findall(text),
        keywords=[kw for kw in CALENDAR_KEYWORDS if kw in lower],
    )


class RelevanceClassifier:
    """
    Stateless heuristic scorer for calendar relevance.

    Example:
        >>> classifier = RelevanceClassifier()
        >>> result = classifier.classify("Let's schedule a meeting tomorrow at 3pm")
        >>> result.relevant, result.score
        (True, 9)
    """

    def classify(self, text: str, metadata: Optional[dict] = None) -> RelevanceResult:
        """
        Score a message and decide whether it is calendar-relevant.

        Args:
            text: Raw message text
            metadata: Transport metadata (unused by the heuristics, accepted
                      so richer classifiers can share the interface)

        Returns:
            RelevanceResult; never raises for string input
        """
        # Length counts code points, so one emoji is one character
        if len(text) < MIN_MESSAGE_LENGTH:
            return RelevanceResult(relevant=False, excluded=True)

        if is_acknowledgement(text):
            return RelevanceResult(relevant=False, excluded=True)

        lower = text.lower()
        signals = RelevanceSignals(
            has_keywords=any(kw in lower for kw in CALENDAR_KEYWORDS),
            has_time_pattern=TIME_PATTERN.search(text) is not None,
            has_date_pattern=DATE_PATTERN.search(text) is not None,
            has_mentions=MENTION_PATTERN.search(text) is not None,
            has_calendar_phrase=any(phrase in lower for phrase in CALENDAR_PHRASES),
        )

        score = 0
        if signals.has_keywords:
            score += KEYWORD_WEIGHT
        if signals.has_time_pattern:
            score += TIME_WEIGHT
        if signals.has_date_pattern:
            score += DATE_WEIGHT
        if signals.has_mentions:
            score += MENTION_WEIGHT
        if signals.has_calendar_phrase:
            score += PHRASE_WEIGHT

        relevant = score >= RELEVANCE_THRESHOLD
        confidence = min(score / CONFIDENCE_SCALE, 1.0)

        logger.debug(f'Message analysis: "{text[:50]}..." Score: {score}, Analyze: {relevant}')

        return RelevanceResult(
            relevant=relevant,
            score=score,
            confidence=confidence,
            signals=signals,
        )

    def extract_hints(self, text: str) -> CalendarHints:
        """See module-level extract_hints."""
        return extract_hints(text)
