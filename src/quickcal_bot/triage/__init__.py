"""Heuristic relevance scoring for inbound chat messages."""

from quickcal_bot.triage.relevance import (
    MessageClassifier,
    RelevanceClassifier,
    extract_hints,
    preprocess_message,
)

__all__ = [
    "MessageClassifier",
    "RelevanceClassifier",
    "extract_hints",
    "preprocess_message",
]
