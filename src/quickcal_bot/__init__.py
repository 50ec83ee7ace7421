"""
QuickCal Bot - message triage and batching for a calendar-scheduling chat bot.

This package decides which chat messages look like scheduling talk, keeps
per-conversation context, and batches bursts of messages into a single
LLM analysis call that can turn them into calendar events.
"""

__version__ = "1.0.0"
