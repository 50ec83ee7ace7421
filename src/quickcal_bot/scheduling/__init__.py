"""Periodic maintenance for the triage engine."""

from quickcal_bot.scheduling.cleanup_daemon import CleanupDaemon

__all__ = ["CleanupDaemon"]
