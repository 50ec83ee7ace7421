"""
Conversation Cleanup Daemon - Periodic eviction of idle conversations.

The tracker never schedules its own cleanup. This daemon is the external
periodic scheduler: it calls ConversationTracker.cleanup_old_conversations()
every interval until stopped.

Usage:
    tracker = ConversationTracker(analyzer=LLMBatchAnalyzer())
    daemon = CleanupDaemon(tracker)

    await daemon.start()
    # ... daemon sweeps in background ...
    await daemon.stop()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console

from quickcal_bot.core.tracker import ConversationTracker

MAX_BACKOFF_SECONDS = 300


class CleanupDaemon:
    """
    Background sweeper for stale conversations.

    Attributes:
        tracker: The tracker whose conversations are swept
        interval_seconds: Seconds between sweeps
        console: Rich console for status output
        stats: Sweep counters
    """

    def __init__(
        self,
        tracker: ConversationTracker,
        interval_seconds: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        """
        Args:
            tracker: Tracker to sweep
            interval_seconds: Sweep interval. Defaults to the tracker's
                              cleanup_interval_seconds config.
            console: Rich console, mainly for tests to capture output
        """
        self.tracker = tracker
        self.interval_seconds = interval_seconds or tracker.config.cleanup_interval_seconds
        self.console = console or Console()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.stats = {
            "sweeps": 0,
            "evicted": 0,
            "errors": 0,
            "started_at": None,
        }

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start sweeping in the background. No-op if already running."""
        if self._running:
            self.console.print("[yellow]Cleanup daemon already running[/yellow]")
            return

        self._running = True
        self.stats["started_at"] = datetime.now(timezone.utc)
        self._task = asyncio.create_task(self._sweep_loop())
        self.console.print(
            f"[green]Cleanup daemon started (interval: {self.interval_seconds}s)[/green]"
        )

    async def stop(self) -> None:
        """Cancel the background loop and wait for it to finish."""
        if not self._running:
            self.console.print("[yellow]Cleanup daemon not running[/yellow]")
            return

        self._running = False

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        self.console.print("[green]Cleanup daemon stopped[/green]")

    def run_once(self) -> list[str]:
        """Run a single sweep and return the evicted conversation IDs."""
        self.stats["sweeps"] += 1
        evicted = self.tracker.cleanup_old_conversations()
        self.stats["evicted"] += len(evicted)
        if evicted:
            self.console.print(
                f"[cyan]Sweep {self.stats['sweeps']}: evicted {len(evicted)} conversation(s), "
                f"{self.tracker.active_conversations} active[/cyan]"
            )
        return evicted

    async def _sweep_loop(self) -> None:
        """
        Sweep, then sleep, until stopped.

        Errors back off exponentially (capped at 5 minutes) instead of
        ending the loop.
        """
        consecutive_errors = 0

        while self._running:
            try:
                self.run_once()
                consecutive_errors = 0
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                consecutive_errors += 1
                self.stats["errors"] += 1
                backoff_delay = min(
                    self.interval_seconds * (2 ** consecutive_errors),
                    MAX_BACKOFF_SECONDS,
                )
                self.console.print(
                    f"[red]Cleanup sweep error: {e} "
                    f"(retry in {backoff_delay}s, errors: {consecutive_errors})[/red]"
                )
                await asyncio.sleep(backoff_delay)
