#!/usr/bin/env python3
"""
QuickCal triage CLI.

Inspect how the triage engine treats messages without running the bot.

Usage:
    quickcal classify "Can we schedule a call tomorrow at 10am?"
    quickcal replay transcript.jsonl
    quickcal replay transcript.jsonl --llm --config config/triage_config.json

Transcript format (one JSON object per line):
    {"conversation_id": "group-1", "sender": "+15550100", "text": "...", "timestamp": 1700000000000}
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from quickcal_bot.core.config import load_config
from quickcal_bot.core.models import InboundMessage, TriageConfig
from quickcal_bot.core.tracker import ConversationTracker
from quickcal_bot.temporal.logical_clock import LogicalClock
from quickcal_bot.triage.relevance import RelevanceClassifier, extract_hints

console = Console()


class ConsoleAnalyzer:
    """Prints each flushed batch instead of calling the LLM."""

    def __init__(self, console: Console):
        self.console = console
        self.batches: list[tuple[str, list[InboundMessage]]] = []

    async def analyze_conversation_batch(
        self,
        conversation_id: str,
        messages: list[InboundMessage],
        context_messages: list[InboundMessage],
    ) -> None:
        self.batches.append((conversation_id, messages))
        body = "\n".join(f"{m.sender}: {m.text}" for m in messages)
        self.console.print(
            Panel(
                body,
                title=f"Batch {len(self.batches)} - {conversation_id}",
                subtitle=f"{len(messages)} message(s), {len(context_messages)} in context",
            )
        )


def cmd_classify(args: argparse.Namespace) -> int:
    text = " ".join(args.text)
    result = RelevanceClassifier().classify(text)
    hints = extract_hints(text)

    table = Table(title="Relevance")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("relevant", "[green]yes[/green]" if result.relevant else "[red]no[/red]")
    table.add_row("score", str(result.score))
    table.add_row("confidence", f"{result.confidence:.2f}")
    table.add_row("excluded", str(result.excluded))
    for name, fired in result.signals.model_dump().items():
        table.add_row(name, "✓" if fired else "")
    for name in ("times", "dates", "mentions", "keywords"):
        values = getattr(hints, name)
        if values:
            table.add_row(f"hints.{name}", ", ".join(values))
    console.print(table)
    return 0


def _read_transcript(path: Path) -> list[dict]:
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON: {e}") from e
    return records


async def replay(
    records: list[dict],
    config: TriageConfig,
    use_llm: bool = False,
    out: Optional[Console] = None,
) -> ConversationTracker:
    """
    Feed a transcript through a tracker on a logical clock.

    Debounce timers fire as transcript time passes, so a replay takes no
    wall-clock time. Records without a timestamp arrive one second after
    the previous record.
    """
    out = out or console
    start = records[0].get("timestamp", 0) if records else 0
    clock = LogicalClock(start_ms=start)

    if use_llm:
        from quickcal_bot.integrations.llm_analyzer import LLMBatchAnalyzer
        analyzer = LLMBatchAnalyzer()
    else:
        analyzer = ConsoleAnalyzer(out)

    tracker = ConversationTracker(
        analyzer=analyzer,
        config=config,
        clock=clock.now,
        timer_factory=clock.call_later,
    )

    for record in records:
        timestamp = record.get("timestamp", clock.now() + 1000)
        clock.advance_to(max(timestamp, clock.now()))
        tracker.add_message(
            record["conversation_id"],
            record["text"],
            record.get("sender", "unknown"),
            timestamp=clock.now(),
        )
        await asyncio.sleep(0)

    # Let the last debounce windows close
    clock.advance(config.batch_timeout_ms)
    await tracker.scheduler.wait_idle()

    summary = Table(title="Conversations")
    summary.add_column("Conversation", style="cyan")
    summary.add_column("Participants", justify="right")
    summary.add_column("Calendar context")
    summary.add_column("Since mention", justify="right")
    for conversation_id in tracker.store.conversation_ids():
        state = tracker.get_conversation_state(conversation_id)
        summary.add_row(
            conversation_id,
            str(len(state.participants)),
            "[green]hot[/green]" if state.calendar_context_active else "[dim]cold[/dim]",
            str(state.messages_since_calendar_mention),
        )
    out.print(summary)
    out.print(f"[dim]{tracker.scheduler.stats}[/dim]")
    return tracker


def cmd_replay(args: argparse.Namespace) -> int:
    config = load_config(Path(args.config)) if args.config else TriageConfig()
    records = _read_transcript(Path(args.transcript))
    if not records:
        console.print("[yellow]Transcript is empty[/yellow]")
        return 0
    asyncio.run(replay(records, config, use_llm=args.llm))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="quickcal", description="QuickCal triage tools")
    subparsers = parser.add_subparsers(dest="command", required=True)

    classify = subparsers.add_parser("classify", help="Score a single message")
    classify.add_argument("text", nargs="+", help="Message text")
    classify.set_defaults(func=cmd_classify)

    replay_parser = subparsers.add_parser("replay", help="Replay a JSONL chat transcript")
    replay_parser.add_argument("transcript", help="Path to JSONL transcript")
    replay_parser.add_argument("--config", default=None, help="Triage config JSON file")
    replay_parser.add_argument(
        "--llm",
        action="store_true",
        help="Send batches to Claude instead of printing them",
    )
    replay_parser.set_defaults(func=cmd_replay)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (OSError, ValueError, KeyError) as e:
        console.print(f"[red bold]Error: {e}[/red bold]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
