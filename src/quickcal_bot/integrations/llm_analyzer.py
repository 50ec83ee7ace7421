"""
LLM analysis of flushed message batches.

LLMBatchAnalyzer is the collaborator the BatchScheduler calls on every
flush. It asks Claude whether the batch contains a scheduling request and,
if so, extracts event drafts that the host can turn into calendar events.
"""
import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

from dotenv import load_dotenv
from pydantic import ValidationError

from quickcal_bot.core.models import BatchAnalysis, CalendarEventDraft, InboundMessage
from quickcal_bot.triage.relevance import extract_hints, preprocess_message

load_dotenv()

if TYPE_CHECKING:
    from anthropic import AsyncAnthropic

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"
FALLBACK_SUGGESTION = (
    "I understand you want to create a calendar event. Would you like me to proceed?"
)

BATCH_ANALYSIS_PROMPT = """You are a scheduling assistant reading a group chat.
Decide whether the NEW MESSAGES contain a request to create a calendar event.
Use the RECENT CONVERSATION only as context.

RECENT CONVERSATION:
{context}

NEW MESSAGES:
{messages}

DETECTED HINTS:
{hints}

Return only a JSON object with this structure:
{{
  "has_calendar_intent": true or false,
  "events": [
    {{
      "title": "event title",
      "date": "YYYY-MM-DD",
      "time": "HH:MM",
      "duration_minutes": 60,
      "description": "event description",
      "attendees": ["@mention or name"]
    }}
  ],
  "suggestion": "short friendly confirmation to send back to the chat, or null"
}}

If details are missing, use reasonable defaults. If there is no scheduling
request, return {{"has_calendar_intent": false, "events": [], "suggestion": null}}."""

_JSON_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

AnalysisCallback = Callable[[BatchAnalysis], Awaitable[None]]


class AnalysisError(ValueError):
    """The LLM reply could not be turned into a BatchAnalysis."""


def _format_line(message: InboundMessage) -> str:
    sent_at = datetime.fromtimestamp(message.timestamp / 1000, tz=timezone.utc)
    return f"[{sent_at.strftime('%Y-%m-%d %H:%M')}] {message.sender}: {preprocess_message(message.text)}"


def build_batch_prompt(
    messages: list[InboundMessage],
    context_messages: list[InboundMessage],
) -> str:
    """Render the analysis prompt for one batch."""
    hints = None
    for message in messages:
        found = extract_hints(message.text)
        hints = found if hints is None else hints.merge(found)

    hint_lines = []
    if hints is not None and not hints.is_empty():
        for name in ("times", "dates", "mentions", "keywords"):
            values = getattr(hints, name)
            if values:
                hint_lines.append(f"{name}: {', '.join(values)}")

    return BATCH_ANALYSIS_PROMPT.format(
        context="\n".join(_format_line(m) for m in context_messages) or "(none)",
        messages="\n".join(_format_line(m) for m in messages),
        hints="\n".join(hint_lines) or "(none)",
    )


def parse_analysis(text: str, conversation_id: str) -> BatchAnalysis:
    """
    Parse the LLM reply into a BatchAnalysis.

    Accepts bare JSON or JSON wrapped in a ``` fence.

    Raises:
        AnalysisError: If the reply is not valid JSON of the expected shape
    """
    body = text.strip()
    fenced = _JSON_FENCE.match(body)
    if fenced:
        body = fenced.group(1)

    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise AnalysisError(f"LLM reply is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise AnalysisError(f"Expected a JSON object, got {type(data).__name__}")

    try:
        return BatchAnalysis(conversation_id=conversation_id, **data)
    except (ValidationError, TypeError) as e:
        raise AnalysisError(f"LLM reply has unexpected shape: {e}") from e


def format_event_suggestion(event: Optional[CalendarEventDraft]) -> str:
    """Plain-text confirmation for an extracted event."""
    if event is None or not event.title:
        return FALLBACK_SUGGESTION

    parts = [f"Create \"{event.title}\""]
    if event.date:
        parts.append(f"on {event.date}")
    if event.time:
        parts.append(f"at {event.time}")
    if event.duration_minutes:
        parts.append(f"for {event.duration_minutes} min")
    text = " ".join(parts)
    if event.attendees:
        text += f" with {', '.join(event.attendees)}"
    return text + "?"


class LLMBatchAnalyzer:
    """
    Analyze conversation batches with Claude.

    Attributes:
        client: AsyncAnthropic client (created lazily from ANTHROPIC_API_KEY
                when not injected)
        model: Claude model name
        stats: Counters for analyses and detected scheduling intents

    Example:
        async def create_events(analysis: BatchAnalysis) -> None:
            for event in analysis.events:
                await calendar.create(event)

        analyzer = LLMBatchAnalyzer(on_analysis=create_events)
        tracker = ConversationTracker(analyzer=analyzer)
    """

    def __init__(
        self,
        client: Optional["AsyncAnthropic"] = None,
        model: Optional[str] = None,
        max_tokens: int = 800,
        on_analysis: Optional[AnalysisCallback] = None,
    ):
        if client is None:
            from anthropic import AsyncAnthropic
            client = AsyncAnthropic(api_key=os.getenv("ANTHROPIC_API_KEY"))
        self.client = client
        self.model = model or os.getenv("QUICKCAL_LLM_MODEL", DEFAULT_MODEL)
        self.max_tokens = max_tokens
        self.on_analysis = on_analysis
        self.stats = {"analyses": 0, "intents_detected": 0}

    async def analyze_conversation_batch(
        self,
        conversation_id: str,
        messages: list[InboundMessage],
        context_messages: list[InboundMessage],
    ) -> BatchAnalysis:
        """
        Send one batch to Claude and parse the verdict.

        Raises:
            AnalysisError: If the reply cannot be parsed
            anthropic.APIError: On API failures
        """
        prompt = build_batch_prompt(messages, context_messages)

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )

        analysis = parse_analysis(_response_text(response), conversation_id)
        self.stats["analyses"] += 1

        if analysis.has_calendar_intent:
            self.stats["intents_detected"] += 1
            if not analysis.suggestion:
                first = analysis.events[0] if analysis.events else None
                analysis.suggestion = format_event_suggestion(first)
            logger.info(
                f"Calendar intent in {conversation_id}: {len(analysis.events)} event(s)"
            )
        else:
            logger.debug(f"No calendar intent in {conversation_id}")

        if self.on_analysis:
            await self.on_analysis(analysis)

        return analysis


def _response_text(response: Any) -> str:
    """Concatenate the text blocks of a Messages API response."""
    return "".join(
        getattr(block, "text", "") for block in response.content
    )
