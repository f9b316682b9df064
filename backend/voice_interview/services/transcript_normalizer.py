import re
import logging
from typing import List, Optional

from voice_interview.models.transcript import (
    CallDetails,
    StructuredTurn,
    TranscriptSegment,
    TranscriptNormalizationResult,
)

logger = logging.getLogger(__name__)

TURN_GAP_MS = 500
MIN_SEGMENT_MS = 1000
STRUCTURED_MS_PER_WORD = 300
SPOKEN_WORDS_PER_MINUTE = 150
PLAIN_TEXT_MS_PER_WORD = 60000 / SPOKEN_WORDS_PER_MINUTE

AGENT_PREFIX = re.compile(r"^(agent|interviewer):\s*", re.IGNORECASE)
USER_PREFIX = re.compile(r"^(user|candidate):\s*", re.IGNORECASE)

def normalize_call_transcript(call_details: CallDetails) -> TranscriptNormalizationResult:
    """
    Turn whatever transcript form a finished call carries into ordered segments.

    Precedence: transcript_with_tool_calls, then transcript_object, then the
    plain-text transcript, then an empty result.
    """
    total_duration_ms = _total_duration_ms(call_details)

    if call_details.transcript_with_tool_calls:
        return _normalize_structured(call_details.transcript_with_tool_calls, total_duration_ms)

    if call_details.transcript_object:
        return _normalize_structured(call_details.transcript_object, total_duration_ms)

    if call_details.transcript:
        result = normalize_plain_text_transcript(call_details.transcript, total_duration_ms)
        result.source = "retell_text"
        return result

    logger.info("📭 [TRANSCRIPT] No transcript available on call details")
    return TranscriptNormalizationResult(segments=[], total_duration_ms=total_duration_ms, source="plain_text")

def _total_duration_ms(call_details: CallDetails) -> int:
    if call_details.call_duration_ms is not None:
        return call_details.call_duration_ms
    if call_details.start_timestamp and call_details.end_timestamp:
        return call_details.end_timestamp - call_details.start_timestamp
    return 0

def _normalize_structured(turns: List[StructuredTurn], total_duration_ms: int) -> TranscriptNormalizationResult:
    segments: List[TranscriptSegment] = []
    last_end_ms = 0

    for turn in turns:
        if turn.role == "tool_calls":
            continue
        content = (turn.content or "").strip()
        if not content:
            continue

        speaker = "agent" if turn.role == "agent" else "user"

        if turn.words:
            start_ms = seconds_to_ms(turn.words[0].start)
            end_ms = seconds_to_ms(turn.words[-1].end)
            # Word clocks can overlap the previous turn; never move backwards
            start_ms = max(start_ms, last_end_ms)
            end_ms = max(end_ms, start_ms)
        else:
            estimated_ms = max(len(content.split()) * STRUCTURED_MS_PER_WORD, MIN_SEGMENT_MS)
            start_ms = last_end_ms + TURN_GAP_MS if segments else 0
            end_ms = start_ms + estimated_ms

        segments.append(TranscriptSegment(
            speaker=speaker,
            content=content,
            start_ms=start_ms,
            end_ms=end_ms,
            sentiment_score=map_sentiment_to_score(turn.sentiment) if turn.sentiment else None,
            segment_index=len(segments),
        ))
        last_end_ms = end_ms

    return TranscriptNormalizationResult(
        segments=segments,
        total_duration_ms=total_duration_ms or last_end_ms,
        source="retell_structured",
    )

def normalize_plain_text_transcript(text: str, total_duration_ms: int = 0) -> TranscriptNormalizationResult:
    """Estimate timings for "Agent: ..." / "User: ..." lines, rescaled to the call length when known"""
    segments: List[TranscriptSegment] = []
    current_ms = 0.0

    for line in text.split("\n"):
        if not line.strip():
            continue

        speaker = "user"
        content = line
        if AGENT_PREFIX.match(line):
            speaker = "agent"
            content = AGENT_PREFIX.sub("", line, count=1)
        elif USER_PREFIX.match(line):
            content = USER_PREFIX.sub("", line, count=1)

        content = content.strip()
        if not content:
            continue

        duration_ms = max(len(content.split()) * PLAIN_TEXT_MS_PER_WORD, MIN_SEGMENT_MS)
        segments.append(TranscriptSegment(
            speaker=speaker,
            content=content,
            start_ms=round(current_ms),
            end_ms=round(current_ms + duration_ms),
            segment_index=len(segments),
        ))
        current_ms += duration_ms + TURN_GAP_MS

    if total_duration_ms > 0 and segments:
        estimated_total_ms = segments[-1].end_ms
        scale = total_duration_ms / estimated_total_ms
        for segment in segments:
            segment.start_ms = round(segment.start_ms * scale)
            segment.end_ms = round(segment.end_ms * scale)

    return TranscriptNormalizationResult(
        segments=segments,
        total_duration_ms=total_duration_ms or (segments[-1].end_ms if segments else 0),
        source="plain_text",
    )

def map_sentiment_to_score(sentiment: Optional[str]) -> float:
    lower = (sentiment or "").lower()
    if "positive" in lower or "good" in lower:
        return 0.8
    if "negative" in lower or "bad" in lower:
        return 0.2
    return 0.5

def ms_to_seconds(ms: int) -> float:
    return ms / 1000

def seconds_to_ms(seconds: float) -> int:
    return round(seconds * 1000)

def format_duration_ms(ms: int) -> str:
    """M:SS, e.g. 65000 -> 1:05"""
    minutes, seconds = divmod(ms // 1000, 60)
    return f"{minutes}:{seconds:02d}"
