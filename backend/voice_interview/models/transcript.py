from pydantic import BaseModel
from typing import Optional, List, Literal

class TranscriptWord(BaseModel):
    word: str = ""
    start: float  # seconds
    end: float  # seconds

class StructuredTurn(BaseModel):
    role: str  # "agent", "user", "tool_calls", ...
    content: str = ""
    words: Optional[List[TranscriptWord]] = None
    sentiment: Optional[str] = None

class CallDetails(BaseModel):
    """Post-call transcript payload; any subset of the transcript forms may be present"""
    transcript_with_tool_calls: Optional[List[StructuredTurn]] = None
    transcript_object: Optional[List[StructuredTurn]] = None
    transcript: Optional[str] = None
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    call_duration_ms: Optional[int] = None

class TranscriptSegment(BaseModel):
    speaker: Literal["agent", "user"]
    content: str
    start_ms: int
    end_ms: int
    sentiment_score: Optional[float] = None
    segment_index: int

class TranscriptNormalizationResult(BaseModel):
    segments: List[TranscriptSegment] = []
    total_duration_ms: int = 0
    source: Literal["retell_structured", "retell_text", "plain_text"] = "plain_text"
