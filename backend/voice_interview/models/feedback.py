from pydantic import BaseModel
from typing import Optional, List, Dict

from voice_interview.models.transcript import CallDetails, TranscriptSegment

class ParsedFeedbackScores(BaseModel):
    overall_score: Optional[int] = None
    content_score: Optional[int] = None
    communication_score: Optional[int] = None
    confidence_score: Optional[int] = None
    technical_score: Optional[int] = None
    problem_solving_score: Optional[int] = None

class ParsedFeedbackSections(BaseModel):
    summary: Optional[str] = None
    strengths: List[str] = []
    improvements: List[str] = []
    recommendations: List[str] = []
    content_quality_notes: Optional[str] = None
    communication_notes: Optional[str] = None
    confidence_notes: Optional[str] = None
    technical_notes: Optional[str] = None
    problem_solving_notes: Optional[str] = None

class ParsedFeedback(BaseModel):
    scores: ParsedFeedbackScores
    sections: ParsedFeedbackSections
    raw_markdown: str = ""

class ParsedFeedbackSummary(BaseModel):
    overall_score: Optional[int] = None
    category_scores: Dict[str, int] = {}

class InterviewMetricInput(BaseModel):
    category: str
    metric_name: str
    score: int
    max_score: int = 100
    feedback: Optional[str] = None

class FeedbackSubmission(BaseModel):
    call_details: CallDetails
    feedback_markdown: Optional[str] = None

class FeedbackRecord(BaseModel):
    interview_id: str
    segments: List[TranscriptSegment]
    total_duration_ms: int
    transcript_source: str
    overall_score: Optional[int] = None
    metrics: List[InterviewMetricInput] = []
