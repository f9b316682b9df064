import uuid
import logging
from datetime import datetime
from typing import Optional

from voice_interview.models.feedback import FeedbackRecord, FeedbackSubmission
from voice_interview.services.transcript_normalizer import normalize_call_transcript
from voice_interview.services.feedback_parser import parse_feedback, extract_overall_score, scores_to_metrics

logger = logging.getLogger(__name__)

END_REASON_STATUS = {
    "normal": "COMPLETED",
    "completed": "COMPLETED",
    "max_duration": "TIME_LIMIT",
    "time_exceeded": "TIME_LIMIT",
    "silence": "SILENCE_TIMEOUT",
    "incompatibility": "INCOMPATIBILITY",
    "mismatch": "INCOMPATIBILITY",
    "error": "TECHNICAL_ERROR",
    "user_hangup": "USER_HANGUP",
}

def end_reason_to_status(end_reason: Optional[str]) -> str:
    return END_REASON_STATUS.get(end_reason or "completed", "COMPLETED")

class InterviewRecorder:
    """Writes the end-of-call outcome onto the interview record"""

    def __init__(self, interviews_collection):
        self.interviews = interviews_collection

    def record_call_end(self, interview_id: str, call_id: str, end_reason: Optional[str],
                        duration_seconds: int, turn_count: int) -> None:
        status = end_reason_to_status(end_reason)
        self.interviews.update_one(
            {"interview_id": interview_id},
            {
                "$set": {
                    "call_id": call_id,
                    "end_reason": end_reason or "completed",
                    "status": status,
                    "duration_seconds": duration_seconds,
                    "turn_count": turn_count,
                    "ended_at": datetime.now(),
                },
                "$setOnInsert": {"interview_id": interview_id},
            },
            upsert=True,
        )
        logger.info(f"✅ [DB] Interview {interview_id} closed with status {status}")

class FeedbackService:
    """Persists normalized transcript segments and parsed scores for a finished interview"""

    def __init__(self, segments_collection, metrics_collection, interviews_collection):
        self.segments = segments_collection
        self.metrics = metrics_collection
        self.interviews = interviews_collection

    def build_record(self, interview_id: str, submission: FeedbackSubmission) -> FeedbackRecord:
        result = normalize_call_transcript(submission.call_details)

        overall_score = None
        metrics = []
        if submission.feedback_markdown:
            parsed = parse_feedback(submission.feedback_markdown)
            overall_score = extract_overall_score(submission.feedback_markdown)
            metrics = scores_to_metrics(parsed.scores, parsed.sections)

        return FeedbackRecord(
            interview_id=interview_id,
            segments=result.segments,
            total_duration_ms=result.total_duration_ms,
            transcript_source=result.source,
            overall_score=overall_score,
            metrics=metrics,
        )

    def save(self, record: FeedbackRecord) -> None:
        """
        Replaces any earlier segments and metrics for the interview.

        New rows are written under a fresh batch id before older batches are
        deleted, so a failed insert leaves the previous submission intact.
        """
        interview_id = record.interview_id
        batch_id = uuid.uuid4().hex
        stale = {"interview_id": interview_id, "batch_id": {"$ne": batch_id}}

        if record.segments:
            self.segments.insert_many([
                {"interview_id": interview_id, "batch_id": batch_id, **segment.model_dump()}
                for segment in record.segments
            ])
        self.segments.delete_many(stale)

        if record.metrics:
            self.metrics.insert_many([
                {"interview_id": interview_id, "batch_id": batch_id, **metric.model_dump()}
                for metric in record.metrics
            ])
        self.metrics.delete_many(stale)

        update = {
            "transcript_source": record.transcript_source,
            "total_duration_ms": record.total_duration_ms,
            "feedback_processed_at": datetime.now(),
        }
        if record.overall_score is not None:
            update["score"] = record.overall_score
        self.interviews.update_one(
            {"interview_id": interview_id},
            {"$set": update, "$setOnInsert": {"interview_id": interview_id}},
            upsert=True,
        )

        logger.info(
            f"✅ [FEEDBACK] Saved {len(record.segments)} segments and {len(record.metrics)} metrics "
            f"for interview {interview_id}"
        )

    def process(self, interview_id: str, submission: FeedbackSubmission) -> FeedbackRecord:
        record = self.build_record(interview_id, submission)
        self.save(record)
        return record
