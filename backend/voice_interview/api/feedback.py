from fastapi import APIRouter, HTTPException, Request
import asyncio
import logging

from voice_interview.core.dependencies import get_services
from voice_interview.models.feedback import FeedbackSubmission
from voice_interview.services.feedback_parser import parse_feedback_summary

router = APIRouter()
logger = logging.getLogger(__name__)

@router.post("/{interview_id}")
async def submit_call_feedback(interview_id: str, submission: FeedbackSubmission, request: Request):
    """Normalize a finished call's transcript and store it with any parsed scores"""
    feedback_service = get_services(request).feedback_service
    if feedback_service is None:
        raise HTTPException(status_code=503, detail="Feedback storage unavailable")

    try:
        record = await asyncio.to_thread(feedback_service.process, interview_id, submission)
    except Exception as e:
        logger.error(f"❌ [FEEDBACK] Failed to store feedback for interview {interview_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to store feedback")

    return {
        "interview_id": interview_id,
        "segments": len(record.segments),
        "total_duration_ms": record.total_duration_ms,
        "transcript_source": record.transcript_source,
        "overall_score": record.overall_score,
        "metrics": [metric.model_dump() for metric in record.metrics],
    }

@router.post("/{interview_id}/scores")
async def preview_feedback_scores(interview_id: str, submission: FeedbackSubmission):
    """Parse legacy feedback markdown without storing anything"""
    return {
        "interview_id": interview_id,
        **parse_feedback_summary(submission.feedback_markdown or "").model_dump(),
    }
