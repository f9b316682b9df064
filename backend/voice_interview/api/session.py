from fastapi import APIRouter, Request
import logging

from voice_interview.core.config import settings
from voice_interview.core.dependencies import get_services

router = APIRouter()
logger = logging.getLogger(__name__)

@router.get("/health")
async def session_health_check(request: Request):
    """Health check for the live session service"""
    services = get_services(request)
    return {
        "status": "healthy",
        "service": "session",
        "active_sessions": services.registry.active_count(),
        "services_integrated": {
            "llm": services.llm_client is not None,
            "congruency_gate": services.gate is not None,
            "credit_ledger": services.ledger is not None,
            "interview_records": services.recorder is not None,
        },
    }

@router.get("/stats")
async def session_stats(request: Request):
    """Live session and call-context statistics"""
    services = get_services(request)
    registry_stats = services.registry.get_stats()
    sessions = [
        services.registry.lookup(call_id).get_stats()
        for call_id in registry_stats["call_ids"]
        if services.registry.lookup(call_id) is not None
    ]
    return {
        "active_sessions": registry_stats["active_sessions"],
        "pending_background_tasks": registry_stats["pending_background_tasks"],
        "sessions": sessions,
        "call_contexts": services.call_contexts.get_stats(),
        "session_config": {
            "max_duration_minutes": settings.MAX_INTERVIEW_DURATION_MINUTES,
            "max_conversation_history": settings.MAX_CONVERSATION_HISTORY,
            "max_reminders": settings.MAX_REMINDERS,
        },
    }
