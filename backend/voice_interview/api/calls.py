from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
import logging

from voice_interview.api.llm_websocket import resolve_call_id
from voice_interview.core.dependencies import get_call_contexts, get_services
from voice_interview.models.congruency import CongruencyAnalysis
from voice_interview.models.session import CallContext, RegisterCallContextRequest
from voice_interview.services.call_context import CallContextStore

router = APIRouter()
logger = logging.getLogger(__name__)

class CongruencyReviewRequest(BaseModel):
    resume_text: str
    job_title: str
    job_description: str = ""

@router.post("/register-context")
async def register_call_context(
    request: RegisterCallContextRequest,
    store: CallContextStore = Depends(get_call_contexts),
):
    """Store the static data a call needs before the voice platform connects"""
    call_id = resolve_call_id(request.call_id)
    if call_id is None:
        raise HTTPException(status_code=400, detail="A real call_id is required")

    context = CallContext(
        call_id=call_id,
        user_id=request.user_id,
        interview_id=request.interview_id,
        resume_text=request.resume_text,
        job_title=request.job_title,
        job_description=request.job_description,
        company_name=request.company_name,
        candidate_name=request.candidate_name,
        language=request.preferred_language,
    )
    store.store(context)
    return {"success": True, "call_id": call_id}

@router.get("/{call_id}/context")
async def get_call_context(call_id: str, store: CallContextStore = Depends(get_call_contexts)):
    context = store.get(call_id)
    if context is None:
        raise HTTPException(status_code=404, detail=f"No context registered for call {call_id}")
    return context

@router.post("/congruency-review", response_model=CongruencyAnalysis, response_model_by_alias=False)
async def congruency_review(body: CongruencyReviewRequest, request: Request):
    """Thorough, non-interactive resume/job review"""
    analyzer = get_services(request).gate.analyzer
    return await analyzer.analyze(
        body.resume_text,
        body.job_title,
        body.job_description,
        quick_check=False,
    )
