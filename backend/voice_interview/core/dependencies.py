import logging
from typing import Optional
from fastapi import Request
from starlette.requests import HTTPConnection

from voice_interview.services.call_context import CallContextStore, call_context_store
from voice_interview.services.congruency_service import CongruencyAnalyzer, CongruencyGate
from voice_interview.services.credit_ledger import CreditLedger
from voice_interview.services.feedback_service import FeedbackService, InterviewRecorder
from voice_interview.services.llm_client import BaseLLMClient, GeminiClient
from voice_interview.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

class ServiceContainer:
    """Collaborators shared by every live session, held on app.state"""

    def __init__(
        self,
        registry: SessionRegistry,
        call_contexts: CallContextStore,
        llm_client: BaseLLMClient,
        gate: CongruencyGate,
        ledger: Optional[CreditLedger] = None,
        recorder: Optional[InterviewRecorder] = None,
        feedback_service: Optional[FeedbackService] = None,
    ):
        self.registry = registry
        self.call_contexts = call_contexts
        self.llm_client = llm_client
        self.gate = gate
        self.ledger = ledger
        self.recorder = recorder
        self.feedback_service = feedback_service

def build_default_services() -> ServiceContainer:
    """Production wiring: Gemini for replies and verdicts, MongoDB for records"""
    from voice_interview.core.database import (
        ledger_collection,
        interviews_collection,
        transcript_segments_collection,
        interview_metrics_collection,
    )

    interviews = interviews_collection()
    return ServiceContainer(
        registry=SessionRegistry(),
        call_contexts=call_context_store,
        llm_client=GeminiClient(),
        gate=CongruencyGate(CongruencyAnalyzer()),
        ledger=CreditLedger(ledger_collection()),
        recorder=InterviewRecorder(interviews),
        feedback_service=FeedbackService(
            transcript_segments_collection(),
            interview_metrics_collection(),
            interviews,
        ),
    )

def get_services(connection: HTTPConnection) -> ServiceContainer:
    return connection.app.state.services

def get_call_contexts(request: Request) -> CallContextStore:
    return get_services(request).call_contexts

def get_registry(request: Request) -> SessionRegistry:
    return get_services(request).registry
