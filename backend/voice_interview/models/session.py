from enum import Enum
from pydantic import BaseModel, Field
from typing import TYPE_CHECKING, Optional, List, Dict, Any
from datetime import datetime

if TYPE_CHECKING:
    from voice_interview.services.interview_timer import InterviewTimer
else:
    InterviewTimer = Any

class CallContext(BaseModel):
    """Static per-call data stored when the call is registered"""
    call_id: str
    user_id: str
    interview_id: Optional[str] = None
    resume_text: str = ""
    job_title: str = "Position"
    job_description: str = ""
    company_name: str = "Company"
    candidate_name: str = "Candidate"
    language: str = "en-US"
    created_at: datetime = Field(default_factory=datetime.now)

class RegisterCallContextRequest(BaseModel):
    call_id: str
    user_id: str
    interview_id: Optional[str] = None
    resume_text: str = ""
    job_title: str = "Position"
    job_description: str = ""
    company_name: str = "Company"
    candidate_name: str = "Candidate"
    preferred_language: str = "en-US"

class ChatMessage(BaseModel):
    role: str  # "system", "user", "assistant"
    content: str

class Utterance(BaseModel):
    role: str  # "agent", "user"
    content: str = ""

class CallInfo(BaseModel):
    call_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    retell_llm_dynamic_variables: Optional[Dict[str, Any]] = None

class InboundFrame(BaseModel):
    interaction_type: str  # "call_details", "call_started", "update_only", "response_required", "reminder_required", "ping_pong"
    call_id: Optional[str] = None
    call: Optional[CallInfo] = None
    response_id: Optional[int] = None
    transcript: List[Utterance] = []
    metadata: Optional[Dict[str, Any]] = None
    retell_llm_dynamic_variables: Optional[Dict[str, Any]] = None
    timestamp: Optional[int] = None

    def user_turn_count(self) -> int:
        return sum(1 for utterance in self.transcript if utterance.role == "user")

    def handshake_metadata(self) -> Dict[str, Any]:
        """Metadata from whichever location the transport put it in"""
        if self.metadata:
            return self.metadata
        if self.retell_llm_dynamic_variables:
            return self.retell_llm_dynamic_variables
        if self.call is not None:
            return self.call.metadata or self.call.retell_llm_dynamic_variables or {}
        return {}

    def latest_user_utterance(self) -> Optional[str]:
        if not self.transcript:
            return None
        last = self.transcript[-1]
        if last.role != "user" or not last.content.strip():
            return None
        return last.content.strip()

class ConfigFrame(BaseModel):
    response_type: str = "config"
    config: Dict[str, bool] = {"auto_reconnect": True, "call_details": True}

class ResponseFrame(BaseModel):
    response_type: str = "response"
    response_id: int
    content: str = ""
    content_complete: bool = False
    end_call: Optional[bool] = None
    end_call_after_spoken: Optional[bool] = None
    no_interruption_allowed: Optional[bool] = None
    end_call_reason: Optional[str] = None  # "incompatibility", "mismatch", "max_duration", "silence"

class PingPongFrame(BaseModel):
    response_type: str = "ping_pong"
    timestamp: int

class SessionState(str, Enum):
    CONNECTING = "connecting"
    CONFIG_EXCHANGED = "config_exchanged"
    CONVERSING = "conversing"
    CONGRUENCY_CHECKED = "congruency_checked"
    ENDING = "ending"
    CLOSED = "closed"

class InterviewerPersona(BaseModel):
    agent_id: str
    name: str = "Nova"
    dedicated: bool = False

class CallSession(BaseModel):
    call_id: str
    user_id: str
    interview_id: Optional[str] = None
    language: str = "en-US"
    resume_text: str = ""
    job_title: str = "Position"
    job_description: str = ""
    company_name: str = "Company"
    candidate_name: str = "Candidate"
    persona: Optional[InterviewerPersona] = None
    history: List[ChatMessage] = []
    start_time: datetime = Field(default_factory=datetime.now)
    timer: InterviewTimer
    congruency_checked_at: Optional[datetime] = None
    terminated: bool = False
    termination_reason: Optional[str] = None

    def conversation_turns(self) -> int:
        """Number of spoken turns so far, system prompt excluded"""
        return sum(1 for message in self.history if message.role != "system")

class SessionStats(BaseModel):
    call_id: str
    user_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    turn_count: int = 0
    status: str = "active"  # "active", "completed", "terminated", "error"
