import os
import re
import json
import logging
from datetime import datetime
from typing import List, Optional
from jinja2 import Environment, FileSystemLoader
from pydantic import ValidationError

from voice_interview.core.config import settings
from voice_interview.models.congruency import CongruencyAnalysis, GateDecision
from voice_interview.models.session import CallSession, ChatMessage
from voice_interview.services.llm_client import BaseLLMClient, GeminiClient

logger = logging.getLogger(__name__)

template_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")
env = Environment(loader=FileSystemLoader(template_dir))

RECRUITER_SYSTEM_INSTRUCTION = (
    "You are a fair and encouraging recruiter. Your job is to give candidates a chance. "
    "Only reject candidates for EXTREME mismatches. When in doubt, let them interview. "
    "Always respond with valid JSON only."
)

EXTREME_MISMATCH_MESSAGE = (
    "Thank you for your interest in this position. After reviewing your background, I've identified that "
    "this role requires a significantly different skill set from your current experience. To respect your "
    "time and resources, we'll conclude this session here. Your interview credit will be restored "
    "automatically. I encourage you to explore positions that better align with your professional "
    "background. Best of luck in your job search!"
)

MISMATCH_MESSAGE = (
    "Thank you for taking the time to speak with me today. Based on our conversation, it appears this "
    "particular role may not be the ideal match for your current experience level. I appreciate your "
    "interest and encourage you to explore other opportunities that might better align with your skills. "
    "Wishing you success in finding the right fit!"
)

# Only verdicts above this confidence may end a session
END_CONFIDENCE_THRESHOLD = 0.9

GATE_WINDOW_START_MINUTES = 2
GATE_WINDOW_END_MINUTES = 3
GATE_MIN_TURNS = 4
GATE_CONTEXT_TURNS = 8

def graceful_ending_message(is_extremely_incompatible: bool) -> str:
    return EXTREME_MISMATCH_MESSAGE if is_extremely_incompatible else MISMATCH_MESSAGE

def _extract_json_object(text: str) -> dict:
    """Parse a JSON object, tolerating ```json fences around it"""
    cleaned = text.strip()
    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*\})\s*```", cleaned)
    if fenced:
        cleaned = fenced.group(1)
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError("Verdict is not a JSON object")
    return data

class CongruencyAnalyzer:
    """Resume/job compatibility verdicts from the completion service"""

    def __init__(self, llm_client: Optional[BaseLLMClient] = None):
        self.llm_client = llm_client or GeminiClient(model=settings.GEMINI_CONGRUENCY_MODEL, temperature=0.1)

    def _build_prompt(self, resume: str, job_title: str, job_description: str,
                      conversation: List[ChatMessage], quick_check: bool) -> str:
        template = env.get_template("congruency_quick.j2" if quick_check else "congruency_thorough.j2")
        return template.render(
            resume=resume or "",
            job_title=job_title or "Position",
            job_description=job_description or "",
            conversation=conversation,
        )

    async def analyze(
        self,
        resume: str,
        job_title: str,
        job_description: str,
        conversation: Optional[List[ChatMessage]] = None,
        quick_check: bool = True,
    ) -> CongruencyAnalysis:
        """Never raises; any provider or format failure yields a congruent/continue verdict"""
        prompt = self._build_prompt(resume, job_title, job_description, conversation or [], quick_check)

        try:
            raw = await self.llm_client.generate_json(
                prompt,
                RECRUITER_SYSTEM_INSTRUCTION,
                max_output_tokens=400 if quick_check else 700,
            )
            data = {key: value for key, value in _extract_json_object(raw).items() if value is not None}
            analysis = CongruencyAnalysis.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning(f"⚠️ [GATE] Unusable congruency verdict, continuing interview: {e}")
            return CongruencyAnalysis.fail_open()
        except Exception as e:
            logger.error(f"❌ [GATE] Congruency analysis failed, continuing interview: {e}")
            return CongruencyAnalysis.fail_open()

        # The extreme flag only counts when the provider is very sure
        if analysis.is_extremely_incompatible and analysis.confidence <= END_CONFIDENCE_THRESHOLD:
            analysis.is_extremely_incompatible = False

        return analysis

def decide(analysis: CongruencyAnalysis) -> GateDecision:
    """Map a validated verdict onto continue / end_gracefully; biased toward continuing"""
    confident = analysis.confidence > END_CONFIDENCE_THRESHOLD
    extreme = analysis.is_extremely_incompatible and confident
    provider_wants_end = not analysis.is_congruent and analysis.recommendation == "end_gracefully"

    should_end = confident and (extreme or provider_wants_end)
    return GateDecision(
        recommendation="end_gracefully" if should_end else "continue",
        is_extremely_incompatible=extreme,
        confidence=analysis.confidence,
        closing_line=graceful_ending_message(extreme) if should_end else "",
    )

class CongruencyGate:
    """One-shot resume/job check evaluated early in a live session"""

    def __init__(self, analyzer: CongruencyAnalyzer):
        self.analyzer = analyzer

    def is_eligible(self, session: CallSession) -> bool:
        if session.congruency_checked_at is not None:
            return False
        elapsed = session.timer.elapsed_minutes()
        if elapsed < GATE_WINDOW_START_MINUTES or elapsed >= GATE_WINDOW_END_MINUTES:
            return False
        return session.conversation_turns() >= GATE_MIN_TURNS

    async def evaluate(self, session: CallSession) -> Optional[GateDecision]:
        """None when the gate is not due; otherwise the decision, computed at most once per session"""
        if not self.is_eligible(session):
            return None

        # Claimed before the round trip so a concurrent turn cannot re-enter
        session.congruency_checked_at = datetime.now()
        logger.info(
            f"🔎 [GATE] Running congruency check for call {session.call_id} "
            f"at {session.timer.formatted_elapsed()}"
        )

        conversation = [m for m in session.history if m.role != "system"][-GATE_CONTEXT_TURNS:]
        analysis = await self.analyzer.analyze(
            session.resume_text,
            session.job_title,
            session.job_description,
            conversation=conversation,
            quick_check=True,
        )
        decision = decide(analysis)
        logger.info(
            f"📋 [GATE] Call {session.call_id}: congruent={analysis.is_congruent} "
            f"confidence={analysis.confidence:.2f} decision={decision.recommendation}"
        )
        return decision
