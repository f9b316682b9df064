import asyncio
import json
import time
import logging
from contextlib import suppress
from typing import Awaitable, Callable, List, Optional
from pydantic import BaseModel, ValidationError

from voice_interview.core.config import settings
from voice_interview.models.session import (
    CallContext,
    CallSession,
    ChatMessage,
    ConfigFrame,
    InboundFrame,
    PingPongFrame,
    ResponseFrame,
    SessionState,
)
from voice_interview.services.congruency_service import CongruencyGate
from voice_interview.services.credit_ledger import CreditLedger, restore_key_for_call
from voice_interview.services.feedback_service import InterviewRecorder
from voice_interview.services.interview_timer import InterviewTimer
from voice_interview.services.llm_client import BaseLLMClient
from voice_interview.services.prompt_builder import (
    InterviewPromptBuilder,
    live_language_tag,
    resolve_language,
    select_persona,
)
from voice_interview.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

MAX_GENERATION_ATTEMPTS = 3
RESTORE_ATTEMPTS = 3
FINALIZE_ATTEMPTS = 3

APOLOGY_MESSAGE = "I apologize, I'm having a brief technical issue. Could you please repeat what you just said?"

FIRST_REMINDER_MESSAGE = (
    "I'm sorry, I didn't catch that. Could you please repeat your answer? "
    "Take your time - there's no rush."
)
SECOND_REMINDER_MESSAGE = (
    "I'm still here whenever you're ready. If you need a moment to think, that's perfectly fine. "
    "Just let me know when you'd like to continue."
)
SILENCE_FAREWELL_MESSAGE = (
    "I notice you've been quiet for a while. That's completely okay - interviews can be challenging. "
    "I'm going to end our session here to save your time. Feel free to start a new interview whenever "
    "you're ready. Take care, and good luck with your job search!"
)

CONVERSING_STATES = (SessionState.CONVERSING, SessionState.CONGRUENCY_CHECKED)

MAX_RETRY_DELAY_SECONDS = 4.0

def retry_delay_seconds(attempt: int) -> float:
    """0.5s, 1s, 2s, ... capped at MAX_RETRY_DELAY_SECONDS"""
    return min(0.5 * (2 ** attempt), MAX_RETRY_DELAY_SECONDS)

class SessionOrchestrator:
    """
    Drives one live call: handshake, turn handling, timer and gate checks,
    streamed replies and the one-shot end of the session.

    Every inbound frame goes through handle_message(); the transport only
    needs to supply an async send callable.
    """

    def __init__(
        self,
        context: CallContext,
        send: Callable[[dict], Awaitable[None]],
        registry: SessionRegistry,
        llm_client: BaseLLMClient,
        gate: CongruencyGate,
        ledger: Optional[CreditLedger] = None,
        recorder: Optional[InterviewRecorder] = None,
        prompt_builder: Optional[InterviewPromptBuilder] = None,
        clock: Callable[[], float] = time.time,
        max_duration_minutes: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.context = context
        self.call_id = context.call_id
        self._send_fn = send
        self.registry = registry
        self.llm_client = llm_client
        self.gate = gate
        self.ledger = ledger
        self.recorder = recorder
        self.prompt_builder = prompt_builder or InterviewPromptBuilder(max_duration_minutes)
        self._sleep = sleep

        max_minutes = max_duration_minutes or settings.MAX_INTERVIEW_DURATION_MINUTES
        self.session = CallSession(
            call_id=context.call_id,
            user_id=context.user_id,
            interview_id=context.interview_id,
            language=context.language,
            resume_text=context.resume_text,
            job_title=context.job_title,
            job_description=context.job_description,
            company_name=context.company_name,
            candidate_name=context.candidate_name,
            timer=InterviewTimer(max_duration_minutes=max_minutes, clock=clock),
        )

        self.state = SessionState.CONNECTING
        self.system_prompt = ""
        self.reminder_count = 0
        self.end_reason: Optional[str] = None
        self.sent_frames = 0

        self._current_response_id = 0
        self._seen_user_turns = 0
        self._generation_task: Optional[asyncio.Task] = None
        self._deadline_task: Optional[asyncio.Task] = None
        self._finalize_scheduled = False
        self._greeted = False
        self._transport_failed = False

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def has_greeted(self) -> bool:
        return self._greeted

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Send the transport configuration; called right after the socket is accepted"""
        if await self._send(ConfigFrame()):
            self.state = SessionState.CONFIG_EXCHANGED
            logger.info(f"🔗 [SESSION] Config sent for call {self.call_id}")

    async def _send(self, frame: BaseModel) -> bool:
        if self.is_closed or self._transport_failed:
            return False
        try:
            await self._send_fn(frame.model_dump(exclude_none=True))
        except Exception as e:
            logger.warning(f"🔌 [SESSION] Send failed for call {self.call_id}, closing: {e}")
            self._transport_failed = True
            await self.close("error")
            return False
        self.sent_frames += 1
        return True

    async def _send_complete(self, content: str, response_id: int) -> bool:
        sent = await self._send(ResponseFrame(response_id=response_id, content=content, content_complete=True))
        if sent:
            self.session.history.append(ChatMessage(role="assistant", content=content))
        return sent

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str) -> None:
        """Single entry point for every inbound transport frame"""
        if self.is_closed:
            return

        try:
            frame = InboundFrame.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning(f"⚠️ [SESSION] Dropping malformed frame on call {self.call_id}: {e}")
            return

        handlers = {
            "call_details": self._handle_call_details,
            "call_started": self._handle_call_details,
            "response_required": self._handle_response_required,
            "reminder_required": self._handle_reminder_required,
            "update_only": self._handle_update_only,
            "ping_pong": self._handle_ping_pong,
        }
        handler = handlers.get(frame.interaction_type)
        if handler is None:
            logger.warning(f"⚠️ [SESSION] Unknown interaction type '{frame.interaction_type}' on call {self.call_id}")
            return

        await handler(frame)

    async def _handle_call_details(self, frame: InboundFrame) -> None:
        if self.has_greeted:
            logger.info(f"🔁 [SESSION] Repeated handshake ignored for call {self.call_id}")
            return
        await self._greet(frame, response_id=0)

    async def _greet(self, frame: InboundFrame, response_id: int) -> None:
        session = self.session
        language = resolve_language(live_language_tag(frame.handshake_metadata()), self.context.language)
        persona = select_persona(language)
        session.language = language
        session.persona = persona

        self.system_prompt = self.prompt_builder.build_system_prompt(self.context, language, persona)
        session.history = [ChatMessage(role="system", content=self.system_prompt)]
        greeting = self.prompt_builder.build_greeting(self.context, language, persona)

        self.state = SessionState.CONVERSING
        self._greeted = True
        self._current_response_id = response_id
        logger.info(
            f"👋 [SESSION] Greeting call {self.call_id} in {language} "
            f"(agent {persona.agent_id or 'default'}, dedicated={persona.dedicated})"
        )
        if await self._send_complete(greeting, response_id):
            self._start_deadline()

    async def _handle_response_required(self, frame: InboundFrame) -> None:
        if not self.has_greeted:
            # Transport skipped the handshake; greet in reply to this turn instead
            await self._greet(frame, response_id=frame.response_id or 0)
            return
        if self.state not in CONVERSING_STATES:
            return

        await self._cancel_generation()
        response_id = frame.response_id if frame.response_id is not None else self._current_response_id + 1
        self._current_response_id = response_id
        self._seen_user_turns = max(self._seen_user_turns, frame.user_turn_count())

        session = self.session
        utterance = frame.latest_user_utterance()
        if utterance:
            self.reminder_count = 0
            session.history.append(ChatMessage(role="user", content=utterance))

        timer = session.timer
        if timer.has_exceeded_time():
            logger.info(f"⏰ [SESSION] Call {self.call_id} reached the time limit at {timer.formatted_elapsed()}")
            await self.end_call(timer.time_up_message(), "max_duration")
            return

        if timer.should_warn():
            logger.info(f"⏳ [SESSION] Time warning for call {self.call_id} at {timer.formatted_elapsed()}")
            await self._send_complete(timer.time_warning_message(), response_id)
            return

        if not utterance:
            logger.warning(f"⚠️ [SESSION] No user utterance to answer on call {self.call_id}")
            return

        decision = await self.gate.evaluate(session)
        if self.state not in CONVERSING_STATES or response_id != self._current_response_id:
            return
        if decision is not None:
            self.state = SessionState.CONGRUENCY_CHECKED
            if decision.should_end:
                reason = "incompatibility" if decision.is_extremely_incompatible else "mismatch"
                await self.end_call(decision.closing_line, reason, restore_credit=True)
                return

        self._generation_task = asyncio.create_task(self._generate_reply(response_id))

    async def _handle_update_only(self, frame: InboundFrame) -> None:
        user_turns = frame.user_turn_count()
        if user_turns > self._seen_user_turns:
            self._seen_user_turns = user_turns
            if await self._cancel_generation():
                logger.info(f"✋ [SESSION] Candidate spoke over reply on call {self.call_id}, generation cancelled")

    async def _handle_reminder_required(self, frame: InboundFrame) -> None:
        if self.state not in CONVERSING_STATES:
            return
        if frame.response_id is not None:
            self._current_response_id = frame.response_id

        self.reminder_count += 1
        logger.info(f"🔕 [SESSION] Reminder {self.reminder_count} for silent call {self.call_id}")

        # MAX_REMINDERS re-prompts are spoken; the next reminder ends the call
        if self.reminder_count > settings.MAX_REMINDERS:
            await self.end_call(SILENCE_FAREWELL_MESSAGE, "silence")
        elif self.reminder_count == 1:
            await self._send_complete(FIRST_REMINDER_MESSAGE, self._current_response_id)
        else:
            await self._send_complete(SECOND_REMINDER_MESSAGE, self._current_response_id)

    async def _handle_ping_pong(self, frame: InboundFrame) -> None:
        await self._send(PingPongFrame(timestamp=frame.timestamp or int(time.time() * 1000)))

    # ------------------------------------------------------------------
    # Reply generation
    # ------------------------------------------------------------------

    def _prune_history(self) -> None:
        history = self.session.history
        limit = settings.MAX_CONVERSATION_HISTORY
        if len(history) <= limit:
            return
        head = [m for m in history[:1] if m.role == "system"]
        self.session.history = head + history[-(limit - len(head)):]

    async def _generate_reply(self, response_id: int) -> None:
        self._prune_history()
        history: List[ChatMessage] = list(self.session.history)

        for attempt in range(MAX_GENERATION_ATTEMPTS):
            parts: List[str] = []
            try:
                async for chunk in self.llm_client.stream_reply(self.system_prompt, history):
                    if not chunk:
                        continue
                    if not await self._send(ResponseFrame(response_id=response_id, content=chunk, content_complete=False)):
                        return
                    parts.append(chunk)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if parts:
                    # Already spoken; close the turn with what was sent
                    logger.warning(f"⚠️ [LLM] Stream broke mid-reply on call {self.call_id}: {e}")
                    break
                logger.warning(
                    f"⚠️ [LLM] Reply attempt {attempt + 1}/{MAX_GENERATION_ATTEMPTS} failed on call {self.call_id}: {e}"
                )
                if attempt < MAX_GENERATION_ATTEMPTS - 1:
                    await self._sleep(retry_delay_seconds(attempt))
                continue

            break
        else:
            logger.error(f"❌ [LLM] Reply generation exhausted retries on call {self.call_id}")
            await self._send_complete(APOLOGY_MESSAGE, response_id)
            return

        if self.is_closed:
            return
        if await self._send(ResponseFrame(response_id=response_id, content="", content_complete=True)):
            self.session.history.append(ChatMessage(role="assistant", content="".join(parts)))

    async def _cancel_generation(self) -> bool:
        task = self._generation_task
        self._generation_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return False
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        return True

    # ------------------------------------------------------------------
    # Ending
    # ------------------------------------------------------------------

    def _start_deadline(self) -> None:
        self._deadline_task = asyncio.create_task(self._enforce_deadline())

    async def _enforce_deadline(self) -> None:
        """Ends the call at the hard limit even when no turn arrives"""
        timer = self.session.timer
        while not timer.has_exceeded_time():
            await self._sleep(timer.remaining_minutes() * 60)
        if self.state in CONVERSING_STATES:
            logger.info(f"⏰ [SESSION] Hard time limit hit for call {self.call_id}")
            await self.end_call(self.session.timer.time_up_message(), "max_duration")

    async def end_call(self, closing_line: str, reason: str, restore_credit: bool = False) -> bool:
        """
        Speak a closing line with an end-call instruction and close the session.

        One-shot: the ENDING transition happens before anything is awaited,
        so a second caller returns False without side effects.
        """
        if self.state in (SessionState.ENDING, SessionState.CLOSED):
            return False
        self.state = SessionState.ENDING
        self.end_reason = reason
        self.session.terminated = True
        self.session.termination_reason = reason

        if self._generation_task is not asyncio.current_task():
            await self._cancel_generation()

        logger.info(f"🏁 [SESSION] Ending call {self.call_id} ({reason}) at {self.session.timer.formatted_elapsed()}")
        frame = ResponseFrame(
            response_id=self._current_response_id,
            content=closing_line,
            content_complete=True,
            end_call=True,
            end_call_after_spoken=True,
            no_interruption_allowed=True,
            end_call_reason=reason,
        )
        if restore_credit:
            self.registry.spawn_background(self._restore_credit(reason), name=f"restore-{self.call_id}")
        if await self._send(frame):
            self.session.history.append(ChatMessage(role="assistant", content=closing_line))
        self._schedule_finalize(reason)
        await self.close(reason)
        return True

    async def close(self, reason: Optional[str] = None) -> None:
        """Release the session; safe to call any number of times"""
        if self.is_closed:
            return
        if self.end_reason is None:
            self.end_reason = reason or "user_hangup"
        # Finalize inputs are captured before CLOSED; nothing is written after it
        self._schedule_finalize(self.end_reason)
        self._mark_closed()
        await self._cancel_generation()
        self.registry.evict(self.call_id, self)
        logger.info(f"🧹 [SESSION] Call {self.call_id} closed ({self.end_reason})")

    def _mark_closed(self) -> None:
        self.state = SessionState.CLOSED
        deadline = self._deadline_task
        if deadline is not None and not deadline.done() and deadline is not asyncio.current_task():
            deadline.cancel()
        task = self._generation_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _restore_credit(self, reason: str):
        key = restore_key_for_call(self.call_id)
        if self.ledger is None:
            logger.warning(f"⚠️ [LEDGER] No ledger configured, skipping restore {key}")
            return None

        for attempt in range(RESTORE_ATTEMPTS):
            result = await asyncio.to_thread(
                self.ledger.restore,
                self.session.user_id,
                1,
                f"Interview ended early: {reason}",
                "interview",
                self.session.interview_id or self.call_id,
                key,
            )
            if result.success:
                return result
            if attempt < RESTORE_ATTEMPTS - 1:
                await self._sleep(retry_delay_seconds(attempt))

        logger.error(f"❌ [LEDGER] Giving up on restore {key} after {RESTORE_ATTEMPTS} attempts")
        return None

    def _schedule_finalize(self, reason: str) -> None:
        if self._finalize_scheduled or self.recorder is None or not self.session.interview_id:
            return
        if not self._greeted:
            return
        self._finalize_scheduled = True
        duration_seconds = int(self.session.timer.elapsed_seconds())
        turns = self.session.conversation_turns()
        self.registry.spawn_background(
            self._finalize(reason, duration_seconds, turns), name=f"finalize-{self.call_id}"
        )

    async def _finalize(self, reason: str, duration_seconds: int, turns: int) -> None:
        for attempt in range(FINALIZE_ATTEMPTS):
            try:
                await asyncio.to_thread(
                    self.recorder.record_call_end,
                    self.session.interview_id,
                    self.call_id,
                    reason,
                    duration_seconds,
                    turns,
                )
                return
            except Exception as e:
                logger.warning(f"⚠️ [DB] Finalize attempt {attempt + 1} failed for call {self.call_id}: {e}")
                if attempt < FINALIZE_ATTEMPTS - 1:
                    await self._sleep(retry_delay_seconds(attempt))
        logger.error(f"❌ [DB] Could not record end of call {self.call_id}")

    def get_stats(self) -> dict:
        return {
            "call_id": self.call_id,
            "user_id": self.session.user_id,
            "state": self.state.value,
            "language": self.session.language,
            "elapsed": self.session.timer.formatted_elapsed(),
            "turn_count": self.session.conversation_turns(),
            "congruency_checked": self.session.congruency_checked_at is not None,
            "end_reason": self.end_reason,
        }
