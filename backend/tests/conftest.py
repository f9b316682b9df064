import os

# Settings validate at import time
os.environ.setdefault("GEMINI_API_KEY", "AIza" + "x" * 35)
os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017")
os.environ.setdefault("RETELL_AGENT_ID", "agent_default")

import json
import asyncio
import pytest
from pymongo.errors import DuplicateKeyError

from voice_interview.models.session import CallContext
from voice_interview.services.congruency_service import CongruencyAnalyzer, CongruencyGate
from voice_interview.services.credit_ledger import CreditLedger
from voice_interview.services.feedback_service import InterviewRecorder
from voice_interview.services.llm_client import BaseLLMClient
from voice_interview.services.session_registry import SessionRegistry
from voice_interview.services.session_service import MAX_RETRY_DELAY_SECONDS, SessionOrchestrator

class FakeClock:
    """Manual clock; coroutines can park on it until it passes a given time"""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._waiters = []

    @property
    def now(self) -> float:
        return self._now

    @now.setter
    def now(self, value: float) -> None:
        self._now = value
        for target, event in self._waiters:
            if value >= target:
                event.set()

    def __call__(self) -> float:
        return self._now

    async def sleep_until(self, target: float) -> None:
        event = asyncio.Event()
        waiter = (target, event)
        self._waiters.append(waiter)
        try:
            if self._now < target:
                await event.wait()
        finally:
            self._waiters.remove(waiter)

    def advance_minutes(self, minutes: float) -> None:
        self.now += minutes * 60

class FakeLLM(BaseLLMClient):
    def __init__(self, reply_chunks=None, json_text="{}", fail_times=0, json_error=None, release=None):
        self.reply_chunks = reply_chunks if reply_chunks is not None else ["Great, ", "tell me more."]
        self.json_text = json_text
        self.fail_times = fail_times
        self.json_error = json_error
        self.release = release
        self.stream_calls = 0
        self.json_calls = 0
        self.last_history = None
        self.last_prompt = None

    async def stream_reply(self, system_prompt, history):
        self.stream_calls += 1
        self.last_history = list(history)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("provider unavailable")
        if self.release is not None:
            await self.release.wait()
        for chunk in self.reply_chunks:
            yield chunk

    async def generate_json(self, prompt, system_instruction, max_output_tokens=400):
        self.json_calls += 1
        self.last_prompt = prompt
        if self.json_error is not None:
            raise self.json_error
        return self.json_text

class FakeCollection:
    """Just enough of a pymongo collection for the services under test"""

    def __init__(self):
        self.docs = []

    @staticmethod
    def _matches(doc, query):
        for key, value in query.items():
            if isinstance(value, dict) and "$ne" in value:
                if doc.get(key) == value["$ne"]:
                    return False
            elif doc.get(key) != value:
                return False
        return True

    def insert_one(self, doc):
        self.docs.append(dict(doc))

    def insert_many(self, docs):
        for doc in docs:
            self.insert_one(doc)

    def delete_many(self, query):
        self.docs = [doc for doc in self.docs if not self._matches(doc, query)]

    def find(self, query):
        return [doc for doc in self.docs if self._matches(doc, query)]

    def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if self._matches(doc, query):
                doc.update(update.get("$set", {}))
                return
        if upsert:
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            self.docs.append(doc)

class FakeLedgerCollection(FakeCollection):
    def insert_one(self, doc):
        key = doc.get("idempotency_key")
        if key is not None and any(existing.get("idempotency_key") == key for existing in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error: {key}")
        super().insert_one(doc)

class FakeTransport:
    def __init__(self):
        self.frames = []
        self.fail = False

    async def send(self, frame):
        if self.fail:
            raise ConnectionResetError("socket gone")
        self.frames.append(frame)

    def responses(self):
        return [frame for frame in self.frames if frame.get("response_type") == "response"]

def verdict_json(**overrides):
    verdict = {
        "isCongruent": True,
        "confidence": 0.4,
        "reasons": ["Related experience"],
        "recommendation": "continue",
        "isExtremelyIncompatible": False,
        "skillsMatch": {"matched": ["python"], "missing": [], "transferable": []},
    }
    verdict.update(overrides)
    return json.dumps(verdict)

def call_details_frame(**metadata):
    return json.dumps({
        "interaction_type": "call_details",
        "call": {"call_id": "call-1", "metadata": metadata or None},
    })

def response_required_frame(response_id, user_turns):
    transcript = []
    for turn in user_turns:
        transcript.append({"role": "agent", "content": "Question?"})
        transcript.append({"role": "user", "content": turn})
    return json.dumps({
        "interaction_type": "response_required",
        "response_id": response_id,
        "transcript": transcript,
    })

async def wait_for_reply(orchestrator):
    task = orchestrator._generation_task
    if task is not None:
        await task

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def transport():
    return FakeTransport()

@pytest.fixture
def registry():
    return SessionRegistry()

@pytest.fixture
def ledger_collection():
    return FakeLedgerCollection()

@pytest.fixture
def interviews():
    return FakeCollection()

@pytest.fixture
def call_context():
    return CallContext(
        call_id="call-1",
        user_id="user-1",
        interview_id="interview-1",
        resume_text="Line cook for eight years. Menu planning, food safety, kitchen inventory.",
        job_title="Senior Software Engineer",
        job_description="Distributed systems, Python, Kubernetes.",
        company_name="Acme",
        candidate_name="Sam",
    )

@pytest.fixture
def sleeps():
    return []

@pytest.fixture
def make_orchestrator(call_context, transport, registry, ledger_collection, interviews, clock, sleeps):
    async def fake_sleep(seconds):
        if seconds > MAX_RETRY_DELAY_SECONDS:
            # The deadline watchdog waits on the fake clock
            await clock.sleep_until(clock.now + seconds)
            return
        sleeps.append(seconds)

    def _make(llm=None, context=None):
        llm = llm or FakeLLM()
        orchestrator = SessionOrchestrator(
            context=context or call_context,
            send=transport.send,
            registry=registry,
            llm_client=llm,
            gate=CongruencyGate(CongruencyAnalyzer(llm_client=llm)),
            ledger=CreditLedger(ledger_collection),
            recorder=InterviewRecorder(interviews),
            clock=clock,
            sleep=fake_sleep,
        )
        registry.create(orchestrator.call_id, orchestrator)
        return orchestrator

    return _make
