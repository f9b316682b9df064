import asyncio
import json

from conftest import (
    FakeLLM,
    call_details_frame,
    response_required_frame,
    verdict_json,
    wait_for_reply,
)
from voice_interview.core.config import settings
from voice_interview.models.session import ChatMessage, SessionState
from voice_interview.services.congruency_service import EXTREME_MISMATCH_MESSAGE, MISMATCH_MESSAGE
from voice_interview.services.interview_timer import TIME_UP_MESSAGE
from voice_interview.services.session_service import (
    APOLOGY_MESSAGE,
    FIRST_REMINDER_MESSAGE,
    SECOND_REMINDER_MESSAGE,
    SILENCE_FAREWELL_MESSAGE,
)

def reminder_frame(response_id):
    return json.dumps({"interaction_type": "reminder_required", "response_id": response_id, "transcript": []})

async def start_call(orchestrator, **metadata):
    await orchestrator.open()
    await orchestrator.handle_message(call_details_frame(**metadata))

async def test_config_then_greeting(make_orchestrator, transport):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)

    config, greeting = transport.frames
    assert config == {"response_type": "config", "config": {"auto_reconnect": True, "call_details": True}}
    assert greeting["response_id"] == 0
    assert greeting["content_complete"] is True
    assert "Sam" in greeting["content"] and "Senior Software Engineer" in greeting["content"]
    assert orchestrator.state == SessionState.CONVERSING
    assert orchestrator.session.history[0].role == "system"

    await orchestrator.close()

async def test_live_language_tag_drives_prompt(make_orchestrator, transport):
    orchestrator = make_orchestrator()
    await start_call(orchestrator, preferred_language="pt-BR")

    assert orchestrator.session.language == "pt-BR"
    assert transport.frames[1]["content"].startswith("Olá Sam!")
    assert "Portuguese" in orchestrator.system_prompt

    await orchestrator.close()

async def test_unsupported_live_tag_falls_back_to_stored_language(make_orchestrator, call_context):
    orchestrator = make_orchestrator(context=call_context.model_copy(update={"language": "es-ES"}))
    await start_call(orchestrator, preferred_language="xx-XX")

    assert orchestrator.session.language == "es-ES"
    await orchestrator.close()

async def test_chinese_calls_use_dedicated_agent(make_orchestrator, monkeypatch):
    monkeypatch.setattr(settings, "RETELL_AGENT_ID_ZH", "agent_zh")
    orchestrator = make_orchestrator()
    await start_call(orchestrator, preferred_language="zh-CN")

    assert orchestrator.session.persona.agent_id == "agent_zh"
    assert orchestrator.session.persona.dedicated is True
    await orchestrator.close()

async def test_other_languages_share_default_agent(make_orchestrator, monkeypatch):
    monkeypatch.setattr(settings, "RETELL_AGENT_ID_ZH", "agent_zh")
    orchestrator = make_orchestrator()
    await start_call(orchestrator, preferred_language="fr-FR")

    assert orchestrator.session.persona.agent_id == "agent_default"
    await orchestrator.close()

async def test_streams_reply_and_echoes_response_id(make_orchestrator, transport, clock):
    llm = FakeLLM(reply_chunks=["Interesting. ", "What did you build?"])
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    clock.advance_minutes(0.5)
    await orchestrator.handle_message(response_required_frame(5, ["I work on payment systems"]))
    await wait_for_reply(orchestrator)

    streamed = transport.responses()[1:]
    assert [f["content"] for f in streamed] == ["Interesting. ", "What did you build?", ""]
    assert [f["content_complete"] for f in streamed] == [False, False, True]
    assert all(f["response_id"] == 5 for f in streamed)
    assert orchestrator.session.history[-1] == ChatMessage(role="assistant", content="Interesting. What did you build?")
    assert orchestrator.session.history[-2] == ChatMessage(role="user", content="I work on payment systems")

    await orchestrator.close()

async def test_generation_retries_with_backoff(make_orchestrator, transport, sleeps):
    llm = FakeLLM(reply_chunks=["Okay."], fail_times=2)
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    await orchestrator.handle_message(response_required_frame(1, ["Hello"]))
    await wait_for_reply(orchestrator)

    assert llm.stream_calls == 3
    assert sleeps == [0.5, 1.0]
    assert transport.responses()[-2]["content"] == "Okay."
    await orchestrator.close()

async def test_exhausted_retries_apologize(make_orchestrator, transport):
    llm = FakeLLM(fail_times=3)
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    await orchestrator.handle_message(response_required_frame(1, ["Hello"]))
    await wait_for_reply(orchestrator)

    last = transport.responses()[-1]
    assert last["content"] == APOLOGY_MESSAGE
    assert last["content_complete"] is True
    assert orchestrator.state == SessionState.CONVERSING
    await orchestrator.close()

async def test_history_is_pruned_before_generation(make_orchestrator):
    llm = FakeLLM()
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)
    for i in range(30):
        orchestrator.session.history.append(ChatMessage(role="user" if i % 2 else "assistant", content=f"m{i}"))

    await orchestrator.handle_message(response_required_frame(1, ["latest answer"]))
    await wait_for_reply(orchestrator)

    assert len(llm.last_history) == settings.MAX_CONVERSATION_HISTORY
    assert llm.last_history[0].role == "system"
    assert llm.last_history[-1].content == "latest answer"
    await orchestrator.close()

async def test_time_limit_ends_call(make_orchestrator, transport, clock, ledger_collection):
    llm = FakeLLM()
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    clock.advance_minutes(15)
    await orchestrator.handle_message(response_required_frame(7, ["One more thing"]))

    last = transport.responses()[-1]
    assert last["content"] == TIME_UP_MESSAGE
    assert last["end_call"] is True
    assert last["end_call_reason"] == "max_duration"
    assert llm.stream_calls == 0
    assert orchestrator.state == SessionState.CLOSED
    assert ledger_collection.docs == []

    sent = len(transport.frames)
    await orchestrator.handle_message(response_required_frame(8, ["Hello?"]))
    assert len(transport.frames) == sent

async def test_warning_is_that_turns_reply(make_orchestrator, transport, clock):
    llm = FakeLLM()
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    clock.advance_minutes(13)
    await orchestrator.handle_message(response_required_frame(3, ["Sure"]))

    last = transport.responses()[-1]
    assert last["content"].startswith("We have about 2 minutes remaining")
    assert last["response_id"] == 3
    assert llm.stream_calls == 0

    await orchestrator.handle_message(response_required_frame(4, ["Sure", "Next answer"]))
    await wait_for_reply(orchestrator)
    assert llm.stream_calls == 1
    await orchestrator.close()

async def test_reminders_then_silence_farewell(make_orchestrator, transport, ledger_collection, registry):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)

    await orchestrator.handle_message(reminder_frame(1))
    await orchestrator.handle_message(reminder_frame(2))
    await orchestrator.handle_message(reminder_frame(3))
    await registry.drain()

    contents = [f["content"] for f in transport.responses()[1:]]
    assert contents == [FIRST_REMINDER_MESSAGE, SECOND_REMINDER_MESSAGE, SILENCE_FAREWELL_MESSAGE]
    assert transport.responses()[-1]["end_call_reason"] == "silence"
    assert ledger_collection.docs == []

async def test_answer_resets_reminders(make_orchestrator, transport):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)

    await orchestrator.handle_message(reminder_frame(1))
    await orchestrator.handle_message(response_required_frame(2, ["Sorry, I was thinking"]))
    await wait_for_reply(orchestrator)
    await orchestrator.handle_message(reminder_frame(3))

    assert transport.responses()[-1]["content"] == FIRST_REMINDER_MESSAGE
    await orchestrator.close()

async def test_malformed_frames_are_dropped(make_orchestrator, transport):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)
    sent = len(transport.frames)

    await orchestrator.handle_message("{not json")
    await orchestrator.handle_message(json.dumps({"response_id": 3}))
    await orchestrator.handle_message(json.dumps({"interaction_type": "something_new"}))

    assert len(transport.frames) == sent
    assert orchestrator.state == SessionState.CONVERSING
    await orchestrator.close()

async def test_ping_pong_is_echoed(make_orchestrator, transport):
    orchestrator = make_orchestrator()
    await orchestrator.open()
    await orchestrator.handle_message(json.dumps({"interaction_type": "ping_pong", "timestamp": 1234}))

    assert transport.frames[-1] == {"response_type": "ping_pong", "timestamp": 1234}
    await orchestrator.close()

async def test_new_utterance_cancels_inflight_generation(make_orchestrator, transport):
    llm = FakeLLM(release=asyncio.Event())
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    await orchestrator.handle_message(response_required_frame(1, ["First answer"]))
    task = orchestrator._generation_task
    await asyncio.sleep(0)

    update = json.dumps({
        "interaction_type": "update_only",
        "transcript": [
            {"role": "user", "content": "First answer"},
            {"role": "user", "content": "Actually, one more thing"},
        ],
    })
    await orchestrator.handle_message(update)

    assert task.cancelled()
    assert all(f["response_id"] != 1 for f in transport.responses())
    await orchestrator.close()

async def test_close_is_idempotent_and_evicts(make_orchestrator, registry, transport, interviews):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)
    assert registry.lookup("call-1") is orchestrator

    await orchestrator.close()
    await orchestrator.close()
    await registry.drain()

    assert registry.lookup("call-1") is None
    assert orchestrator.state == SessionState.CLOSED
    assert len(interviews.docs) == 1
    assert interviews.docs[0]["status"] == "USER_HANGUP"

    sent = len(transport.frames)
    await orchestrator.handle_message(response_required_frame(1, ["hello?"]))
    assert len(transport.frames) == sent

async def test_send_failure_releases_session(make_orchestrator, transport, registry, interviews):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)

    transport.fail = True
    await orchestrator.handle_message(reminder_frame(1))
    await orchestrator.close()
    await registry.drain()

    assert orchestrator.state == SessionState.CLOSED
    assert orchestrator.end_reason == "error"
    assert registry.lookup("call-1") is None
    assert len(interviews.docs) == 1
    assert interviews.docs[0]["status"] == "TECHNICAL_ERROR"

async def test_failed_closing_line_still_releases_session(
    make_orchestrator, transport, clock, registry, interviews, ledger_collection
):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)

    clock.advance_minutes(15)
    transport.fail = True
    await orchestrator.handle_message(response_required_frame(4, ["Still there?"]))
    await registry.drain()

    assert orchestrator.state == SessionState.CLOSED
    assert registry.lookup("call-1") is None
    assert len(interviews.docs) == 1
    assert interviews.docs[0]["status"] == "TIME_LIMIT"
    assert ledger_collection.docs == []

async def test_end_record_uses_state_at_close(make_orchestrator, clock, registry, interviews):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)
    clock.now += 95

    await orchestrator.close()
    orchestrator.session.history.append(ChatMessage(role="user", content="late frame"))
    clock.advance_minutes(5)
    await registry.drain()

    record = interviews.docs[0]
    assert record["turn_count"] == 1
    assert record["duration_seconds"] == 95

async def test_deadline_ends_silent_call(make_orchestrator, transport, clock, ledger_collection, registry, interviews):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)
    deadline = orchestrator._deadline_task
    await asyncio.sleep(0)
    assert not deadline.done()

    clock.advance_minutes(15)
    await deadline
    await registry.drain()

    endings = [f for f in transport.responses() if f.get("end_call")]
    assert len(endings) == 1
    assert endings[0]["content"] == TIME_UP_MESSAGE
    assert endings[0]["end_call_reason"] == "max_duration"
    assert orchestrator.state == SessionState.CLOSED
    assert registry.lookup("call-1") is None
    assert ledger_collection.docs == []
    assert interviews.docs[0]["status"] == "TIME_LIMIT"

async def test_deadline_not_reached_keeps_call_open(make_orchestrator, clock):
    orchestrator = make_orchestrator()
    await start_call(orchestrator)

    clock.advance_minutes(14)
    await asyncio.sleep(0)

    assert orchestrator.state == SessionState.CONVERSING
    assert not orchestrator._deadline_task.done()
    await orchestrator.close()

async def test_unrelated_resume_ends_call_at_minute_two_and_a_half(
    make_orchestrator, transport, clock, ledger_collection, registry, interviews
):
    llm = FakeLLM(json_text=verdict_json(
        isCongruent=False,
        confidence=0.95,
        isExtremelyIncompatible=True,
        recommendation="end_gracefully",
        reasons=["No overlap between culinary work and distributed systems"],
    ))
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    answers = ["I run a restaurant kitchen", "I plan seasonal menus", "I manage food inventory"]
    for turn, minute in enumerate([0.5, 1.5, 2.5], start=1):
        clock.now = orchestrator.session.timer.start_time + minute * 60
        await orchestrator.handle_message(response_required_frame(turn, answers[:turn]))
        await wait_for_reply(orchestrator)

    last = transport.responses()[-1]
    assert last["content"] == EXTREME_MISMATCH_MESSAGE
    assert last["end_call"] is True
    assert last["end_call_after_spoken"] is True
    assert last["no_interruption_allowed"] is True
    assert last["end_call_reason"] == "incompatibility"
    assert orchestrator.state == SessionState.CLOSED
    assert llm.json_calls == 1

    # A retried close sequence must not refund twice
    assert await orchestrator.end_call(EXTREME_MISMATCH_MESSAGE, "incompatibility", restore_credit=True) is False
    await orchestrator.close()
    await registry.drain()

    assert len(ledger_collection.docs) == 1
    assert ledger_collection.docs[0]["idempotency_key"] == "restore_call_call-1"
    assert ledger_collection.docs[0]["user_id"] == "user-1"
    assert interviews.docs[0]["status"] == "INCOMPATIBILITY"

async def test_confident_mismatch_ends_with_softer_line(make_orchestrator, transport, clock, ledger_collection, registry):
    llm = FakeLLM(json_text=verdict_json(isCongruent=False, confidence=0.93, recommendation="end_gracefully"))
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    clock.advance_minutes(1)
    await orchestrator.handle_message(response_required_frame(1, ["a"]))
    await wait_for_reply(orchestrator)
    clock.advance_minutes(1.5)
    await orchestrator.handle_message(response_required_frame(2, ["a", "b"]))
    await registry.drain()

    last = transport.responses()[-1]
    assert last["content"] == MISMATCH_MESSAGE
    assert last["end_call_reason"] == "mismatch"
    assert len(ledger_collection.docs) == 1

async def test_gate_failure_keeps_interview_going(make_orchestrator, transport, clock):
    llm = FakeLLM(json_error=RuntimeError("provider down"))
    orchestrator = make_orchestrator(llm)
    await start_call(orchestrator)

    clock.advance_minutes(1)
    await orchestrator.handle_message(response_required_frame(1, ["a"]))
    await wait_for_reply(orchestrator)
    clock.advance_minutes(1.5)
    await orchestrator.handle_message(response_required_frame(2, ["a", "b"]))
    await wait_for_reply(orchestrator)

    assert llm.json_calls == 1
    assert orchestrator.state == SessionState.CONGRUENCY_CHECKED
    assert transport.responses()[-1]["content_complete"] is True
    assert "end_call" not in transport.responses()[-1]
    await orchestrator.close()
