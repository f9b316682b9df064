from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from typing import Optional
import logging

from voice_interview.core.dependencies import get_services
from voice_interview.services.session_service import SessionOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

# Literal template values some clients send when the id was never substituted
PLACEHOLDER_CALL_IDS = {"", "undefined", "null", "{call_id}"}

def resolve_call_id(call_id: Optional[str]) -> Optional[str]:
    if call_id is None:
        return None
    cleaned = call_id.strip()
    if cleaned in PLACEHOLDER_CALL_IDS:
        return None
    return cleaned

@router.websocket("/llm-websocket/{call_id}")
async def llm_websocket(websocket: WebSocket, call_id: str):
    """Custom-LLM endpoint the voice platform connects to for each call"""
    await serve_call(websocket, call_id)

@router.websocket("/llm-websocket/{placeholder}/{call_id}")
async def llm_websocket_with_prefix(websocket: WebSocket, placeholder: str, call_id: str):
    """Same endpoint for clients that put a fixed segment before the call id"""
    await serve_call(websocket, call_id)

async def serve_call(websocket: WebSocket, raw_call_id: str) -> None:
    services = get_services(websocket)

    call_id = resolve_call_id(raw_call_id)
    if call_id is None:
        logger.warning(f"🚫 [WEBSOCKET] Refusing connection with invalid call id '{raw_call_id}'")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    context = services.call_contexts.get(call_id)
    if context is None:
        logger.warning(f"🚫 [WEBSOCKET] No call context for {call_id}, refusing connection")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info(f"✅ [WEBSOCKET] Connection accepted for call {call_id}")

    orchestrator = SessionOrchestrator(
        context=context,
        send=websocket.send_json,
        registry=services.registry,
        llm_client=services.llm_client,
        gate=services.gate,
        ledger=services.ledger,
        recorder=services.recorder,
    )
    services.registry.create(call_id, orchestrator)

    close_reason = None
    try:
        await orchestrator.open()
        while True:
            message = await websocket.receive_text()
            await orchestrator.handle_message(message)
    except WebSocketDisconnect:
        logger.info(f"🔌 [WEBSOCKET] Call {call_id} disconnected")
    except Exception as e:
        logger.error(f"❌ [WEBSOCKET] Session error for call {call_id}: {e}")
        close_reason = "error"
    finally:
        await orchestrator.close(close_reason)
        services.registry.evict(call_id, orchestrator)
        logger.info(f"📊 [SESSIONS] Active sessions remaining: {services.registry.active_count()}")
