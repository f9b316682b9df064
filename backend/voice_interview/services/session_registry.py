import asyncio
import logging
from typing import Dict, Optional, Set, Coroutine, Any

logger = logging.getLogger(__name__)

class SessionRegistry:
    """
    Live orchestrators keyed by call id, owned by the application.

    Also holds strong references to background side-effect tasks (credit
    restores, finalizers) so they run to completion after their session
    has been evicted.
    """

    def __init__(self):
        self._sessions: Dict[str, Any] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    def create(self, call_id: str, orchestrator) -> None:
        existing = self._sessions.get(call_id)
        if existing is not None and existing is not orchestrator:
            logger.warning(f"⚠️ [REGISTRY] Replacing live session for call {call_id}")
        self._sessions[call_id] = orchestrator
        logger.info(f"📊 [REGISTRY] Active sessions: {len(self._sessions)}")

    def lookup(self, call_id: str):
        return self._sessions.get(call_id)

    def evict(self, call_id: str, orchestrator=None) -> bool:
        """Remove a session; with an orchestrator given, only if it is still the registered one"""
        current = self._sessions.get(call_id)
        if current is None:
            return False
        if orchestrator is not None and current is not orchestrator:
            return False
        del self._sessions[call_id]
        logger.info(f"🧹 [REGISTRY] Evicted call {call_id}, {len(self._sessions)} remaining")
        return True

    def spawn_background(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ [REGISTRY] Background task {task.get_name()} failed: {error}")

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for pending background work, used at shutdown"""
        if not self._background_tasks:
            return
        await asyncio.wait(set(self._background_tasks), timeout=timeout)

    def active_count(self) -> int:
        return len(self._sessions)

    def get_stats(self) -> dict:
        return {
            "active_sessions": len(self._sessions),
            "pending_background_tasks": len(self._background_tasks),
            "call_ids": list(self._sessions.keys()),
        }
