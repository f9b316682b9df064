import time
import threading
import logging
from typing import Dict, Optional, Tuple

from voice_interview.core.config import settings
from voice_interview.models.session import CallContext

logger = logging.getLogger(__name__)

class CallContextStore:
    """In-memory per-call static data with a time-to-live"""

    def __init__(self, ttl_seconds: int = 7200):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[str, Tuple[CallContext, float]] = {}
        self._lock = threading.Lock()

    def store(self, context: CallContext) -> None:
        with self._lock:
            self._entries[context.call_id] = (context, time.time())
        logger.info(f"📥 [CONTEXT] Stored context for call {context.call_id}")

    def get(self, call_id: str) -> Optional[CallContext]:
        with self._lock:
            entry = self._entries.get(call_id)
            if entry is None:
                return None
            context, stored_at = entry
            if time.time() - stored_at > self.ttl_seconds:
                del self._entries[call_id]
                logger.info(f"⌛ [CONTEXT] Context for call {call_id} expired")
                return None
            return context

    def remove(self, call_id: str) -> bool:
        with self._lock:
            return self._entries.pop(call_id, None) is not None

    def cleanup_expired(self) -> int:
        """Drop entries older than the TTL"""
        current_time = time.time()
        with self._lock:
            expired = [
                call_id for call_id, (_, stored_at) in self._entries.items()
                if current_time - stored_at > self.ttl_seconds
            ]
            for call_id in expired:
                del self._entries[call_id]

        if expired:
            logger.info(f"🧹 [CONTEXT] Purged {len(expired)} expired call contexts")
        return len(expired)

    def get_stats(self) -> dict:
        with self._lock:
            current_time = time.time()
            ages = [current_time - stored_at for _, stored_at in self._entries.values()]
            return {
                "total_contexts": len(self._entries),
                "oldest_context_age_seconds": max(ages) if ages else 0,
                "ttl_seconds": self.ttl_seconds,
            }

call_context_store = CallContextStore(ttl_seconds=settings.CALL_CONTEXT_TTL_SECONDS)
