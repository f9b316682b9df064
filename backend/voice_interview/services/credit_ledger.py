import logging
from typing import Optional
from pymongo.errors import DuplicateKeyError, PyMongoError

from voice_interview.models.credits import LedgerEntry, RestoreResult

logger = logging.getLogger(__name__)

def restore_key_for_call(call_id: str) -> str:
    return f"restore_call_{call_id}"

class CreditLedger:
    """Append-only credit ledger; a unique index on idempotency_key makes restores apply once"""

    def __init__(self, collection):
        self.collection = collection

    def restore(
        self,
        user_id: str,
        amount: int,
        reason: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RestoreResult:
        entry = LedgerEntry(
            user_id=user_id,
            amount=amount,
            entry_type="restore",
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )

        try:
            self.collection.insert_one(entry.model_dump(exclude_none=True))
        except DuplicateKeyError:
            logger.info(f"🔁 [LEDGER] Restore already applied for key {idempotency_key}")
            return RestoreResult(success=True, applied=False, idempotency_key=idempotency_key)
        except PyMongoError as e:
            logger.error(f"❌ [LEDGER] Restore failed for user {user_id}: {e}")
            return RestoreResult(success=False, applied=False, idempotency_key=idempotency_key, error=str(e))

        logger.info(f"✅ [LEDGER] Restored {amount} credit(s) to user {user_id} ({reason})")
        return RestoreResult(success=True, applied=True, idempotency_key=idempotency_key)

    def balance_delta(self, user_id: str) -> int:
        """Sum of restored credits recorded for a user"""
        return sum(doc.get("amount", 0) for doc in self.collection.find({"user_id": user_id}))
