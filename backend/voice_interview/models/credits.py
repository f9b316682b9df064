from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

class LedgerEntry(BaseModel):
    user_id: str
    amount: int
    entry_type: str = "restore"
    reason: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)

class RestoreResult(BaseModel):
    success: bool
    applied: bool  # False when the idempotency key was already used
    idempotency_key: Optional[str] = None
    error: Optional[str] = None
