"""
Data models for storage layer.

Defines chat messages and the ledger record written for every query attempt.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Role(Enum):
    """Author of a chat message."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One message of the conversation prefix sent to the model."""
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of a single query attempt, success or failure.

    Append-only: entries are written once and never updated or deleted.
    ``id`` is the provider's request id and may be empty when the request
    failed before any chunk arrived. ``error`` is empty on success.

    Only input and output counts are stored, so entries read back from the
    ledger carry ``total_tokens`` as their sum rather than the provider's
    reported total.
    """
    id: str
    model: str
    prompt_text: str
    system_text: str
    response_text: str
    timestamp: datetime
    duration_ms: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    conversation_id: Optional[str] = None
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return not self.error

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation used by ``q logs --json``."""
        return {
            "request_id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "model": self.model,
            "prompt": self.prompt_text,
            "system": self.system_text,
            "response": self.response_text,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": self.estimated_cost,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }
