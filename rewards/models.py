from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CompletionStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SurveyStatus(str, Enum):
    AVAILABLE = "available"
    COMPLETED = "completed"
    EXPIRED = "expired"
    BLOCKED = "blocked"


class ProfileStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class PostbackStatus(int, Enum):
    """The partner's `status` query parameter."""

    UNKNOWN = 0
    COMPLETED = 1
    CANCELLED = 2

    @classmethod
    def from_code(cls, raw: Optional[str]) -> "PostbackStatus":
        try:
            return cls(int(raw))
        except (TypeError, ValueError):
            return cls.UNKNOWN


class OutcomeKind(str, Enum):
    ACCEPTED = "ACCEPTED"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    NOTHING_TO_REVERSE = "NOTHING_TO_REVERSE"
    REVERSED = "REVERSED"
    REJECTED = "REJECTED"
    IGNORED = "IGNORED"


class Outcome(BaseModel):
    """Result of feeding one event to the completion processor.

    Every kind is final from the sender's point of view: retrying the same
    event can never change it. Transient failures are raised, not returned.
    """

    kind: OutcomeKind
    user_id: UUID
    external_transaction_id: Optional[str] = None
    record_id: Optional[UUID] = None
    balance: Optional[Decimal] = None
    total_earned: Optional[Decimal] = None
    message: str


class WalletSnapshot(BaseModel):
    user_id: UUID
    balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CompletionRecordOut(BaseModel):
    id: UUID
    user_id: UUID
    survey_id: UUID
    external_transaction_id: Optional[str] = None
    status: CompletionStatus
    reward_earned: Decimal
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CompletionHistoryResponse(BaseModel):
    user_id: UUID
    records: list[CompletionRecordOut]
    total_count: int


class StartSurveyRequest(BaseModel):
    user_id: UUID


class CompleteSurveyRequest(BaseModel):
    user_id: UUID
    survey_id: UUID
    reward_amount: Optional[Decimal] = Field(
        default=None, description="Must match the survey's reward unless the caller is an admin"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "550e8400-e29b-41d4-a716-446655440000",
            "survey_id": "11111111-1111-1111-1111-111111111111",
            "reward_amount": 25.00,
        }
    })
