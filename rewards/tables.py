"""Relational schema of the ledger: profiles, wallets, surveys, completions."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .models import CompletionStatus, ProfileStatus, SurveyStatus

MONEY = Numeric(12, 2)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


def _enum_column(enum_cls, name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=enum_values,
        validate_strings=True,
        native_enum=False,
    )


class Profile(Base):
    """User account. Owned by the auth system, only read here."""

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[ProfileStatus] = mapped_column(
        _enum_column(ProfileStatus, "user_status"),
        default=ProfileStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


class Wallet(Base):
    __tablename__ = "wallets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), unique=True, index=True, nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0.00"), nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(
        MONEY, default=Decimal("0.00"), nullable=False
    )
    # Maintained by the payout subsystem.
    total_withdrawn: Mapped[Decimal] = mapped_column(
        MONEY, default=Decimal("0.00"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
        CheckConstraint("total_earned >= 0", name="ck_wallet_total_earned_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Wallet user_id={self.user_id} balance={self.balance}>"


class SurveySpec(Base):
    __tablename__ = "surveys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Partner offer id. Unique so concurrent first sightings share one row.
    external_survey_id: Mapped[Optional[str]] = mapped_column(
        String, unique=True, index=True, nullable=True
    )
    provider: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    reward_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    estimated_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[SurveyStatus] = mapped_column(
        _enum_column(SurveyStatus, "survey_status"),
        default=SurveyStatus.AVAILABLE,
        nullable=False,
    )
    current_completions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_completions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def is_full(self) -> bool:
        return (
            self.max_completions is not None
            and self.current_completions >= self.max_completions
        )

    def is_partner_offer(self) -> bool:
        """Partner offers are credited by signed postbacks only."""
        return self.external_survey_id is not None


class CompletionRecord(Base):
    """One row per started, completed or cancelled survey for a user."""

    __tablename__ = "user_surveys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), index=True, nullable=False
    )
    survey_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("surveys.id"), index=True, nullable=False
    )
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[CompletionStatus] = mapped_column(
        _enum_column(CompletionStatus, "completion_status"), nullable=False
    )
    reward_earned: Mapped[Decimal] = mapped_column(
        MONEY, default=Decimal("0.00"), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Partner passthrough, audit only.
    offer_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    amount_usd: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 4), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        # NULL transaction ids (in-app completions) never collide.
        UniqueConstraint(
            "user_id", "external_transaction_id", name="uq_user_surveys_user_transaction"
        ),
        CheckConstraint("reward_earned >= 0", name="ck_user_surveys_reward_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<CompletionRecord {self.id} {self.status.value} {self.reward_earned}>"


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("profiles.id"), index=True, nullable=False
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
