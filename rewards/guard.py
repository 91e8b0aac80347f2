"""Duplicate detection for completion events.

Lookups run in the processor's transaction after the wallet row is locked, so
a concurrent delivery of the same event sees the first one's committed record.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import CompletionStatus
from .tables import CompletionRecord


def find_partner_record(
    session: Session, user_id: UUID, external_transaction_id: str
) -> Optional[CompletionRecord]:
    stmt = select(CompletionRecord).where(
        CompletionRecord.user_id == user_id,
        CompletionRecord.external_transaction_id == external_transaction_id,
    )
    return session.scalars(stmt).one_or_none()


def find_survey_record(
    session: Session, user_id: UUID, survey_id: UUID
) -> Optional[CompletionRecord]:
    """The in-app record for a survey, most advanced status first."""
    stmt = (
        select(CompletionRecord)
        .where(
            CompletionRecord.user_id == user_id,
            CompletionRecord.survey_id == survey_id,
            CompletionRecord.external_transaction_id.is_(None),
        )
        .order_by(CompletionRecord.created_at.desc())
    )
    records = list(session.scalars(stmt))
    for status in (CompletionStatus.COMPLETED, CompletionStatus.STARTED):
        for record in records:
            if record.status == status:
                return record
    return records[0] if records else None


def is_duplicate(session: Session, user_id: UUID, external_transaction_id: str) -> bool:
    record = find_partner_record(session, user_id, external_transaction_id)
    return record is not None and record.status == CompletionStatus.COMPLETED


def has_completed_survey(session: Session, user_id: UUID, survey_id: UUID) -> bool:
    record = find_survey_record(session, user_id, survey_id)
    return record is not None and record.status == CompletionStatus.COMPLETED
