"""Row accessors for the ledger tables.

All helpers run inside the caller's transaction and never commit.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .log import get_logger
from .models import SurveyStatus
from .money import ZERO, round2
from .tables import Profile, SurveySpec, Wallet

logger = get_logger(__name__)


def get_profile(session: Session, user_id: UUID) -> Optional[Profile]:
    return session.get(Profile, user_id)


def get_survey(session: Session, survey_id: UUID) -> Optional[SurveySpec]:
    return session.get(SurveySpec, survey_id)


def lock_wallet(session: Session, user_id: UUID) -> Wallet:
    """Return the user's wallet row locked for update, creating it at zero.

    Two first-time writers race on the unique ``user_id``; the loser's insert
    is rolled back to a savepoint and it locks the winner's row instead.
    """
    stmt = select(Wallet).where(Wallet.user_id == user_id).with_for_update()
    wallet = session.scalars(stmt).one_or_none()
    if wallet is not None:
        return wallet

    try:
        with session.begin_nested():
            wallet = Wallet(
                user_id=user_id,
                balance=ZERO,
                total_earned=ZERO,
                total_withdrawn=ZERO,
            )
            session.add(wallet)
    except IntegrityError:
        logger.info("Wallet for user %s created concurrently, re-reading", user_id)
        return session.scalars(stmt).one()

    logger.info("Created wallet for user %s", user_id)
    return wallet


def get_or_create_partner_survey(
    session: Session,
    offer_id: str,
    reward_amount: Decimal,
    provider: str,
) -> SurveySpec:
    stmt = select(SurveySpec).where(SurveySpec.external_survey_id == offer_id)
    survey = session.scalars(stmt).one_or_none()
    if survey is not None:
        return survey

    try:
        with session.begin_nested():
            survey = SurveySpec(
                title=f"{provider.upper()} Survey {offer_id}",
                description=f"Survey from the {provider} partner network",
                external_survey_id=offer_id,
                provider=provider,
                reward_amount=round2(reward_amount),
                estimated_time=10,
                status=SurveyStatus.AVAILABLE,
                current_completions=0,
            )
            session.add(survey)
    except IntegrityError:
        return session.scalars(stmt).one()

    logger.info("Registered partner offer %s from %s", offer_id, provider)
    return survey
