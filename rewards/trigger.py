"""In-app survey flow: starting and completing internally hosted surveys.

There is no partner signature on this path, so the caller's identity is the
guard: only the wallet owner, or an admin marking a survey completed by hand,
may credit a user.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from .auth import AuthUser
from .guard import find_survey_record, has_completed_survey
from .log import get_logger
from .models import (
    CompletionRecordOut,
    CompletionStatus,
    OutcomeKind,
    WalletSnapshot,
)
from .money import ZERO
from .service import (
    CompletionProcessor,
    InvalidAmountError,
    NotAuthorizedError,
    SurveyAlreadyCompletedError,
    SurveyAlreadyStartedError,
    SurveyNotFoundError,
    UserNotFoundError,
    coerce_amount,
    ensure_open_for_completion,
)
from .store import get_profile, get_survey
from .tables import CompletionRecord, SurveySpec, utc_now

logger = get_logger(__name__)


def authorize(caller: AuthUser, user_id: UUID) -> None:
    if caller.is_admin or caller.user_id == str(user_id):
        return
    logger.warning("User %s attempted to act on behalf of %s", caller.user_id, user_id)
    raise NotAuthorizedError("Callers may only act on their own account")


class SurveyCompletionTrigger:
    def __init__(self, processor: CompletionProcessor):
        self.processor = processor

    @staticmethod
    def _hosted_survey(session: Session, survey_id: UUID) -> SurveySpec:
        survey = get_survey(session, survey_id)
        if survey is None or survey.is_partner_offer():
            raise SurveyNotFoundError(f"Survey {survey_id} not found")
        return survey

    def start_survey(self, caller: AuthUser, user_id: UUID, survey_id: UUID) -> CompletionRecordOut:
        authorize(caller, user_id)

        with self.processor.unit_of_work() as session:
            if get_profile(session, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            survey = self._hosted_survey(session, survey_id)
            ensure_open_for_completion(survey)

            existing = find_survey_record(session, user_id, survey_id)
            if existing is not None:
                if existing.status == CompletionStatus.COMPLETED:
                    raise SurveyAlreadyCompletedError("You have already completed this survey.")
                raise SurveyAlreadyStartedError("You have already started this survey.")

            record = CompletionRecord(
                user_id=user_id,
                survey_id=survey_id,
                status=CompletionStatus.STARTED,
                reward_earned=ZERO,
                started_at=utc_now(),
            )
            session.add(record)
            session.flush()
            logger.info("User %s started survey %s", user_id, survey_id)
            return CompletionRecordOut.model_validate(record)

    def complete_survey(
        self,
        caller: AuthUser,
        user_id: UUID,
        survey_id: UUID,
        reward_amount: Optional[Decimal] = None,
    ) -> WalletSnapshot:
        authorize(caller, user_id)

        with self.processor.unit_of_work() as session:
            survey = self._hosted_survey(session, survey_id)
            if has_completed_survey(session, user_id, survey_id):
                raise SurveyAlreadyCompletedError("You have already completed this survey.")
            ensure_open_for_completion(survey)
            catalog_reward = survey.reward_amount

        amount = catalog_reward
        if reward_amount is not None:
            requested = coerce_amount(reward_amount)
            if not caller.is_admin and requested != catalog_reward:
                raise InvalidAmountError(
                    f"Reward {requested} does not match the survey reward {catalog_reward}"
                )
            amount = requested

        outcome = self.processor.process_completion(user_id, None, str(survey_id), amount)
        if outcome.kind == OutcomeKind.ALREADY_PROCESSED:
            raise SurveyAlreadyCompletedError("You have already completed this survey.")

        return self.processor.get_wallet(user_id)
