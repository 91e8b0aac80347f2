from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterator, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .database import SessionLocal
from .guard import find_partner_record, find_survey_record
from .log import get_logger
from .models import (
    CompletionHistoryResponse,
    CompletionRecordOut,
    CompletionStatus,
    Outcome,
    OutcomeKind,
    SurveyStatus,
    WalletSnapshot,
)
from .money import MAX_AMOUNT, ZERO, is_valid_amount, round2
from .notifications import RewardNotifier
from .store import (
    get_or_create_partner_survey,
    get_profile,
    get_survey,
    lock_wallet,
)
from .tables import CompletionRecord, SurveySpec, Wallet, utc_now

logger = get_logger(__name__)


class RewardsError(Exception):
    pass


class UserNotFoundError(RewardsError):
    pass


class InvalidAmountError(RewardsError):
    pass


class StorageUnavailableError(RewardsError):
    """Transient. The event was not applied and is safe to redeliver."""


class SurveyNotFoundError(RewardsError):
    pass


class SurveyUnavailableError(RewardsError):
    pass


class SurveyAlreadyStartedError(RewardsError):
    pass


class SurveyAlreadyCompletedError(RewardsError):
    pass


class NotAuthorizedError(RewardsError):
    pass


def coerce_amount(value) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidAmountError(f"Invalid reward amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if amount.is_finite():
            amount = round2(amount)
    except InvalidOperation:
        raise InvalidAmountError(f"Invalid reward amount: {value!r}")
    if not is_valid_amount(amount):
        raise InvalidAmountError(
            f"Reward amount must be non-negative and below {MAX_AMOUNT}, got {value!r}"
        )
    return amount


def ensure_open_for_completion(survey: SurveySpec) -> None:
    if survey.status != SurveyStatus.AVAILABLE or survey.is_full():
        raise SurveyUnavailableError(f"Survey {survey.id} is not accepting responses")


class CompletionProcessor:
    """The only writer of wallet balances and earnings.

    Each event is applied in a single database transaction: wallet row lock,
    duplicate check, ledger record, balance update. Partner events follow
    the state machine ``unseen -> completed -> cancelled`` keyed on
    ``(user_id, external_transaction_id)``; in-app events key on
    ``(user_id, survey_id)``.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        notifier: Optional[RewardNotifier] = None,
        provider: Optional[str] = None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.notifier = notifier if notifier is not None else RewardNotifier(self.session_factory)
        self.provider = provider or get_settings().CPX_PROVIDER_NAME

    @contextmanager
    def unit_of_work(self) -> Iterator[Session]:
        try:
            with self.session_factory() as session, session.begin():
                yield session
        except IntegrityError:
            # A constraint violation is a verdict on the event, not an outage.
            raise
        except (DBAPIError, PoolTimeoutError) as e:
            logger.error("Ledger store unavailable: %s", e.__class__.__name__)
            raise StorageUnavailableError("Ledger store unavailable") from e

    def process_completion(
        self,
        user_id: UUID,
        external_transaction_id: Optional[str],
        survey_reference: str,
        reward_amount,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        *,
        amount_usd: Optional[Decimal] = None,
        ip_address: Optional[str] = None,
    ) -> Outcome:
        amount = coerce_amount(reward_amount)
        external_transaction_id = external_transaction_id or None

        try:
            with self.unit_of_work() as session:
                outcome, survey_title = self._apply_completion(
                    session,
                    user_id,
                    external_transaction_id,
                    survey_reference,
                    amount,
                    started_at,
                    completed_at,
                    amount_usd,
                    ip_address,
                )
        except IntegrityError:
            # Backstop: a concurrent delivery inserted the same record first.
            # In-app records carry no transaction id, so nothing unique can collide.
            if external_transaction_id is None:
                raise
            logger.warning(
                "Duplicate completion for user %s transaction %s rejected by the store",
                user_id,
                external_transaction_id,
            )
            return Outcome(
                kind=OutcomeKind.ALREADY_PROCESSED,
                user_id=user_id,
                external_transaction_id=external_transaction_id,
                message="Completion already recorded (idempotent return)",
            )

        if outcome.kind == OutcomeKind.ACCEPTED:
            self._notify(user_id, survey_title, amount)
        return outcome

    def _apply_completion(
        self,
        session: Session,
        user_id: UUID,
        external_transaction_id: Optional[str],
        survey_reference: str,
        amount: Decimal,
        started_at: Optional[datetime],
        completed_at: Optional[datetime],
        amount_usd: Optional[Decimal],
        ip_address: Optional[str],
    ) -> tuple[Outcome, Optional[str]]:
        if get_profile(session, user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")

        wallet = lock_wallet(session, user_id)
        now = utc_now()

        if external_transaction_id is not None:
            existing = find_partner_record(session, user_id, external_transaction_id)
            if existing is not None:
                return self._replayed_completion(existing, wallet), None

            survey = get_or_create_partner_survey(
                session, survey_reference, amount, self.provider
            )
            record = CompletionRecord(
                user_id=user_id,
                survey_id=survey.id,
                external_transaction_id=external_transaction_id,
                offer_id=survey_reference,
                amount_usd=amount_usd,
                ip_address=ip_address,
                started_at=started_at or now,
            )
            session.add(record)
        else:
            survey = self._internal_survey(session, survey_reference)
            record = find_survey_record(session, user_id, survey.id)
            if record is not None and record.status == CompletionStatus.COMPLETED:
                logger.info(
                    "Survey %s already completed by user %s, not crediting again",
                    survey.id,
                    user_id,
                )
                return Outcome(
                    kind=OutcomeKind.ALREADY_PROCESSED,
                    user_id=user_id,
                    record_id=record.id,
                    balance=wallet.balance,
                    total_earned=wallet.total_earned,
                    message="Survey already completed",
                ), None
            ensure_open_for_completion(survey)
            if record is None:
                record = CompletionRecord(
                    user_id=user_id, survey_id=survey.id, started_at=started_at or now
                )
                session.add(record)

        record.status = CompletionStatus.COMPLETED
        record.reward_earned = amount
        record.completed_at = completed_at or now
        session.flush()

        balance_before = wallet.balance
        wallet.balance = round2(wallet.balance + amount)
        wallet.total_earned = round2(wallet.total_earned + amount)
        wallet.updated_at = now
        survey.current_completions += 1

        logger.info(
            "Credit %s to user %s (survey=%s transaction=%s), balance %s -> %s",
            amount,
            user_id,
            survey.id,
            external_transaction_id,
            balance_before,
            wallet.balance,
        )
        return Outcome(
            kind=OutcomeKind.ACCEPTED,
            user_id=user_id,
            external_transaction_id=external_transaction_id,
            record_id=record.id,
            balance=wallet.balance,
            total_earned=wallet.total_earned,
            message="Completion credited",
        ), survey.title

    def _internal_survey(self, session: Session, survey_reference) -> SurveySpec:
        try:
            survey_id = survey_reference if isinstance(survey_reference, UUID) else UUID(str(survey_reference))
        except ValueError:
            raise SurveyNotFoundError(f"Survey {survey_reference} not found")
        survey = get_survey(session, survey_id)
        if survey is None or survey.is_partner_offer():
            raise SurveyNotFoundError(f"Survey {survey_reference} not found")
        return survey

    def _replayed_completion(self, record: CompletionRecord, wallet: Wallet) -> Outcome:
        if record.status == CompletionStatus.CANCELLED:
            logger.warning(
                "Completion replay for reversed transaction %s (user %s) rejected",
                record.external_transaction_id,
                record.user_id,
            )
            return Outcome(
                kind=OutcomeKind.REJECTED,
                user_id=record.user_id,
                external_transaction_id=record.external_transaction_id,
                record_id=record.id,
                balance=wallet.balance,
                total_earned=wallet.total_earned,
                message="Transaction was reversed and cannot be completed again",
            )

        logger.info(
            "Idempotent replay for transaction %s (user %s) -> record %s",
            record.external_transaction_id,
            record.user_id,
            record.id,
        )
        return Outcome(
            kind=OutcomeKind.ALREADY_PROCESSED,
            user_id=record.user_id,
            external_transaction_id=record.external_transaction_id,
            record_id=record.id,
            balance=wallet.balance,
            total_earned=wallet.total_earned,
            message="Completion already recorded (idempotent return)",
        )

    def process_cancellation(self, user_id: UUID, external_transaction_id: str) -> Outcome:
        """Reverse a partner completion.

        The debit is clamped at zero for both balance and lifetime earnings:
        if part of the reward was already withdrawn, the reversal takes what
        is left and the balance never goes negative.
        """
        if not external_transaction_id:
            raise RewardsError("Cancellation requires an external transaction id")

        with self.unit_of_work() as session:
            record = find_partner_record(session, user_id, external_transaction_id)
            if record is None:
                logger.info(
                    "Cancellation for unknown transaction %s (user %s), nothing to reverse",
                    external_transaction_id,
                    user_id,
                )
                return Outcome(
                    kind=OutcomeKind.NOTHING_TO_REVERSE,
                    user_id=user_id,
                    external_transaction_id=external_transaction_id,
                    message="No completion to reverse",
                )

            wallet = lock_wallet(session, user_id)
            # Re-read under the wallet lock; a concurrent reversal may have committed.
            session.refresh(record)

            if record.status == CompletionStatus.CANCELLED:
                logger.info(
                    "Transaction %s (user %s) already reversed",
                    external_transaction_id,
                    user_id,
                )
                return Outcome(
                    kind=OutcomeKind.ALREADY_PROCESSED,
                    user_id=user_id,
                    external_transaction_id=external_transaction_id,
                    record_id=record.id,
                    balance=wallet.balance,
                    total_earned=wallet.total_earned,
                    message="Completion already reversed",
                )

            now = utc_now()
            amount = record.reward_earned
            record.status = CompletionStatus.CANCELLED
            record.cancelled_at = now

            balance_before = wallet.balance
            wanted = round2(wallet.balance - amount)
            wallet.balance = max(ZERO, wanted)
            wallet.total_earned = max(ZERO, round2(wallet.total_earned - amount))
            wallet.updated_at = now
            if wanted < ZERO:
                logger.warning(
                    "Reversal of %s for user %s exceeds balance %s, clamped to zero",
                    amount,
                    user_id,
                    balance_before,
                )

            survey = get_survey(session, record.survey_id)
            if survey is not None and survey.current_completions > 0:
                survey.current_completions -= 1

            logger.info(
                "Reversed transaction %s for user %s, balance %s -> %s",
                external_transaction_id,
                user_id,
                balance_before,
                wallet.balance,
            )
            return Outcome(
                kind=OutcomeKind.REVERSED,
                user_id=user_id,
                external_transaction_id=external_transaction_id,
                record_id=record.id,
                balance=wallet.balance,
                total_earned=wallet.total_earned,
                message="Completion reversed",
            )

    def get_wallet(self, user_id: UUID) -> WalletSnapshot:
        with self.unit_of_work() as session:
            if get_profile(session, user_id) is None:
                raise UserNotFoundError(f"User {user_id} not found")
            wallet = session.scalars(
                select(Wallet).where(Wallet.user_id == user_id)
            ).one_or_none()
            if wallet is None:
                wallet = lock_wallet(session, user_id)
                session.flush()
            return WalletSnapshot.model_validate(wallet)

    def list_completions(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> CompletionHistoryResponse:
        with self.unit_of_work() as session:
            total = session.scalar(
                select(func.count())
                .select_from(CompletionRecord)
                .where(CompletionRecord.user_id == user_id)
            )
            records = session.scalars(
                select(CompletionRecord)
                .where(CompletionRecord.user_id == user_id)
                .order_by(CompletionRecord.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return CompletionHistoryResponse(
                user_id=user_id,
                records=[CompletionRecordOut.model_validate(r) for r in records],
                total_count=total or 0,
            )

    def _notify(self, user_id: UUID, survey_title: Optional[str], amount: Decimal) -> None:
        try:
            self.notifier.notify_reward(user_id, survey_title or "Survey", amount)
        except Exception:
            logger.exception("Reward notification failed for user %s", user_id)
