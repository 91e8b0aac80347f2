"""
Unit Tests for the Completion Processor

Tests cover:
1. Completion crediting
2. Idempotency (duplicate and concurrent deliveries)
3. Reversal flow and the clamp policy
4. Storage failures
5. Notifications
"""

import threading
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from rewards import guard
from rewards.models import CompletionStatus, OutcomeKind, SurveyStatus
from rewards.service import (
    CompletionProcessor,
    InvalidAmountError,
    StorageUnavailableError,
    SurveyNotFoundError,
    SurveyUnavailableError,
    UserNotFoundError,
)
from rewards.tables import CompletionRecord, Notification, SurveySpec, Wallet


def _records(session_factory, user_id):
    with session_factory() as session:
        return list(session.scalars(
            select(CompletionRecord).where(CompletionRecord.user_id == user_id)
        ))


def _count(session_factory, model):
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


class TestCompletionFlow:
    """Tests for crediting a completion."""

    def test_first_completion_credits_wallet(self, processor, session_factory, user_id):
        """A new completion creates the wallet and one completed record."""
        outcome = processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert outcome.balance == Decimal("25.00")
        assert outcome.total_earned == Decimal("25.00")

        wallet = processor.get_wallet(user_id)
        assert wallet.balance == Decimal("25.00")
        assert wallet.total_earned == Decimal("25.00")

        records = _records(session_factory, user_id)
        assert len(records) == 1
        assert records[0].status == CompletionStatus.COMPLETED
        assert records[0].reward_earned == Decimal("25.00")
        assert records[0].external_transaction_id == "tx1"
        assert records[0].completed_at is not None

    def test_rewards_accumulate_with_half_up_rounding(self, processor, user_id):
        """Every sum is rounded to cents, halves rounding up."""
        processor.process_completion(user_id, "tx-a", "offer1", Decimal("10.005"))
        outcome = processor.process_completion(user_id, "tx-b", "offer2", "0.10")

        assert outcome.balance == Decimal("10.11")
        assert outcome.total_earned == Decimal("10.11")

    def test_zero_reward_is_accepted(self, processor, user_id):
        outcome = processor.process_completion(user_id, "tx-zero", "offer1", Decimal("0"))

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert outcome.balance == Decimal("0.00")

    def test_partner_offer_registered_once(self, processor, session_factory, make_user):
        """Unseen partner offers get a survey row, later sightings reuse it."""
        first, second = make_user(), make_user()
        processor.process_completion(first, "tx1", "offer-42", Decimal("5.00"))
        processor.process_completion(second, "tx2", "offer-42", Decimal("5.00"))

        with session_factory() as session:
            surveys = list(session.scalars(
                select(SurveySpec).where(SurveySpec.external_survey_id == "offer-42")
            ))
        assert len(surveys) == 1
        assert surveys[0].current_completions == 2
        assert surveys[0].provider == "cpx"

    def test_unknown_user_rejected_without_side_effects(self, processor, session_factory):
        with pytest.raises(UserNotFoundError):
            processor.process_completion(uuid4(), "tx1", "offer7", Decimal("25.00"))

        assert _count(session_factory, Wallet) == 0
        assert _count(session_factory, CompletionRecord) == 0

    @pytest.mark.parametrize(
        "amount",
        [
            Decimal("-1.00"),
            Decimal("NaN"),
            Decimal("Infinity"),
            "abc",
            None,
            "1e40",
            Decimal("10000000000"),
            Decimal("9999999999.995"),
        ],
    )
    def test_invalid_amount_rejected(self, processor, session_factory, user_id, amount):
        with pytest.raises(InvalidAmountError):
            processor.process_completion(user_id, "tx1", "offer7", amount)

        assert _count(session_factory, CompletionRecord) == 0

    def test_in_app_completion_keys_on_survey(self, processor, session_factory, user_id, make_survey):
        """Without a transaction id the survey itself is the dedup key."""
        survey_id = make_survey(reward=Decimal("12.50"))

        first = processor.process_completion(user_id, None, str(survey_id), Decimal("12.50"))
        second = processor.process_completion(user_id, "", str(survey_id), Decimal("12.50"))

        assert first.kind == OutcomeKind.ACCEPTED
        assert second.kind == OutcomeKind.ALREADY_PROCESSED
        assert processor.get_wallet(user_id).balance == Decimal("12.50")
        assert len(_records(session_factory, user_id)) == 1

    def test_in_app_completion_unknown_survey(self, processor, user_id):
        with pytest.raises(SurveyNotFoundError):
            processor.process_completion(user_id, None, "not-a-survey", Decimal("1.00"))

    def test_largest_amount_accepted(self, processor, user_id):
        outcome = processor.process_completion(user_id, "tx-big", "offer1", Decimal("9999999999.99"))

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert outcome.balance == Decimal("9999999999.99")

    def test_in_app_completion_refuses_partner_offer(self, processor, session_factory, make_user):
        """Partner offers are only credited through signed postbacks."""
        partner_user, other = make_user(), make_user()
        processor.process_completion(partner_user, "txA", "offer-42", Decimal("500.00"))
        with session_factory() as session:
            offer = session.scalars(
                select(SurveySpec).where(SurveySpec.external_survey_id == "offer-42")
            ).one()

        with pytest.raises(SurveyNotFoundError):
            processor.process_completion(other, None, str(offer.id), Decimal("500.00"))

        assert _records(session_factory, other) == []
        assert _count(session_factory, Wallet) == 1

    @pytest.mark.parametrize("status", [SurveyStatus.EXPIRED, SurveyStatus.BLOCKED])
    def test_in_app_completion_of_closed_survey(self, processor, session_factory, user_id, make_survey, status):
        survey_id = make_survey(status=status)

        with pytest.raises(SurveyUnavailableError):
            processor.process_completion(user_id, None, str(survey_id), Decimal("25.00"))

        assert _records(session_factory, user_id) == []

    def test_in_app_completion_of_full_survey(self, processor, make_user, make_survey):
        survey_id = make_survey(reward=Decimal("1.00"), max_completions=1)
        first, second = make_user(), make_user()
        processor.process_completion(first, None, str(survey_id), Decimal("1.00"))

        with pytest.raises(SurveyUnavailableError):
            processor.process_completion(second, None, str(survey_id), Decimal("1.00"))

        # The user who took the last slot still gets an idempotent answer.
        replay = processor.process_completion(first, None, str(survey_id), Decimal("1.00"))
        assert replay.kind == OutcomeKind.ALREADY_PROCESSED

    def test_in_app_integrity_error_is_not_a_duplicate(self, processor, user_id, make_survey, monkeypatch):
        survey_id = make_survey()

        def violates(*args):
            raise IntegrityError("INSERT INTO user_surveys", {}, Exception("CHECK constraint failed"))

        monkeypatch.setattr(processor, "_apply_completion", violates)

        with pytest.raises(IntegrityError):
            processor.process_completion(user_id, None, str(survey_id), Decimal("25.00"))


class TestIdempotency:
    """Tests for duplicate and concurrent deliveries."""

    def test_redelivery_does_not_double_credit(self, processor, session_factory, user_id):
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))
        outcome = processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        assert outcome.kind == OutcomeKind.ALREADY_PROCESSED
        assert outcome.balance == Decimal("25.00")
        assert processor.get_wallet(user_id).balance == Decimal("25.00")
        assert len(_records(session_factory, user_id)) == 1

    def test_is_duplicate_only_for_completed(self, processor, session_factory, user_id):
        processor.process_completion(user_id, "tx1", "offer7", Decimal("3.00"))

        with session_factory() as session:
            assert guard.is_duplicate(session, user_id, "tx1")
            assert not guard.is_duplicate(session, user_id, "tx2")

        processor.process_cancellation(user_id, "tx1")
        with session_factory() as session:
            assert not guard.is_duplicate(session, user_id, "tx1")

    def test_same_transaction_id_for_different_users(self, processor, make_user):
        """The key is the (user, transaction) pair, not the transaction alone."""
        first, second = make_user(), make_user()

        assert processor.process_completion(first, "tx1", "offer7", Decimal("1.00")).kind == OutcomeKind.ACCEPTED
        assert processor.process_completion(second, "tx1", "offer7", Decimal("1.00")).kind == OutcomeKind.ACCEPTED

    def test_unique_constraint_backstop(self, processor, session_factory, user_id, monkeypatch):
        """If the application check misses a race, the store rejects the insert."""
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))
        monkeypatch.setattr("rewards.service.find_partner_record", lambda *args: None)

        outcome = processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        assert outcome.kind == OutcomeKind.ALREADY_PROCESSED
        assert processor.get_wallet(user_id).balance == Decimal("25.00")
        assert len(_records(session_factory, user_id)) == 1

    def test_concurrent_deliveries_credit_once(self, processor, session_factory, user_id):
        deliveries = 5
        barrier = threading.Barrier(deliveries)
        outcomes, errors = [], []

        def deliver():
            barrier.wait()
            try:
                outcomes.append(
                    processor.process_completion(user_id, "tx-race", "offer7", Decimal("10.00"))
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(deliveries)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        kinds = [outcome.kind for outcome in outcomes]
        assert kinds.count(OutcomeKind.ACCEPTED) == 1
        assert kinds.count(OutcomeKind.ALREADY_PROCESSED) == deliveries - 1
        assert processor.get_wallet(user_id).balance == Decimal("10.00")
        assert len(_records(session_factory, user_id)) == 1

    def test_concurrent_in_app_completions_credit_once(self, processor, session_factory, user_id, make_survey):
        """In-app records have no transaction id; the wallet lock alone serializes them."""
        survey_id = make_survey(reward=Decimal("10.00"))
        attempts = 5
        barrier = threading.Barrier(attempts)
        outcomes, errors = [], []

        def complete():
            barrier.wait()
            try:
                outcomes.append(
                    processor.process_completion(user_id, None, str(survey_id), Decimal("10.00"))
                )
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=complete) for _ in range(attempts)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        kinds = [outcome.kind for outcome in outcomes]
        assert kinds.count(OutcomeKind.ACCEPTED) == 1
        assert kinds.count(OutcomeKind.ALREADY_PROCESSED) == attempts - 1
        assert processor.get_wallet(user_id).balance == Decimal("10.00")
        records = _records(session_factory, user_id)
        assert [r.status for r in records] == [CompletionStatus.COMPLETED]


class TestCancellationFlow:
    """Tests for reversals."""

    def test_cancellation_reverses_credit(self, processor, session_factory, user_id):
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        outcome = processor.process_cancellation(user_id, "tx1")

        assert outcome.kind == OutcomeKind.REVERSED
        assert outcome.balance == Decimal("0.00")
        wallet = processor.get_wallet(user_id)
        assert wallet.balance == Decimal("0.00")
        assert wallet.total_earned == Decimal("0.00")

        records = _records(session_factory, user_id)
        assert len(records) == 1
        assert records[0].status == CompletionStatus.CANCELLED
        assert records[0].cancelled_at is not None

    def test_cancellation_without_completion_is_noop(self, processor, session_factory, user_id):
        outcome = processor.process_cancellation(user_id, "tx2")

        assert outcome.kind == OutcomeKind.NOTHING_TO_REVERSE
        assert _count(session_factory, Wallet) == 0
        assert _count(session_factory, CompletionRecord) == 0

    def test_double_cancellation_is_noop(self, processor, user_id):
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))
        processor.process_completion(user_id, "tx2", "offer8", Decimal("5.00"))
        processor.process_cancellation(user_id, "tx1")

        outcome = processor.process_cancellation(user_id, "tx1")

        assert outcome.kind == OutcomeKind.ALREADY_PROCESSED
        assert processor.get_wallet(user_id).balance == Decimal("5.00")

    def test_completion_after_cancellation_rejected(self, processor, session_factory, user_id):
        """A reversal is final; replaying the completion credits nothing."""
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))
        processor.process_cancellation(user_id, "tx1")

        outcome = processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        assert outcome.kind == OutcomeKind.REJECTED
        assert processor.get_wallet(user_id).balance == Decimal("0.00")
        records = _records(session_factory, user_id)
        assert [r.status for r in records] == [CompletionStatus.CANCELLED]

    def test_reversal_clamps_at_zero(self, processor, session_factory, user_id):
        """A reversal after a partial withdrawal empties the wallet, never below zero."""
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))
        with session_factory() as session, session.begin():
            wallet = session.scalars(select(Wallet).where(Wallet.user_id == user_id)).one()
            wallet.balance = Decimal("10.00")
            wallet.total_withdrawn = Decimal("15.00")

        outcome = processor.process_cancellation(user_id, "tx1")

        assert outcome.kind == OutcomeKind.REVERSED
        wallet = processor.get_wallet(user_id)
        assert wallet.balance == Decimal("0.00")
        assert wallet.total_earned == Decimal("0.00")
        assert wallet.total_withdrawn == Decimal("15.00")

    def test_cancellation_releases_survey_slot(self, processor, session_factory, user_id):
        processor.process_completion(user_id, "tx1", "offer7", Decimal("2.00"))
        processor.process_cancellation(user_id, "tx1")

        with session_factory() as session:
            survey = session.scalars(
                select(SurveySpec).where(SurveySpec.external_survey_id == "offer7")
            ).one()
        assert survey.current_completions == 0

    def test_total_earned_matches_completed_records(self, processor, session_factory, user_id):
        events = [
            ("complete", "tx1", Decimal("10.10")),
            ("complete", "tx2", Decimal("3.35")),
            ("cancel", "tx1", None),
            ("complete", "tx3", Decimal("7.00")),
            ("complete", "tx2", Decimal("3.35")),
            ("cancel", "tx9", None),
            ("cancel", "tx3", None),
            ("complete", "tx4", Decimal("0.45")),
        ]
        for action, tx, amount in events:
            if action == "complete":
                processor.process_completion(user_id, tx, f"offer-{tx}", amount)
            else:
                processor.process_cancellation(user_id, tx)
            assert processor.get_wallet(user_id).balance >= 0

        completed = sum(
            r.reward_earned
            for r in _records(session_factory, user_id)
            if r.status == CompletionStatus.COMPLETED
        )
        wallet = processor.get_wallet(user_id)
        assert wallet.total_earned == completed == Decimal("3.80")
        assert wallet.balance == Decimal("3.80")


class _UnavailableSessionFactory:
    def __call__(self):
        raise OperationalError("BEGIN IMMEDIATE", {}, Exception("database is locked"))


class TestStorageFailures:
    """Storage errors surface as a transient, retryable error."""

    def test_completion_storage_unavailable(self, user_id):
        processor = CompletionProcessor(_UnavailableSessionFactory())

        with pytest.raises(StorageUnavailableError):
            processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

    def test_cancellation_storage_unavailable(self, user_id):
        processor = CompletionProcessor(_UnavailableSessionFactory())

        with pytest.raises(StorageUnavailableError):
            processor.process_cancellation(user_id, "tx1")


class TestNotifications:
    """Accepted credits notify the user, best effort."""

    def test_accepted_completion_notifies(self, processor, session_factory, user_id):
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))
        processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        with session_factory() as session:
            notifications = list(session.scalars(select(Notification)))
        assert len(notifications) == 1
        assert notifications[0].user_id == user_id
        assert notifications[0].type == "survey_completed"
        assert "25.00" in notifications[0].message

    def test_failing_notifier_keeps_credit(self, session_factory, user_id):
        class BrokenNotifier:
            def notify_reward(self, *args):
                raise RuntimeError("notification service down")

        processor = CompletionProcessor(session_factory, notifier=BrokenNotifier())

        outcome = processor.process_completion(user_id, "tx1", "offer7", Decimal("25.00"))

        assert outcome.kind == OutcomeKind.ACCEPTED
        assert processor.get_wallet(user_id).balance == Decimal("25.00")
