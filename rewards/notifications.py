from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import get_settings
from .log import get_logger
from .tables import Notification

logger = get_logger(__name__)


class RewardNotifier:
    """Tells the user about an accepted credit. Storage failures are logged, not raised."""

    def __init__(self, session_factory: sessionmaker, currency: Optional[str] = None):
        self.session_factory = session_factory
        self.currency = currency or get_settings().DEFAULT_CURRENCY

    def notify_reward(self, user_id: UUID, survey_title: str, reward_amount: Decimal) -> None:
        try:
            with self.session_factory() as session, session.begin():
                session.add(Notification(
                    user_id=user_id,
                    title="Survey Completed!",
                    message=f"You earned {self.currency} {reward_amount} for \"{survey_title}\". Check your wallet.",
                    type="survey_completed",
                    data={"survey_title": survey_title, "reward_amount": str(reward_amount)},
                ))
        except SQLAlchemyError:
            logger.exception("Could not store reward notification for user %s", user_id)
