import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CPX_SECURE_HASH", "test-secure-hash")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from rewards.api import app, get_processor
from rewards.database import Base, make_engine, make_session_factory
from rewards.models import SurveyStatus
from rewards.service import CompletionProcessor
from rewards.tables import Profile, SurveySpec


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def processor(session_factory):
    return CompletionProcessor(session_factory)


@pytest.fixture
def make_user(session_factory):
    def _make_user(email=None):
        user_id = uuid4()
        with session_factory() as session, session.begin():
            session.add(Profile(id=user_id, email=email or f"{user_id.hex[:8]}@example.com"))
        return user_id
    return _make_user


@pytest.fixture
def user_id(make_user):
    return make_user()


@pytest.fixture
def make_survey(session_factory):
    def _make_survey(reward=Decimal("25.00"), max_completions=None, status=SurveyStatus.AVAILABLE):
        survey_id = uuid4()
        with session_factory() as session, session.begin():
            session.add(SurveySpec(
                id=survey_id,
                title="Household Shopping Habits",
                reward_amount=reward,
                status=status,
                current_completions=0,
                max_completions=max_completions,
            ))
        return survey_id
    return _make_survey


@pytest.fixture
def client(processor):
    app.dependency_overrides[get_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()
