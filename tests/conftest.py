"""
Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database; the composition lock is
disabled so no redis server is needed.
"""
import os

os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["COMPOSER_LOCK_ENABLED"] = "false"
os.environ["TEMPLATE_SIGNING_SECRET"] = "test-secret"
os.environ["ENVIRONMENT"] = "test"

import itertools
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from app.core.cache import get_redis
from app.core.database import Base, SessionLocal, engine, get_db
from app.models.enums import Difficulty, QuestionType
from app.models.orm import Question

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)
DROP_AT = datetime(2025, 1, 15, 17, 0, tzinfo=timezone.utc)
QUESTION_TYPES = list(QuestionType)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_question(db):
    """Factory for approved questions with distinct subjects and rotating types."""
    counter = itertools.count()

    def _make(difficulty=Difficulty.EASY, themes=("Lyrics",), subjects=None, question_type=None, commit=True, **kwargs):
        n = next(counter)
        q = Question(
            id=kwargs.pop("id", f"{difficulty.value[0]}{n:03d}"),
            difficulty=difficulty,
            question_type=question_type or QUESTION_TYPES[n % len(QUESTION_TYPES)],
            themes=list(themes),
            subjects=list(subjects) if subjects is not None else [f"subject-{n}"],
            prompt={"text": f"Question {n}?", "internalNotes": "editor only"},
            choices=[
                {"id": "a", "text": "Fearless", "isCorrect": True},
                {"id": "b", "text": "Red", "isCorrect": False},
                {"id": "c", "text": "1989", "isCorrect": False},
            ],
            correct={"choiceId": "a"},
            approved=kwargs.pop("approved", True),
            disabled=kwargs.pop("disabled", False),
            exposure_count=kwargs.pop("exposure_count", 0),
            last_used_at=kwargs.pop("last_used_at", None),
            **kwargs,
        )
        db.add(q)
        if commit:
            db.commit()
        return q

    return _make


@pytest.fixture
def make_pool(make_question, db):
    """Seed `easy`/`medium`/`hard` questions spread over a few themes."""
    themes = ["Charts", "Popularity", "Events", "Lyrics", "Albums", "Tours"]

    def _pool(easy=6, medium=6, hard=4):
        made = []
        for difficulty, count in ((Difficulty.EASY, easy), (Difficulty.MEDIUM, medium), (Difficulty.HARD, hard)):
            for i in range(count):
                made.append(make_question(difficulty, themes=[themes[i % len(themes)]], commit=False))
        db.commit()
        return made

    return _pool


@pytest.fixture
def client(db):
    from app.main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_redis] = lambda: None
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()
