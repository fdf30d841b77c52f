"""Shared fixtures: in-memory database, fake LLM client and API client."""

import itertools
import json
import os
import re
from datetime import datetime, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-jwt-testing"
os.environ["ACCESS_SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["GEMINI_API_KEY"] = ""
os.environ["OPENROUTER_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from cravins import models
from cravins.constants import ROLE_ADMIN, ROLE_USER
from cravins.db import Base, SessionLocal
from cravins.errors import LLMError
from cravins.main import app
from cravins.routers.auth import hash_password, issue_session_token
from cravins.tasks import get_llm_factory

TOPICS_RE = re.compile(r"Generate (\d+) UNIQUE curriculum-based topics for (.+?) based on")
QUESTIONS_RE = re.compile(r"Generate (\d+) UNIQUE multiple choice questions for (.+?) covering this topic: (.+?)\.\n")

PASSWORD = "password123"


class FakeLLM:
    """Stands in for GeminiClient, answering by prompt shape."""

    def __init__(self):
        self.prompts = []
        self.chats = []
        self.topic_names = None
        self.failing_topics = set()
        self.reply = "Photosynthesis is how green plants make food using sunlight."
        self.closed = 0
        self._counter = itertools.count(1)

    async def generate(self, prompt):
        self.prompts.append(prompt)
        match = TOPICS_RE.search(prompt)
        if match:
            count, subject = int(match.group(1)), match.group(2)
            if self.topic_names is not None:
                return json.dumps(self.topic_names)
            return json.dumps([f"{subject} Topic {next(self._counter)}" for _ in range(count)])
        match = QUESTIONS_RE.search(prompt)
        if match:
            count, topic = int(match.group(1)), match.group(3)
            if topic in self.failing_topics:
                raise LLMError("model unavailable")
            questions = [self._question(topic) for _ in range(count)]
            return "```json\n" + json.dumps(questions) + "\n```"
        raise LLMError("unexpected prompt")

    def _question(self, topic):
        n = next(self._counter)
        return {
            "text": f"{topic} question {n}?",
            "options": ["Option A", "Option B", "Option C", "Option D"],
            "correctAnswer": n % 4,
            "explanation": f"Worked answer for question {n}.",
        }

    async def chat(self, turns):
        self.chats.append(list(turns))
        return self.reply

    async def aclose(self):
        self.closed += 1


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SessionLocal.configure(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def client(engine, llm):
    app.dependency_overrides[get_llm_factory] = lambda: (lambda: llm)
    # Not used as a context manager, so startup hooks stay off
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email="student@example.com", *, role=ROLE_USER, paid=False, expiry=None, payment_type=None):
    user = models.User(
        email=email,
        password_hash=hash_password(PASSWORD),
        first_name="Ada",
        last_name="Obi",
        role=role,
        has_paid=paid,
        payment_type=payment_type,
        payment_expiry=expiry,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def headers_for(db, user):
    return {"Authorization": f"Bearer {issue_session_token(db, user)}"}


def make_subject(db, name="Mathematics", topics=()):
    subject = models.Subject(name=name, description=f"{name} - Nigerian Secondary School Curriculum")
    db.add(subject)
    db.commit()
    for topic_name in topics:
        db.add(models.Topic(name=topic_name, subject_id=subject.id))
    db.commit()
    db.refresh(subject)
    return subject


def make_question(db, subject, topic=None, *, text="What is 2 + 2?", difficulty="EASY", correct=1):
    question = models.Question(
        text=text,
        options=["3", "4", "5", "6"],
        correct_answer=correct,
        explanation="Two plus two is four.",
        difficulty=difficulty,
        subject_id=subject.id,
        topic_id=topic.id if topic is not None else None,
    )
    db.add(question)
    db.commit()
    db.refresh(question)
    return question


@pytest.fixture
def student(db):
    return make_user(db)


@pytest.fixture
def paid_student(db):
    return make_user(
        db,
        "paid@example.com",
        paid=True,
        payment_type="MONTHLY",
        expiry=datetime.utcnow() + timedelta(days=20),
    )


@pytest.fixture
def admin(db):
    return make_user(db, "admin@example.com", role=ROLE_ADMIN)
