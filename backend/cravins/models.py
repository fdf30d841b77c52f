from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from .db import Base
from .constants import DEFAULT_FREE_QUESTION_LIMIT, DEFAULT_PLAN_PRICES, NEWS_INTERNAL, ROLE_USER


def _uuid() -> str:
	return uuid.uuid4().hex


class User(Base):
	__tablename__ = "users"
	id = Column(String(32), primary_key=True, default=_uuid)
	email = Column(String(256), unique=True, index=True, nullable=False)
	password_hash = Column(String(256), nullable=False)
	first_name = Column(String(128), nullable=False)
	last_name = Column(String(128), nullable=False)
	phone = Column(String(32), nullable=True)
	role = Column(String(16), default=ROLE_USER, nullable=False)
	has_paid = Column(Boolean, default=False, nullable=False)
	payment_type = Column(String(16), nullable=True)
	# Null with has_paid means lifetime access
	payment_expiry = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti of the issued token
	session_id = Column(String(64), primary_key=True)
	user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Subject(Base):
	__tablename__ = "subjects"
	id = Column(String(32), primary_key=True, default=_uuid)
	name = Column(String(128), unique=True, nullable=False)
	description = Column(Text, nullable=True)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	topics = relationship("Topic", back_populates="subject")


class Topic(Base):
	__tablename__ = "topics"
	id = Column(String(32), primary_key=True, default=_uuid)
	name = Column(String(256), nullable=False)
	subject_id = Column(String(32), ForeignKey("subjects.id", ondelete="CASCADE"), index=True, nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	subject = relationship("Subject", back_populates="topics")


class Question(Base):
	__tablename__ = "questions"
	id = Column(String(32), primary_key=True, default=_uuid)
	text = Column(Text, nullable=False)
	options = Column(JSON, nullable=False)  # list of 4 strings
	correct_answer = Column(Integer, nullable=False)  # 0..3
	explanation = Column(Text, nullable=False)
	difficulty = Column(String(8), index=True, nullable=False)
	subject_id = Column(String(32), ForeignKey("subjects.id", ondelete="CASCADE"), index=True, nullable=False)
	topic_id = Column(String(32), ForeignKey("topics.id", ondelete="SET NULL"), index=True, nullable=True)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	subject = relationship("Subject")
	topic = relationship("Topic")


class Test(Base):
	__tablename__ = "tests"
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
	name = Column(String(512), nullable=False)
	subjects = Column(JSON, nullable=False)  # subject ids
	topics = Column(JSON, nullable=False)  # topic ids, empty for random topics
	question_ids = Column(JSON, nullable=False)
	difficulty = Column(String(8), nullable=False)
	total_questions = Column(Integer, nullable=False)
	duration = Column(Integer, nullable=False)  # minutes
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TestResult(Base):
	__tablename__ = "test_results"
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
	# One result per served test
	test_id = Column(String(32), ForeignKey("tests.id", ondelete="SET NULL"), unique=True, nullable=True)
	test_name = Column(String(512), nullable=False)
	subjects = Column(JSON, nullable=False)
	topics = Column(JSON, nullable=False)
	difficulty = Column(String(8), nullable=False)
	total_questions = Column(Integer, nullable=False)
	correct_answers = Column(Integer, default=0, nullable=False)
	score = Column(Float, default=0.0, nullable=False)
	time_spent = Column(Integer, default=0, nullable=False)  # seconds
	subject_scores = Column(JSON, nullable=False, default=dict)
	is_complete = Column(Boolean, default=False, nullable=False)
	completed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	questions = relationship(
		"TestQuestion", back_populates="test_result", cascade="all, delete-orphan", order_by="TestQuestion.position"
	)


class TestQuestion(Base):
	__tablename__ = "test_questions"
	__table_args__ = (UniqueConstraint("test_result_id", "question_id", name="uq_test_question"),)
	id = Column(String(32), primary_key=True, default=_uuid)
	test_result_id = Column(String(32), ForeignKey("test_results.id", ondelete="CASCADE"), index=True, nullable=False)
	question_id = Column(String(32), ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
	user_answer = Column(Integer, nullable=True)
	is_correct = Column(Boolean, default=False, nullable=False)
	# Order the question was served in
	position = Column(Integer, default=0, nullable=False)
	time_spent = Column(Integer, default=0, nullable=False)

	test_result = relationship("TestResult", back_populates="questions")
	question = relationship("Question")


class ChatSession(Base):
	__tablename__ = "chat_sessions"
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
	title = Column(String(128), nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	messages = relationship("ChatMessage", back_populates="chat_session", order_by="ChatMessage.created_at")


class ChatMessage(Base):
	__tablename__ = "chat_messages"
	id = Column(String(32), primary_key=True, default=_uuid)
	chat_session_id = Column(String(32), ForeignKey("chat_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
	role = Column(String(16), nullable=False)
	content = Column(Text, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	chat_session = relationship("ChatSession", back_populates="messages")


class Material(Base):
	__tablename__ = "materials"
	id = Column(String(32), primary_key=True, default=_uuid)
	title = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	category = Column(String(64), index=True, nullable=True)
	file_type = Column(String(16), nullable=False)
	file_url = Column(String(1024), nullable=False)
	downloads = Column(Integer, default=0, nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Video(Base):
	__tablename__ = "videos"
	id = Column(String(32), primary_key=True, default=_uuid)
	title = Column(String(256), nullable=False)
	description = Column(Text, nullable=False, default="")
	url = Column(String(1024), nullable=False)  # YouTube embed URL or direct link
	thumbnail = Column(String(1024), nullable=True)
	duration = Column(Integer, nullable=True)  # seconds
	subject_id = Column(String(32), ForeignKey("subjects.id", ondelete="SET NULL"), index=True, nullable=True)
	views = Column(Integer, default=0, nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	subject = relationship("Subject")


class News(Base):
	__tablename__ = "news"
	id = Column(String(32), primary_key=True, default=_uuid)
	title = Column(String(256), nullable=False)
	content = Column(Text, nullable=False)
	excerpt = Column(String(300), nullable=False)
	image = Column(String(1024), nullable=True)
	category = Column(String(64), index=True, nullable=True)
	source = Column(String(16), default=NEWS_INTERNAL, nullable=False)
	external_url = Column(String(1024), nullable=True)
	is_published = Column(Boolean, default=False, nullable=False)
	# Set the first time the article is published
	published_at = Column(DateTime, nullable=True)
	views = Column(Integer, default=0, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class NewsView(Base):
	__tablename__ = "news_views"
	__table_args__ = (UniqueConstraint("user_id", "news_id", name="uq_news_view"),)
	id = Column(String(32), primary_key=True, default=_uuid)
	user_id = Column(String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
	news_id = Column(String(32), ForeignKey("news.id", ondelete="CASCADE"), index=True, nullable=False)
	viewed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PaymentSettings(Base):
	__tablename__ = "payment_settings"
	id = Column(Integer, primary_key=True)
	free_question_limit = Column(Integer, default=DEFAULT_FREE_QUESTION_LIMIT, nullable=False)
	payments_enabled = Column(Boolean, default=True, nullable=False)
	monthly_price = Column(Integer, default=DEFAULT_PLAN_PRICES["MONTHLY"], nullable=False)
	yearly_price = Column(Integer, default=DEFAULT_PLAN_PRICES["YEARLY"], nullable=False)
	lifetime_price = Column(Integer, default=DEFAULT_PLAN_PRICES["LIFETIME"], nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


def get_payment_settings(db) -> PaymentSettings:
	"""Return the single settings row, creating it with defaults on first use."""
	row = db.get(PaymentSettings, 1)
	if row is None:
		row = PaymentSettings(
			id=1,
			free_question_limit=DEFAULT_FREE_QUESTION_LIMIT,
			payments_enabled=True,
			monthly_price=DEFAULT_PLAN_PRICES["MONTHLY"],
			yearly_price=DEFAULT_PLAN_PRICES["YEARLY"],
			lifetime_price=DEFAULT_PLAN_PRICES["LIFETIME"],
		)
		db.add(row)
		db.commit()
		db.refresh(row)
	return row
