from __future__ import annotations
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./cravins.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
	"""Session for work outside a request (background tasks, sweeps).

	Commits on success, rolls back and re-raises on error.
	"""
	db = SessionLocal()
	try:
		yield db
		db.commit()
	except Exception:
		db.rollback()
		raise
	finally:
		db.close()


def init_db() -> None:
	# Import models so every table is registered on Base.metadata
	from . import models  # noqa: F401

	Base.metadata.create_all(bind=SessionLocal.kw["bind"])
