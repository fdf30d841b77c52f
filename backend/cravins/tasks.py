from __future__ import annotations
import asyncio
import logging
from typing import Callable, Set

from .access import expire_lapsed_users
from .db import session_scope
from .gemini_client import GeminiClient
from .models import Subject
from .question_service import generate_and_save_topics
from .settings import settings

logger = logging.getLogger(__name__)

LLMFactory = Callable[[], GeminiClient]

# Subject ids with a topic job running on this event loop
_generating: Set[str] = set()


def get_llm_factory() -> LLMFactory:
	"""Dependency returning a callable that builds an LLM client.

	Overridden in tests to inject a fake client.
	"""
	return GeminiClient


def is_generating(subject_id: str) -> bool:
	return subject_id in _generating


async def generate_topics_in_background(subject_id: str, count: int, llm_factory: LLMFactory) -> None:
	# Runs after the response is sent; failures are only logged
	if subject_id in _generating:
		logger.info("Topic generation already running for subject %s; skipping", subject_id)
		return
	_generating.add(subject_id)
	try:
		await _generate_topics(subject_id, count, llm_factory)
	finally:
		_generating.discard(subject_id)


async def _generate_topics(subject_id: str, count: int, llm_factory: LLMFactory) -> None:
	try:
		client = llm_factory()
	except Exception:
		logger.exception("Could not create LLM client for topic generation")
		return
	try:
		with session_scope() as db:
			subject = db.get(Subject, subject_id)
			if subject is None:
				logger.warning("Subject %s vanished before topic generation", subject_id)
				return
			await generate_and_save_topics(db, client, subject, count)
	except Exception:
		logger.exception("Failed to generate topics for subject %s", subject_id)
	finally:
		await client.aclose()


def sweep_lapsed_access() -> int:
	with session_scope() as db:
		expired = expire_lapsed_users(db)
	if expired:
		logger.info("Expired paid access for %d users", expired)
	return expired


async def access_sweep_loop() -> None:
	interval = settings.access_sweep_interval_seconds
	while True:
		await asyncio.sleep(interval)
		try:
			sweep_lapsed_access()
		except Exception:
			logger.exception("Lapsed access sweep failed")
