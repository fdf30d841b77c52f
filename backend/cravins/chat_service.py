from __future__ import annotations
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .constants import CHAT_HISTORY_LIMIT, CHAT_TITLE_LENGTH, MESSAGE_ASSISTANT, MESSAGE_USER
from .gemini_client import GeminiClient
from .generation import chat_with_bot
from .models import ChatMessage, ChatSession


def _owned_session(db: Session, user_id: str, session_id: str) -> Optional[ChatSession]:
	return db.scalars(
		select(ChatSession).where(
			ChatSession.id == session_id,
			ChatSession.user_id == user_id,
			ChatSession.is_active.is_(True),
		)
	).first()


async def process_chat_message(
	db: Session,
	client: GeminiClient,
	user_id: str,
	message: str,
	session_id: Optional[str] = None,
) -> Dict[str, Any]:
	chat = _owned_session(db, user_id, session_id) if session_id else None
	if chat is None:
		chat = ChatSession(user_id=user_id, title=message[:CHAT_TITLE_LENGTH])
		db.add(chat)
		db.commit()
		db.refresh(chat)

	recent = db.scalars(
		select(ChatMessage)
		.where(ChatMessage.chat_session_id == chat.id)
		.order_by(ChatMessage.created_at.desc())
		.limit(CHAT_HISTORY_LIMIT)
	).all()
	history = [{"role": m.role.lower(), "content": m.content} for m in reversed(recent)]

	asked_at = datetime.utcnow()
	reply = await chat_with_bot(client, message, history)
	replied_at = max(datetime.utcnow(), asked_at + timedelta(microseconds=1))

	db.add(ChatMessage(chat_session_id=chat.id, role=MESSAGE_USER, content=message, created_at=asked_at))
	db.add(ChatMessage(chat_session_id=chat.id, role=MESSAGE_ASSISTANT, content=reply, created_at=replied_at))
	chat.updated_at = replied_at
	db.add(chat)
	db.commit()
	return {"response": reply, "session_id": chat.id}


def list_chat_sessions(db: Session, user_id: str) -> List[Dict[str, Any]]:
	sessions = db.scalars(
		select(ChatSession)
		.where(ChatSession.user_id == user_id, ChatSession.is_active.is_(True))
		.order_by(ChatSession.updated_at.desc())
	).all()
	out = []
	for s in sessions:
		last = s.messages[-1].content if s.messages else ""
		out.append({"id": s.id, "title": s.title, "last_message": last, "updated_at": s.updated_at})
	return out


def get_chat_messages(db: Session, user_id: str, session_id: str) -> Optional[List[ChatMessage]]:
	chat = _owned_session(db, user_id, session_id)
	if chat is None:
		return None
	return list(chat.messages)


def delete_chat_session(db: Session, user_id: str, session_id: str) -> bool:
	chat = _owned_session(db, user_id, session_id)
	if chat is None:
		return False
	chat.is_active = False
	db.add(chat)
	db.commit()
	return True
