from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from ..chat_service import delete_chat_session, get_chat_messages, list_chat_sessions, process_chat_message
from ..constants import CHAT_MESSAGE_MAX_LENGTH, MSG_NOT_FOUND
from ..db import get_db
from ..errors import LLMError
from ..models import User
from ..tasks import LLMFactory, get_llm_factory
from .auth import get_current_user

router = APIRouter(prefix="/chatbot", tags=["chatbot"])


class ChatRequest(BaseModel):
	message: str = Field(min_length=1, max_length=CHAT_MESSAGE_MAX_LENGTH)
	session_id: Optional[str] = None

	@field_validator("message")
	@classmethod
	def _not_blank(cls, value: str) -> str:
		value = value.strip()
		if not value:
			raise ValueError("message must not be blank")
		return value


@router.post("/message")
async def send_message(
	req: ChatRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	llm_factory: LLMFactory = Depends(get_llm_factory),
):
	try:
		client = llm_factory()
	except LLMError as exc:
		raise HTTPException(status_code=503, detail=str(exc))
	try:
		return await process_chat_message(db, client, user.id, req.message, req.session_id)
	except LLMError as exc:
		raise HTTPException(status_code=502, detail=f"Chat failed: {exc}")
	finally:
		await client.aclose()


@router.get("/sessions")
async def sessions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return list_chat_sessions(db, user.id)


@router.get("/sessions/{session_id}/messages")
async def session_messages(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	messages = get_chat_messages(db, user.id, session_id)
	if messages is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	return [
		{"id": m.id, "role": m.role, "content": m.content, "created_at": m.created_at}
		for m in messages
	]


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if not delete_chat_session(db, user.id, session_id):
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	return {"ok": True}
