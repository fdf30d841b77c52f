from __future__ import annotations
import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field, HttpUrl, field_validator
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..access import grant_access, has_access, revoke_access
from ..constants import MSG_NOT_FOUND, PLAN_YEARLY, ROLE_ADMIN, ROLE_USER
from ..db import get_db
from ..errors import AlreadyInitialized
from ..models import (
	AuthSession,
	ChatMessage,
	ChatSession,
	Material,
	News,
	NewsView,
	Question,
	Subject,
	Test,
	TestQuestion,
	TestResult,
	Topic,
	User,
	Video,
	get_payment_settings,
)
from ..pagination import page_info
from ..question_service import get_question_analytics, get_topic_performance, initialize_subjects
from ..settings import settings
from ..tasks import LLMFactory, generate_topics_in_background, get_llm_factory
from .auth import UserOut, require_admin

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)

FileType = Literal["pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx"]


def _strip_required(value: Optional[str]) -> Optional[str]:
	if value is None:
		return None
	value = value.strip()
	if not value:
		raise ValueError("must not be blank")
	return value


class SubjectIn(BaseModel):
	name: str = Field(min_length=1, max_length=128)
	description: Optional[str] = None

	@field_validator("name")
	@classmethod
	def _strip_name(cls, value: str) -> str:
		return _strip_required(value)


class SubjectUpdate(BaseModel):
	name: Optional[str] = Field(default=None, min_length=1, max_length=128)
	description: Optional[str] = None
	is_active: Optional[bool] = None

	@field_validator("name")
	@classmethod
	def _strip_name(cls, value: Optional[str]) -> Optional[str]:
		return _strip_required(value)


class GrantAccessRequest(BaseModel):
	plan_type: Literal["MONTHLY", "YEARLY", "LIFETIME"]
	duration: Optional[int] = Field(default=None, ge=1, le=120)


class PaymentSettingsUpdate(BaseModel):
	free_question_limit: Optional[int] = Field(default=None, ge=0, le=100)
	payments_enabled: Optional[bool] = None
	monthly_price: Optional[int] = Field(default=None, ge=0)
	yearly_price: Optional[int] = Field(default=None, ge=0)
	lifetime_price: Optional[int] = Field(default=None, ge=0)


class MaterialIn(BaseModel):
	title: str = Field(min_length=1, max_length=256)
	description: Optional[str] = None
	category: Optional[str] = None
	file_type: FileType
	file_url: HttpUrl


class MaterialUpdate(BaseModel):
	title: Optional[str] = Field(default=None, min_length=1, max_length=256)
	description: Optional[str] = None
	category: Optional[str] = None
	file_type: Optional[FileType] = None
	file_url: Optional[HttpUrl] = None

	@field_validator("title")
	@classmethod
	def _strip_title(cls, value: Optional[str]) -> Optional[str]:
		return _strip_required(value)


class UserStatusUpdate(BaseModel):
	role: Optional[Literal["USER", "ADMIN"]] = None
	has_paid: Optional[bool] = None


def _subject_out(s: Subject) -> dict:
	return {"id": s.id, "name": s.name, "description": s.description, "is_active": s.is_active}


def _material_out(m: Material) -> dict:
	return {
		"id": m.id,
		"title": m.title,
		"description": m.description,
		"category": m.category,
		"file_type": m.file_type,
		"file_url": m.file_url,
		"downloads": m.downloads,
		"is_active": m.is_active,
		"created_at": m.created_at,
	}


def _settings_out(row) -> dict:
	return {
		"free_question_limit": row.free_question_limit,
		"payments_enabled": row.payments_enabled,
		"monthly_price": row.monthly_price,
		"yearly_price": row.yearly_price,
		"lifetime_price": row.lifetime_price,
	}


def _get_or_404(db: Session, model, ident: str):
	row = db.get(model, ident)
	if row is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	return row


@router.post("/subjects/initialize", status_code=201)
async def initialize(
	background_tasks: BackgroundTasks,
	db: Session = Depends(get_db),
	llm_factory: LLMFactory = Depends(get_llm_factory),
):
	try:
		subjects = initialize_subjects(db)
	except AlreadyInitialized as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	for subject in subjects:
		background_tasks.add_task(generate_topics_in_background, subject.id, settings.topic_batch_size, llm_factory)
	logger.info("Initialized %d subjects; topics are being generated", len(subjects))
	return [_subject_out(s) for s in subjects]


@router.post("/subjects", status_code=201)
async def create_subject(
	req: SubjectIn,
	background_tasks: BackgroundTasks,
	db: Session = Depends(get_db),
	llm_factory: LLMFactory = Depends(get_llm_factory),
):
	subject = Subject(name=req.name, description=req.description)
	db.add(subject)
	try:
		db.commit()
	except IntegrityError:
		db.rollback()
		raise HTTPException(status_code=400, detail="Subject name already exists")
	db.refresh(subject)
	background_tasks.add_task(generate_topics_in_background, subject.id, settings.topic_batch_size, llm_factory)
	return _subject_out(subject)


@router.put("/subjects/{subject_id}")
async def update_subject(subject_id: str, req: SubjectUpdate, db: Session = Depends(get_db)):
	subject = _get_or_404(db, Subject, subject_id)
	for field, value in req.model_dump(exclude_unset=True, exclude_none=True).items():
		setattr(subject, field, value)
	try:
		db.commit()
	except IntegrityError:
		db.rollback()
		raise HTTPException(status_code=400, detail="Subject name already exists")
	db.refresh(subject)
	return _subject_out(subject)


@router.get("/subjects")
async def list_all_subjects(db: Session = Depends(get_db)):
	return [_subject_out(s) for s in db.scalars(select(Subject).order_by(Subject.name))]


@router.delete("/subjects/{subject_id}")
async def delete_subject(subject_id: str, db: Session = Depends(get_db)):
	subject = _get_or_404(db, Subject, subject_id)
	linked = sum(
		db.scalar(select(func.count(model.id)).where(model.subject_id == subject_id)) or 0
		for model in (Topic, Question, Video)
	)
	if linked:
		raise HTTPException(status_code=400, detail="Cannot delete subject. It is linked to other resources.")
	db.delete(subject)
	db.commit()
	logger.info("Deleted subject %s", subject_id)
	return {"ok": True}


@router.get("/questions/{question_id}/analytics")
async def question_analytics(question_id: str, db: Session = Depends(get_db)):
	_get_or_404(db, Question, question_id)
	return get_question_analytics(db, question_id)


@router.get("/users/{user_id}/topics/{topic_id}/performance")
async def topic_performance(user_id: str, topic_id: str, db: Session = Depends(get_db)):
	_get_or_404(db, User, user_id)
	_get_or_404(db, Topic, topic_id)
	return get_topic_performance(db, user_id, topic_id)


@router.post("/users/{user_id}/access", response_model=UserOut)
async def grant_user_access(user_id: str, req: GrantAccessRequest, db: Session = Depends(get_db)):
	user = _get_or_404(db, User, user_id)
	return grant_access(db, user, req.plan_type, req.duration)


@router.delete("/users/{user_id}/access", response_model=UserOut)
async def revoke_user_access(user_id: str, db: Session = Depends(get_db)):
	user = _get_or_404(db, User, user_id)
	return revoke_access(db, user)


@router.get("/payment-settings")
async def read_payment_settings(db: Session = Depends(get_db)):
	return _settings_out(get_payment_settings(db))


@router.put("/payment-settings")
async def update_payment_settings(req: PaymentSettingsUpdate, db: Session = Depends(get_db)):
	row = get_payment_settings(db)
	for field, value in req.model_dump(exclude_unset=True, exclude_none=True).items():
		setattr(row, field, value)
	db.commit()
	db.refresh(row)
	return _settings_out(row)


@router.post("/materials", status_code=201)
async def create_material(req: MaterialIn, db: Session = Depends(get_db)):
	material = Material(
		title=req.title.strip(),
		description=req.description,
		category=req.category,
		file_type=req.file_type,
		file_url=str(req.file_url),
	)
	db.add(material)
	db.commit()
	db.refresh(material)
	return _material_out(material)


@router.get("/materials")
async def list_all_materials(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=50, ge=1, le=100),
	db: Session = Depends(get_db),
):
	where = Material.is_active.is_(True)
	total = db.scalar(select(func.count(Material.id)).where(where)) or 0
	materials = db.scalars(
		select(Material).where(where).order_by(Material.created_at.desc()).offset((page - 1) * limit).limit(limit)
	).all()
	return {"data": [_material_out(m) for m in materials], "pagination": page_info(page, limit, total)}


@router.put("/materials/{material_id}")
async def update_material(material_id: str, req: MaterialUpdate, db: Session = Depends(get_db)):
	material = _get_or_404(db, Material, material_id)
	for field, value in req.model_dump(exclude_unset=True, exclude_none=True).items():
		setattr(material, field, str(value) if field == "file_url" else value)
	db.commit()
	db.refresh(material)
	return _material_out(material)


@router.delete("/materials/{material_id}")
async def delete_material(material_id: str, db: Session = Depends(get_db)):
	material = _get_or_404(db, Material, material_id)
	# Soft delete keeps download counts for reporting
	material.is_active = False
	db.commit()
	return {"ok": True}


@router.get("/dashboard")
async def dashboard(db: Session = Depends(get_db)):
	def count(model, *where) -> int:
		return db.scalar(select(func.count(model.id)).where(*where)) or 0

	week_ago = datetime.utcnow() - timedelta(days=7)
	total_users = count(User, User.role == ROLE_USER)
	paid_users = count(User, User.role == ROLE_USER, User.has_paid.is_(True))
	recent_users = db.scalars(select(User).where(User.role == ROLE_USER).order_by(User.created_at.desc()).limit(5)).all()

	popularity: Counter = Counter()
	for subject_ids in db.scalars(select(TestResult.subjects).order_by(TestResult.completed_at.desc()).limit(1000)):
		popularity.update(subject_ids or [])
	names = dict(db.execute(select(Subject.id, Subject.name).where(Subject.id.in_(list(popularity)))).all())

	return {
		"users": {"total": total_users, "paid": paid_users, "free": total_users - paid_users},
		"content": {
			"subjects": count(Subject, Subject.is_active.is_(True)),
			"questions": count(Question, Question.is_active.is_(True)),
			"videos": count(Video, Video.is_active.is_(True)),
			"materials": count(Material, Material.is_active.is_(True)),
			"news": count(News, News.is_published.is_(True)),
		},
		"activity": {
			"total_tests": count(TestResult),
			"weekly_tests": count(TestResult, TestResult.completed_at >= week_ago),
		},
		"recent_users": [UserOut.model_validate(u) for u in recent_users],
		"popular_subjects": [
			{"subject": names.get(sid, sid), "count": n} for sid, n in popularity.most_common(5)
		],
	}


@router.get("/users")
async def list_users(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=10, ge=1, le=100),
	role: Literal["USER", "ADMIN"] = ROLE_USER,
	search: Optional[str] = None,
	db: Session = Depends(get_db),
):
	conditions = [User.role == role]
	if search:
		pattern = f"%{search}%"
		conditions.append(or_(User.first_name.ilike(pattern), User.last_name.ilike(pattern), User.email.ilike(pattern)))
	total = db.scalar(select(func.count(User.id)).where(*conditions)) or 0
	users = db.scalars(
		select(User).where(*conditions).order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
	).all()
	return {"data": [UserOut.model_validate(u) for u in users], "pagination": page_info(page, limit, total)}


@router.put("/users/{user_id}/status", response_model=UserOut)
async def update_user_status(user_id: str, req: UserStatusUpdate, db: Session = Depends(get_db)):
	user = _get_or_404(db, User, user_id)
	if req.role is not None:
		user.role = req.role
		db.commit()
	if req.has_paid is True and not has_access(user):
		# Manual grants default to a year
		grant_access(db, user, PLAN_YEARLY)
	elif req.has_paid is False:
		revoke_access(db, user)
	db.refresh(user)
	return user


@router.delete("/users/{user_id}")
async def delete_user(user_id: str, db: Session = Depends(get_db)):
	user = _get_or_404(db, User, user_id)
	if user.role == ROLE_ADMIN:
		raise HTTPException(status_code=403, detail="Cannot delete admin users")
	result_ids = select(TestResult.id).where(TestResult.user_id == user_id)
	chat_ids = select(ChatSession.id).where(ChatSession.user_id == user_id)
	db.execute(delete(TestQuestion).where(TestQuestion.test_result_id.in_(result_ids)))
	db.execute(delete(TestResult).where(TestResult.user_id == user_id))
	db.execute(delete(Test).where(Test.user_id == user_id))
	db.execute(delete(ChatMessage).where(ChatMessage.chat_session_id.in_(chat_ids)))
	db.execute(delete(ChatSession).where(ChatSession.user_id == user_id))
	db.execute(delete(NewsView).where(NewsView.user_id == user_id))
	db.execute(delete(AuthSession).where(AuthSession.user_id == user_id))
	db.delete(user)
	db.commit()
	logger.info("Deleted user %s and their data", user_id)
	return {"ok": True}
