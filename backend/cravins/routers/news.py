from __future__ import annotations
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, HttpUrl, field_validator
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..constants import MSG_NOT_FOUND, NEWS_EXTERNAL, NEWS_INTERNAL
from ..db import get_db
from ..models import News, NewsView, User
from ..pagination import page_info
from .auth import get_optional_user, require_admin

router = APIRouter(prefix="/news", tags=["news"])
logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
EXCERPT_LENGTH = 300


class NewsIn(BaseModel):
	title: str = Field(min_length=5, max_length=256)
	content: str = Field(min_length=20)
	excerpt: Optional[str] = Field(default=None, max_length=EXCERPT_LENGTH)
	category: Optional[str] = Field(default=None, max_length=64)
	image: Optional[HttpUrl] = None
	is_published: bool = False

	@field_validator("title", "content")
	@classmethod
	def _strip(cls, value: str) -> str:
		return value.strip()


class NewsUpdate(BaseModel):
	title: Optional[str] = Field(default=None, min_length=5, max_length=256)
	content: Optional[str] = Field(default=None, min_length=20)
	excerpt: Optional[str] = Field(default=None, max_length=EXCERPT_LENGTH)
	category: Optional[str] = Field(default=None, max_length=64)
	image: Optional[HttpUrl] = None
	is_published: Optional[bool] = None


class ExternalNewsIn(NewsIn):
	external_url: HttpUrl
	is_published: bool = True


def reading_time(text: str) -> int:
	"""Minutes to read ``text`` at 200 words per minute."""
	return math.ceil(len(text.split()) / WORDS_PER_MINUTE)


def _summary(n: News) -> Dict[str, Any]:
	return {
		"id": n.id,
		"title": n.title,
		"excerpt": n.excerpt,
		"image": n.image,
		"category": n.category,
		"source": n.source,
		"published_at": n.published_at,
		"views": n.views,
	}


def _article(n: News) -> Dict[str, Any]:
	out = _summary(n)
	out.update({
		"content": n.content,
		"external_url": n.external_url,
		"is_published": n.is_published,
		"created_at": n.created_at,
		"reading_time": reading_time(n.content),
	})
	return out


def _create(db: Session, req: NewsIn, source: str, external_url: Optional[str] = None) -> News:
	article = News(
		title=req.title,
		content=req.content,
		excerpt=req.excerpt or req.content[:EXCERPT_LENGTH],
		category=req.category,
		image=str(req.image) if req.image else None,
		source=source,
		external_url=external_url,
		is_published=req.is_published,
		published_at=datetime.utcnow() if req.is_published else None,
	)
	db.add(article)
	db.commit()
	db.refresh(article)
	logger.info("Created %s news article %s", source.lower(), article.id)
	return article


@router.get("")
async def list_news(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=10, ge=1, le=50),
	category: Optional[str] = None,
	source: Optional[str] = None,
	db: Session = Depends(get_db),
):
	conditions = [News.is_published.is_(True)]
	if category:
		conditions.append(News.category == category)
	if source:
		conditions.append(News.source == source.upper())
	total = db.scalar(select(func.count(News.id)).where(*conditions)) or 0
	articles = db.scalars(
		select(News)
		.where(*conditions)
		.order_by(News.published_at.desc())
		.offset((page - 1) * limit)
		.limit(limit)
	).all()
	return {"data": [_summary(n) for n in articles], "pagination": page_info(page, limit, total)}


@router.get("/latest")
async def latest_news(limit: int = Query(default=5, ge=1, le=20), db: Session = Depends(get_db)):
	articles = db.scalars(
		select(News).where(News.is_published.is_(True)).order_by(News.published_at.desc()).limit(limit)
	).all()
	return [
		{"id": n.id, "title": n.title, "excerpt": n.excerpt, "image": n.image, "published_at": n.published_at}
		for n in articles
	]


@router.get("/stats")
async def news_stats(db: Session = Depends(get_db)):
	midnight = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
	return {
		"total_articles": db.scalar(select(func.count(News.id))) or 0,
		"today_articles": db.scalar(select(func.count(News.id)).where(News.published_at >= midnight)) or 0,
		"total_views": db.scalar(select(func.sum(News.views))) or 0,
	}


@router.get("/admin/all", dependencies=[Depends(require_admin)])
async def admin_list_news(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=20, ge=1, le=100),
	db: Session = Depends(get_db),
):
	total = db.scalar(select(func.count(News.id))) or 0
	articles = db.scalars(
		select(News).order_by(News.created_at.desc()).offset((page - 1) * limit).limit(limit)
	).all()
	return {"data": [_article(n) for n in articles], "pagination": page_info(page, limit, total)}


@router.post("/admin/approve-external", status_code=201, dependencies=[Depends(require_admin)])
async def approve_external_news(req: ExternalNewsIn, db: Session = Depends(get_db)):
	return _article(_create(db, req, NEWS_EXTERNAL, str(req.external_url)))


@router.get("/{news_id}")
async def get_news_article(news_id: str, user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)):
	article = db.get(News, news_id)
	if article is None or not article.is_published:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	article.views += 1
	if user is not None:
		view = db.scalars(select(NewsView).where(NewsView.user_id == user.id, NewsView.news_id == news_id)).first()
		if view is None:
			db.add(NewsView(user_id=user.id, news_id=news_id))
		else:
			view.viewed_at = datetime.utcnow()
	db.commit()
	db.refresh(article)
	return _article(article)


@router.post("", status_code=201, dependencies=[Depends(require_admin)])
async def create_news(req: NewsIn, db: Session = Depends(get_db)):
	return _article(_create(db, req, NEWS_INTERNAL))


@router.put("/{news_id}", dependencies=[Depends(require_admin)])
async def update_news(news_id: str, req: NewsUpdate, db: Session = Depends(get_db)):
	article = db.get(News, news_id)
	if article is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	for field, value in req.model_dump(exclude_unset=True, exclude_none=True).items():
		if field == "image":
			value = str(value)
		elif field in ("title", "content"):
			value = value.strip()
		setattr(article, field, value)
	if article.is_published and article.published_at is None:
		article.published_at = datetime.utcnow()
	db.commit()
	db.refresh(article)
	return _article(article)


@router.delete("/{news_id}", dependencies=[Depends(require_admin)])
async def delete_news(news_id: str, db: Session = Depends(get_db)):
	article = db.get(News, news_id)
	if article is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	db.execute(delete(NewsView).where(NewsView.news_id == news_id))
	db.delete(article)
	db.commit()
	logger.info("Deleted news article %s", news_id)
	return {"ok": True}
