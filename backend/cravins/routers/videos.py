from __future__ import annotations
import logging
import re
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..constants import MSG_NOT_FOUND
from ..db import get_db
from ..models import Subject, Video
from ..pagination import page_info
from .auth import require_admin

router = APIRouter(prefix="/videos", tags=["videos"])
logger = logging.getLogger(__name__)

YOUTUBE_URL_RE = re.compile(
	r"(?:https?://)?(?:www\.|m\.)?(?:youtube\.com|youtu\.be)/(?:watch\?v=)?(?:embed/)?(?:v/)?(?:shorts/)?([A-Za-z0-9_-]{11})"
)
YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")

SORTS = {
	"recent": Video.created_at.desc(),
	"popular": Video.views.desc(),
	"title": Video.title.asc(),
	"duration": Video.duration.desc(),
}


class YouTubeVideoIn(BaseModel):
	title: str = Field(min_length=2, max_length=256)
	url: str = Field(min_length=11, max_length=1024)
	description: str = Field(default="", max_length=1000)
	subject_id: Optional[str] = None


class VideoUpdate(BaseModel):
	title: Optional[str] = Field(default=None, min_length=2, max_length=256)
	url: Optional[str] = Field(default=None, max_length=1024)
	description: Optional[str] = Field(default=None, max_length=1000)
	subject_id: Optional[str] = None


def youtube_id(url: str) -> Optional[str]:
	"""Extract the 11 character video id from a YouTube link or a bare id."""
	url = url.strip()
	match = YOUTUBE_URL_RE.search(url)
	if match:
		return match.group(1)
	if YOUTUBE_ID_RE.match(url):
		return url
	return None


def embed_url(video_id: str) -> str:
	return f"https://www.youtube.com/embed/{video_id}"


def thumbnail_url(video_id: str) -> str:
	return f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"


def _is_youtube(url: str) -> bool:
	return "youtube.com" in url or "youtu.be" in url


def _video_out(v: Video) -> Dict[str, Any]:
	return {
		"id": v.id,
		"title": v.title,
		"description": v.description,
		"url": v.url,
		"thumbnail": v.thumbnail,
		"duration": v.duration,
		"views": v.views,
		"subject": {"id": v.subject.id, "name": v.subject.name} if v.subject else None,
		"created_at": v.created_at,
	}


def _check_subject(db: Session, subject_id: Optional[str]) -> None:
	if subject_id and db.get(Subject, subject_id) is None:
		raise HTTPException(status_code=400, detail="Subject not found")


@router.get("")
async def list_videos(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=12, ge=1, le=50),
	subject: Optional[str] = None,
	search: Optional[str] = None,
	sort_by: Literal["recent", "popular", "title", "duration"] = "recent",
	db: Session = Depends(get_db),
):
	conditions = [Video.is_active.is_(True)]
	if subject:
		conditions.append(Video.subject_id == subject)
	if search:
		pattern = f"%{search}%"
		conditions.append(or_(Video.title.ilike(pattern), Video.description.ilike(pattern)))
	total = db.scalar(select(func.count(Video.id)).where(*conditions)) or 0
	videos = db.scalars(
		select(Video)
		.where(*conditions)
		.order_by(SORTS[sort_by])
		.offset((page - 1) * limit)
		.limit(limit)
	).all()
	return {"data": [_video_out(v) for v in videos], "pagination": page_info(page, limit, total)}


@router.get("/{video_id}")
async def get_video(video_id: str, db: Session = Depends(get_db)):
	video = db.get(Video, video_id)
	if video is None or not video.is_active:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	video.views += 1
	db.commit()
	db.refresh(video)
	return _video_out(video)


@router.post("/youtube", status_code=201, dependencies=[Depends(require_admin)])
async def add_youtube_video(req: YouTubeVideoIn, db: Session = Depends(get_db)):
	vid = youtube_id(req.url)
	if vid is None:
		raise HTTPException(status_code=400, detail="Invalid YouTube URL")
	_check_subject(db, req.subject_id)
	video = Video(
		title=req.title.strip(),
		description=req.description,
		url=embed_url(vid),
		thumbnail=thumbnail_url(vid),
		subject_id=req.subject_id or None,
	)
	db.add(video)
	db.commit()
	db.refresh(video)
	logger.info("Added YouTube video %s as %s", vid, video.id)
	return _video_out(video)


@router.put("/{video_id}", dependencies=[Depends(require_admin)])
async def update_video(video_id: str, req: VideoUpdate, db: Session = Depends(get_db)):
	video = db.get(Video, video_id)
	if video is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	changes = req.model_dump(exclude_unset=True)
	url = changes.pop("url", None)
	if url and url != video.url:
		if _is_youtube(url):
			vid = youtube_id(url)
			if vid is None:
				raise HTTPException(status_code=400, detail="Invalid YouTube URL")
			video.url = embed_url(vid)
			video.thumbnail = thumbnail_url(vid)
		else:
			video.url = url
	if "subject_id" in changes:
		_check_subject(db, changes["subject_id"])
		video.subject_id = changes.pop("subject_id") or None
	for field, value in changes.items():
		if value is not None:
			setattr(video, field, value.strip() if field == "title" else value)
	db.commit()
	db.refresh(video)
	return _video_out(video)


@router.delete("/{video_id}", dependencies=[Depends(require_admin)])
async def delete_video(video_id: str, db: Session = Depends(get_db)):
	video = db.get(Video, video_id)
	if video is None:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	db.delete(video)
	db.commit()
	logger.info("Deleted video %s", video_id)
	return {"ok": True}
