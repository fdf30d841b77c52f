from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..access import has_access
from ..constants import MSG_NOT_FOUND
from ..db import get_db
from ..models import Material, User
from ..pagination import page_info
from .auth import get_optional_user, require_paid_access

router = APIRouter(prefix="/materials", tags=["materials"])


def _material_out(m: Material, allowed: bool) -> dict:
	return {
		"id": m.id,
		"title": m.title,
		"description": m.description,
		"category": m.category,
		"file_type": m.file_type,
		"downloads": m.downloads,
		"created_at": m.created_at,
		"can_access": allowed,
		"requires_payment": not allowed,
	}


@router.get("")
async def list_materials(
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=12, ge=1, le=50),
	category: Optional[str] = None,
	search: Optional[str] = None,
	user: Optional[User] = Depends(get_optional_user),
	db: Session = Depends(get_db),
):
	conditions = [Material.is_active.is_(True)]
	if category:
		conditions.append(Material.category == category)
	if search:
		pattern = f"%{search}%"
		conditions.append(or_(Material.title.ilike(pattern), Material.description.ilike(pattern)))
	total = db.scalar(select(func.count(Material.id)).where(*conditions)) or 0
	materials = db.scalars(
		select(Material)
		.where(*conditions)
		.order_by(Material.created_at.desc())
		.offset((page - 1) * limit)
		.limit(limit)
	).all()
	allowed = has_access(user)
	return {
		"data": [_material_out(m, allowed) for m in materials],
		"pagination": page_info(page, limit, total),
		"user_has_access": allowed,
	}


def _active_material(db: Session, material_id: str) -> Material:
	material = db.get(Material, material_id)
	if material is None or not material.is_active:
		raise HTTPException(status_code=404, detail=MSG_NOT_FOUND)
	return material


@router.get("/{material_id}")
async def get_material(material_id: str, user: Optional[User] = Depends(get_optional_user), db: Session = Depends(get_db)):
	return _material_out(_active_material(db, material_id), has_access(user))


@router.get("/{material_id}/download")
async def download_material(material_id: str, user: User = Depends(require_paid_access), db: Session = Depends(get_db)):
	material = _active_material(db, material_id)
	material.downloads += 1
	db.add(material)
	db.commit()
	return {"title": material.title, "file_type": material.file_type, "file_url": material.file_url}
