"""Derived access status for users.

A user has full access when they are an admin, or when they have paid and
their expiry (if any) has not passed. Nothing stores the derived flag; the
``has_paid`` column is cleared once the expiry lapses.
"""
from __future__ import annotations
import calendar
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from .constants import PLAN_LIFETIME, PLAN_MONTHLY, PLAN_YEARLY, ROLE_ADMIN
from .models import PaymentSettings, User

logger = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
	return now or datetime.utcnow()


def is_expired(user: User, now: Optional[datetime] = None) -> bool:
	return user.payment_expiry is not None and _now(now) > user.payment_expiry


def has_access(user: Optional[User], now: Optional[datetime] = None) -> bool:
	if user is None:
		return False
	if user.role == ROLE_ADMIN:
		return True
	return bool(user.has_paid) and not is_expired(user, now)


def access_status(user: User, payment_settings: PaymentSettings, now: Optional[datetime] = None) -> Dict[str, Any]:
	now = _now(now)
	allowed = has_access(user, now)
	status: Dict[str, Any] = {
		"has_access": allowed,
		"has_paid": bool(user.has_paid),
		"payment_type": user.payment_type,
		"payment_expiry": user.payment_expiry,
		"is_expired": is_expired(user, now),
		"free_question_limit": payment_settings.free_question_limit,
		"payments_enabled": payment_settings.payments_enabled,
	}
	if user.payment_expiry is not None and allowed:
		status["days_remaining"] = math.ceil((user.payment_expiry - now) / timedelta(days=1))
	return status


def expire_if_lapsed(db: Session, user: User, now: Optional[datetime] = None) -> bool:
	"""Clear ``has_paid`` on a user whose expiry has passed. Returns True if changed."""
	if user.has_paid and is_expired(user, now):
		user.has_paid = False
		db.add(user)
		db.commit()
		logger.info("Paid access lapsed for user %s", user.id)
		return True
	return False


def expire_lapsed_users(db: Session, now: Optional[datetime] = None) -> int:
	now = _now(now)
	res = db.execute(
		update(User)
		.where(User.has_paid.is_(True), User.payment_expiry.is_not(None), User.payment_expiry < now)
		.values(has_paid=False)
	)
	db.commit()
	return res.rowcount or 0


def _add_months(moment: datetime, months: int) -> datetime:
	month_index = moment.month - 1 + months
	year = moment.year + month_index // 12
	month = month_index % 12 + 1
	day = min(moment.day, calendar.monthrange(year, month)[1])
	return moment.replace(year=year, month=month, day=day)


def plan_expiry(plan_type: str, duration: Optional[int] = None, now: Optional[datetime] = None) -> Optional[datetime]:
	now = _now(now)
	n = duration or 1
	if plan_type == PLAN_MONTHLY:
		return _add_months(now, n)
	if plan_type == PLAN_YEARLY:
		return _add_months(now, 12 * n)
	if plan_type == PLAN_LIFETIME:
		return None
	raise ValueError(f"Unknown plan type: {plan_type}")


def grant_access(db: Session, user: User, plan_type: str, duration: Optional[int] = None, now: Optional[datetime] = None) -> User:
	user.payment_expiry = plan_expiry(plan_type, duration, now)
	user.has_paid = True
	user.payment_type = plan_type
	db.add(user)
	db.commit()
	db.refresh(user)
	logger.info("Granted %s access to user %s until %s", plan_type, user.id, user.payment_expiry or "forever")
	return user


def revoke_access(db: Session, user: User) -> User:
	user.has_paid = False
	user.payment_expiry = None
	user.payment_type = None
	db.add(user)
	db.commit()
	db.refresh(user)
	logger.info("Revoked paid access for user %s", user.id)
	return user
