from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..access import access_status
from ..constants import PLAN_LIFETIME, PLAN_MONTHLY, PLAN_YEARLY
from ..db import get_db
from ..models import User, get_payment_settings
from .auth import get_current_user

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("/plans")
def plans(db: Session = Depends(get_db)):
	row = get_payment_settings(db)
	return {
		"payments_enabled": row.payments_enabled,
		"free_question_limit": row.free_question_limit,
		"plans": [
			{"type": PLAN_MONTHLY, "price": row.monthly_price, "currency": "NGN"},
			{"type": PLAN_YEARLY, "price": row.yearly_price, "currency": "NGN"},
			{"type": PLAN_LIFETIME, "price": row.lifetime_price, "currency": "NGN"},
		],
	}


@router.get("/access-status")
def current_access_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return access_status(user, get_payment_settings(db))
