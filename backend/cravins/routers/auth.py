from __future__ import annotations
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..access import access_status, expire_if_lapsed, has_access, is_expired
from ..constants import (
	MSG_ACCESS_EXPIRED,
	MSG_EMAIL_EXISTS,
	MSG_INSUFFICIENT_PERMISSIONS,
	MSG_INVALID_CREDENTIALS,
	MSG_INVALID_TOKEN,
	MSG_PAYMENT_REQUIRED,
	ROLE_ADMIN,
)
from ..db import get_db
from ..models import AuthSession, TestResult, User, get_payment_settings
from ..settings import settings

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)

logging.getLogger("passlib").setLevel(logging.ERROR)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)

NIGERIAN_PHONE_RE = re.compile(r"^(\+234|0)[789]\d{9}$")
BCRYPT_MAX_BYTES = 72


class UserOut(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	email: str
	first_name: str
	last_name: str
	phone: Optional[str] = None
	role: str
	has_paid: bool
	payment_type: Optional[str] = None
	payment_expiry: Optional[datetime] = None


class Token(BaseModel):
	access_token: str
	token_type: str = "bearer"


def _clean_name(value: str) -> str:
	value = value.strip()
	if not value:
		raise ValueError("must not be blank")
	return value


def _clean_phone(value: Optional[str]) -> Optional[str]:
	if value is None or not value.strip():
		return None
	value = value.strip()
	if not NIGERIAN_PHONE_RE.match(value):
		raise ValueError("phone must be a Nigerian number, e.g. +2348012345678 or 08012345678")
	return value


class RegisterRequest(BaseModel):
	email: EmailStr
	password: str = Field(min_length=8, max_length=128)
	first_name: str = Field(min_length=1, max_length=128)
	last_name: str = Field(min_length=1, max_length=128)
	phone: Optional[str] = None

	@field_validator("first_name", "last_name")
	@classmethod
	def _strip_names(cls, value: str) -> str:
		return _clean_name(value)

	@field_validator("phone")
	@classmethod
	def _nigerian_phone(cls, value: Optional[str]) -> Optional[str]:
		return _clean_phone(value)


class ProfileUpdate(BaseModel):
	first_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
	last_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
	phone: Optional[str] = None

	@field_validator("first_name", "last_name")
	@classmethod
	def _strip_names(cls, value: Optional[str]) -> Optional[str]:
		return None if value is None else _clean_name(value)

	@field_validator("phone")
	@classmethod
	def _nigerian_phone(cls, value: Optional[str]) -> Optional[str]:
		return _clean_phone(value)


class ChangePasswordRequest(BaseModel):
	current_password: str = Field(min_length=1)
	new_password: str = Field(min_length=8, max_length=128)


class RegisterResponse(BaseModel):
	user: UserOut
	access_token: str
	token_type: str = "bearer"


def _bcrypt_safe(password: str) -> str:
	# bcrypt only looks at the first 72 bytes
	raw = password.encode("utf-8")[:BCRYPT_MAX_BYTES]
	return raw.decode("utf-8", errors="ignore")


def hash_password(password: str) -> str:
	return pwd_context.hash(_bcrypt_safe(password))


def verify_password(plain_password: str, hashed_password: str) -> bool:
	if not plain_password or not hashed_password:
		return False
	try:
		return pwd_context.verify(_bcrypt_safe(plain_password), hashed_password)
	except ValueError:
		return False


def authenticate_user(db: Session, email: str, password: str) -> Optional[User]:
	user = db.query(User).filter(User.email == email.strip().lower()).first()
	if user and verify_password(password, user.password_hash):
		return user
	return None


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
	to_encode = data.copy()
	delta = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
	to_encode.update({"exp": datetime.now(timezone.utc) + delta})
	return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def issue_session_token(db: Session, user: User) -> str:
	session_id = uuid.uuid4().hex
	db.add(AuthSession(session_id=session_id, user_id=user.id))
	db.commit()
	return create_access_token({"sub": user.id, "jti": session_id})


def _decode(token: str) -> tuple[str, str]:
	credentials_exception = HTTPException(status_code=401, detail=MSG_INVALID_TOKEN)
	try:
		payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
	except JWTError:
		raise credentials_exception
	user_id: Optional[str] = payload.get("sub")
	jti: Optional[str] = payload.get("jti")
	if user_id is None or jti is None:
		raise credentials_exception
	return user_id, jti


def _resolve_user(db: Session, token: str) -> User:
	user_id, jti = _decode(token)
	row = db.get(AuthSession, jti)
	if not row or row.user_id != user_id:
		raise HTTPException(status_code=401, detail=MSG_INVALID_TOKEN)
	user = db.get(User, user_id)
	if user is None:
		raise HTTPException(status_code=401, detail=MSG_INVALID_TOKEN)
	row.last_activity_at = datetime.utcnow()
	db.add(row)
	db.commit()
	expire_if_lapsed(db, user)
	return user


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
	return _resolve_user(db, token)


def get_optional_user(token: Optional[str] = Depends(optional_oauth2_scheme), db: Session = Depends(get_db)) -> Optional[User]:
	if not token:
		return None
	try:
		return _resolve_user(db, token)
	except HTTPException:
		return None


def require_admin(user: User = Depends(get_current_user)) -> User:
	if user.role != ROLE_ADMIN:
		raise HTTPException(status_code=403, detail=MSG_INSUFFICIENT_PERMISSIONS)
	return user


def require_paid_access(user: User = Depends(get_current_user)) -> User:
	if has_access(user):
		return user
	if user.payment_expiry is not None and is_expired(user):
		detail: Dict[str, Any] = {"message": MSG_ACCESS_EXPIRED, "requires_payment": True, "expired": True}
	else:
		detail = {"message": MSG_PAYMENT_REQUIRED, "requires_payment": True}
	raise HTTPException(status_code=403, detail=detail)


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(req: RegisterRequest, db: Session = Depends(get_db)):
	email = req.email.lower()
	if db.query(User).filter(User.email == email).first():
		raise HTTPException(status_code=400, detail=MSG_EMAIL_EXISTS)
	user = User(
		email=email,
		password_hash=hash_password(req.password),
		first_name=req.first_name,
		last_name=req.last_name,
		phone=req.phone,
	)
	db.add(user)
	db.commit()
	db.refresh(user)
	logger.info("Registered user %s", user.id)
	return RegisterResponse(user=UserOut.model_validate(user), access_token=issue_session_token(db, user))


@router.post("/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
	user = authenticate_user(db, form_data.username, form_data.password)
	if not user:
		raise HTTPException(status_code=401, detail=MSG_INVALID_CREDENTIALS)
	return Token(access_token=issue_session_token(db, user))


@router.post("/logout")
async def logout(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)):
	_, jti = _decode(token)
	row = db.get(AuthSession, jti)
	if row is not None:
		db.delete(row)
		db.commit()
	return {"ok": True}


@router.get("/me")
async def me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return {
		"user": UserOut.model_validate(user),
		"access": access_status(user, get_payment_settings(db)),
	}


@router.get("/profile")
async def profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	recent = db.scalars(
		select(TestResult)
		.where(TestResult.user_id == user.id, TestResult.is_complete.is_(True))
		.order_by(TestResult.completed_at.desc())
		.limit(5)
	).all()
	return {
		"user": UserOut.model_validate(user),
		"access": access_status(user, get_payment_settings(db)),
		"recent_results": [
			{"id": r.id, "test_name": r.test_name, "score": r.score, "completed_at": r.completed_at} for r in recent
		],
	}


@router.put("/profile", response_model=UserOut)
async def update_profile(req: ProfileUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	for field, value in req.model_dump(exclude_unset=True).items():
		if value is None and field != "phone":
			continue
		setattr(user, field, value)
	db.commit()
	db.refresh(user)
	return user


@router.post("/change-password")
async def change_password(
	req: ChangePasswordRequest,
	token: str = Depends(oauth2_scheme),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	if not verify_password(req.current_password, user.password_hash):
		raise HTTPException(status_code=400, detail="Current password is incorrect")
	user.password_hash = hash_password(req.new_password)
	# Sign out every other device
	_, jti = _decode(token)
	db.execute(delete(AuthSession).where(AuthSession.user_id == user.id, AuthSession.session_id != jti))
	db.commit()
	logger.info("User %s changed their password", user.id)
	return {"ok": True}


def ensure_seed_admin(db: Session) -> None:
	email = settings.seed_admin_email
	password = settings.seed_admin_password
	if not email or not password:
		return
	email = email.strip().lower()
	if db.query(User).filter(User.email == email).first():
		return
	db.add(User(
		email=email,
		password_hash=hash_password(password),
		first_name="Cravins",
		last_name="Admin",
		role=ROLE_ADMIN,
	))
	db.commit()
	logger.info("Seeded admin account %s", email)
