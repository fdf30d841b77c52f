from __future__ import annotations
from typing import Dict, List


ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"

PLAN_MONTHLY = "MONTHLY"
PLAN_YEARLY = "YEARLY"
PLAN_LIFETIME = "LIFETIME"

MESSAGE_USER = "USER"
MESSAGE_ASSISTANT = "ASSISTANT"

NEWS_INTERNAL = "INTERNAL"
NEWS_EXTERNAL = "EXTERNAL"

NIGERIAN_SUBJECTS: List[str] = [
	"Mathematics",
	"English Language",
	"Physics",
	"Chemistry",
	"Biology",
	"Further Mathematics",
	"Economics",
	"Geography",
	"Government",
	"Literature in English",
	"History",
	"Agricultural Science",
	"Computer Studies",
	"Commerce",
	"Accounting",
	"Business Studies",
]

# NGN, admin-editable through payment settings
DEFAULT_PLAN_PRICES: Dict[str, int] = {
	PLAN_MONTHLY: 2000,
	PLAN_YEARLY: 18000,
	PLAN_LIFETIME: 50000,
}

DEFAULT_FREE_QUESTION_LIMIT = 5

MIN_SUBJECTS_PER_TEST = 1
MAX_SUBJECTS_PER_TEST = 5
MIN_QUESTIONS_PER_TEST = 1
MAX_QUESTIONS_PER_TEST = 100
MAX_TEST_DURATION_MINUTES = 300
MINUTES_PER_QUESTION = 1.5
MIN_TEST_DURATION_MINUTES = 30

OPTIONS_PER_QUESTION = 4

CHAT_HISTORY_LIMIT = 10
CHAT_MESSAGE_MAX_LENGTH = 1000
CHAT_TITLE_LENGTH = 50

MSG_INVALID_CREDENTIALS = "Invalid email or password"
MSG_EMAIL_EXISTS = "Email already exists"
MSG_INVALID_TOKEN = "Invalid or expired token"
MSG_INSUFFICIENT_PERMISSIONS = "Insufficient permissions"
MSG_PAYMENT_REQUIRED = "Payment required to access this feature"
MSG_ACCESS_EXPIRED = "Your access has expired. Please renew your subscription."
MSG_NOT_FOUND = "Resource not found"
