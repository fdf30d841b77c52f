import asyncio
import logging

from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from .db import init_db, session_scope
from .settings import settings
from .tasks import access_sweep_loop, sweep_lapsed_access
from .routers import health
from .routers import auth
from .routers import practice
from .routers import chatbot
from .routers import materials
from .routers import payments
from .routers import admin
from .routers import news
from .routers import videos

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Cravins CBT API")
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(practice.router)
app.include_router(chatbot.router)
app.include_router(materials.router)
app.include_router(payments.router)
app.include_router(admin.router)
app.include_router(news.router)
app.include_router(videos.router)


@app.get("/", include_in_schema=False)
async def redirect_root_to_docs():
	return RedirectResponse(url="/docs")


@app.get("/info")
def root():
	return {
		"status": "ok",
		"gemini_configured": bool(settings.gemini_api_key),
		"openrouter_fallback": bool(settings.openrouter_api_key),
	}


@app.on_event("startup")
async def startup_event():
	init_db()
	with session_scope() as db:
		auth.ensure_seed_admin(db)
	# Lapsed plans are also caught lazily on each authenticated request
	sweep_lapsed_access()
	if settings.access_sweep_interval_seconds > 0:
		asyncio.create_task(access_sweep_loop())
	logger.info("Cravins API started")
