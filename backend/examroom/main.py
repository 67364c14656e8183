from pathlib import Path
import asyncio
import logging

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError

from .db import Base, engine, SessionLocal, ensure_schema
from .cleanup import purge_stale_sessions
from .settings import settings
from .routers import health
from .routers import auth
from .routers import exams
from .routers import sessions
from .routers import results

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(settings.upload_dir)
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

app = FastAPI(title="Examroom API")
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(exams.router)
app.include_router(sessions.router)
app.include_router(results.router)

# Exam documents and essay submissions
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")


@app.get("/info")
def root():
	return {
		"status": "ok",
		"gemini_configured": bool(settings.gemini_api_key),
		"default_model": settings.gemini_model,
	}


def _run_cleanup() -> None:
	db = SessionLocal()
	try:
		removed = purge_stale_sessions(db)
		if removed:
			logger.info("Purged %d stale exam sessions", removed)
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Session cleanup failed")
	finally:
		db.close()


async def _cleanup_watcher():
	# Daily, after the startup pass
	while True:
		await asyncio.sleep(24 * 60 * 60)
		_run_cleanup()


@app.on_event("startup")
async def startup_event():
	Base.metadata.create_all(bind=engine)
	# Apply lightweight dev migrations
	try:
		ensure_schema()
	except SQLAlchemyError:
		logger.exception("Schema migration failed")
	_run_cleanup()
	asyncio.create_task(_cleanup_watcher())
