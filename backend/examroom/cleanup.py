from __future__ import annotations
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import ExamSession, QuestionCache
from .settings import settings


def purge_stale_sessions(db: Session, *, days: Optional[int] = None, now: Optional[datetime] = None) -> int:
	"""Remove abandoned exam sessions and question caches.

	Submitted attempts clear their own rows; whatever is left past the
	retention window belongs to attempts that were never finished.
	"""
	days = days if days is not None else settings.session_retention_days
	threshold = (now or datetime.utcnow()) - timedelta(days=days)
	removed = 0
	for model in (ExamSession, QuestionCache):
		res = db.execute(delete(model).where(model.updated_at < threshold))
		removed += res.rowcount or 0
	db.commit()
	return removed
