"""Durable per-user exam session state.

Answers, the current question index and the timer deadline are written on
every change so an attempt survives reloads. Writes are best-effort: a
storage failure is logged and the caller carries on with its in-memory view.
"""
from __future__ import annotations
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import ExamSession, QuestionCache
from .timer import seconds_left

logger = logging.getLogger(__name__)

DEFAULT_TOTAL_TIME = 3600


def _get_or_create(db: Session, exam_id: str, username: str) -> ExamSession:
	row = db.query(ExamSession).filter(ExamSession.exam_id == exam_id, ExamSession.username == username).first()
	if row is None:
		row = ExamSession(exam_id=exam_id, username=username, answers_json="{}", current_question_index=0)
		db.add(row)
	return row


def _commit(db: Session, what: str, exam_id: str) -> bool:
	try:
		db.commit()
		return True
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Error saving %s for exam %s", what, exam_id)
		return False


def save_answers(db: Session, exam_id: str, username: str, answers: Dict[str, str]) -> bool:
	row = _get_or_create(db, exam_id, username)
	row.answers_json = json.dumps(answers, ensure_ascii=False)
	row.updated_at = datetime.utcnow()
	return _commit(db, "answers", exam_id)


def save_question_index(db: Session, exam_id: str, username: str, index: int) -> bool:
	row = _get_or_create(db, exam_id, username)
	row.current_question_index = max(0, int(index))
	row.updated_at = datetime.utcnow()
	return _commit(db, "question index", exam_id)


def save_timer_state(
	db: Session,
	exam_id: str,
	username: str,
	time_left: int,
	total_time: int,
	*,
	now: Optional[datetime] = None,
) -> bool:
	now = now or datetime.utcnow()
	row = _get_or_create(db, exam_id, username)
	row.expires_at = now + timedelta(seconds=time_left) if time_left > 0 else None
	row.total_time = total_time
	row.updated_at = now
	return _commit(db, "timer state", exam_id)


def load_session(db: Session, exam_id: str, username: str, *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
	try:
		row = db.query(ExamSession).filter(ExamSession.exam_id == exam_id, ExamSession.username == username).first()
	except SQLAlchemyError:
		logger.exception("Error loading session for exam %s", exam_id)
		return None
	if row is None:
		return None
	try:
		answers = json.loads(row.answers_json or "{}")
	except ValueError:
		logger.warning("Discarding unreadable answers for exam %s", exam_id)
		answers = {}
	data: Dict[str, Any] = {
		"user_answers": answers if isinstance(answers, dict) else {},
		"current_question_index": row.current_question_index or 0,
		"expires_at": row.expires_at,
		"total_time": row.total_time,
		"last_updated": row.updated_at,
	}
	if row.expires_at is not None:
		data["time_left"] = seconds_left(row.expires_at, now)
	return data


def clear_session(db: Session, exam_id: str, username: str) -> None:
	db.query(ExamSession).filter(ExamSession.exam_id == exam_id, ExamSession.username == username).delete()
	_commit(db, "session removal", exam_id)


def is_timer_active(db: Session, exam_id: str, username: str, *, now: Optional[datetime] = None) -> bool:
	data = load_session(db, exam_id, username, now=now)
	if not data or data.get("expires_at") is None:
		return False
	return data["time_left"] > 0


def get_timer_info(db: Session, exam_id: str, username: str, *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
	data = load_session(db, exam_id, username, now=now)
	if not data or data.get("expires_at") is None:
		return None
	return {
		"exam_id": exam_id,
		"time_left": data["time_left"],
		"total_time": data.get("total_time") or DEFAULT_TOTAL_TIME,
	}


# ---- extracted question cache ----

def cache_questions(db: Session, exam_id: str, username: str, questions: List[Dict[str, Any]], exam_type: str) -> bool:
	row = db.query(QuestionCache).filter(QuestionCache.exam_id == exam_id, QuestionCache.username == username).first()
	if row is None:
		row = QuestionCache(exam_id=exam_id, username=username)
		db.add(row)
	row.questions_json = json.dumps(questions, ensure_ascii=False)
	row.exam_type = exam_type
	row.updated_at = datetime.utcnow()
	return _commit(db, "question cache", exam_id)


def load_cached_questions(db: Session, exam_id: str, username: str) -> Optional[Tuple[List[Dict[str, Any]], str]]:
	row = db.query(QuestionCache).filter(QuestionCache.exam_id == exam_id, QuestionCache.username == username).first()
	if row is None or not row.exam_type:
		return None
	try:
		questions = json.loads(row.questions_json or "[]")
	except ValueError:
		return None
	# Essay exams legitimately have no questions to show
	if not isinstance(questions, list) or (not questions and row.exam_type != "essay"):
		return None
	return questions, row.exam_type


def clear_cached_questions(db: Session, exam_id: str, username: str) -> None:
	db.query(QuestionCache).filter(QuestionCache.exam_id == exam_id, QuestionCache.username == username).delete()
	if _commit(db, "question cache removal", exam_id):
		logger.info("Cleared cached questions for exam %s", exam_id)
