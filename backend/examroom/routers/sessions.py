"""Exam-taking flow for the current user.

Start loads the exam document, extracts (or reuses) the question set and
arms the countdown; answers and the question index are saved as the user
works; submit grades the attempt and stores a single result. Once the timer
has run out, the next call on the session submits whatever was saved.
"""
from __future__ import annotations
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import session_store
from ..db import get_db
from ..documents import DocumentError, DocumentNotFound, LoadedDocument, load_document
from ..extraction import ESSAY, MULTIPLE_CHOICE, extract_questions
from ..gemini_client import GeminiClient, GeminiError, GeminiFactory, get_gemini_factory
from ..grading import grade_submission
from ..models import Exam, ExamResult
from ..timer import format_time, is_deadline_passed, parse_minutes_from_prompt, timer_stage
from .auth import User, get_current_user
from .exams import get_exam_or_404, store_upload
from .results import find_result, penalty_json, result_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exams", tags=["sessions"])


class AnswersRequest(BaseModel):
	answers: Dict[str, str]


class IndexRequest(BaseModel):
	index: int = Field(ge=0)


class SubmitRequest(BaseModel):
	answers: Dict[str, str] = Field(default_factory=dict)


def _public_question(q: Dict[str, Any]) -> Dict[str, Any]:
	return {k: v for k, v in q.items() if k != "correct_answer"}


def _duration(exam: Exam) -> Optional[str]:
	minutes = parse_minutes_from_prompt(exam.prompt)
	return f"{minutes} phút" if minutes else None


def _client(factory: GeminiFactory, exam: Exam) -> GeminiClient:
	try:
		return factory(model=exam.model_id or None)
	except ValueError as e:
		raise HTTPException(status_code=503, detail=str(e))


def _exam_document(exam: Exam) -> LoadedDocument:
	if not exam.files:
		raise HTTPException(status_code=400, detail="Exam has no attached file")
	first = exam.files[0]
	try:
		return load_document(exam.id, first.name, first.url)
	except DocumentNotFound as e:
		raise HTTPException(status_code=404, detail=str(e))
	except DocumentError as e:
		raise HTTPException(status_code=400, detail=str(e))


async def _ensure_questions(db: Session, exam: Exam, user: User, factory: GeminiFactory):
	cached = session_store.load_cached_questions(db, exam.id, user.username)
	if cached is not None:
		return cached
	document = _exam_document(exam)
	client = _client(factory, exam)
	try:
		questions, exam_type = await extract_questions(client, exam, document)
	except GeminiError as e:
		raise HTTPException(status_code=502, detail=str(e))
	finally:
		await client.aclose()
	logger.info("Exam %s: extracted %d %s questions for %s", exam.id, len(questions), exam_type, user.username)
	if not session_store.cache_questions(db, exam.id, user.username, questions, exam_type):
		# A concurrent start may have stored its own set first
		stored = session_store.load_cached_questions(db, exam.id, user.username)
		if stored is not None:
			return stored
	return questions, exam_type


def _timer_expired(state: Optional[Dict[str, Any]]) -> bool:
	return bool(state) and state.get("expires_at") is not None and state.get("time_left") == 0


def _state_payload(exam: Exam, questions: List[Dict[str, Any]], exam_type: str, state: Optional[Dict[str, Any]]) -> Dict[str, Any]:
	state = state or {}
	time_left = state.get("time_left")
	total_time = state.get("total_time") or 0
	return {
		"submitted": False,
		"exam_id": exam.id,
		"exam_name": exam.name,
		"exam_type": exam_type,
		"questions": [_public_question(q) for q in questions],
		"user_answers": state.get("user_answers", {}),
		"current_question_index": state.get("current_question_index", 0),
		"time_left": time_left,
		"total_time": total_time or None,
		"time_display": format_time(time_left) if time_left is not None else None,
		"timer_stage": timer_stage(time_left or 0, total_time),
		"expired": _timer_expired(state),
		"deadline": exam.deadline,
		"deadline_passed": is_deadline_passed(exam.deadline),
	}


def _submitted_payload(row: ExamResult, *, auto: bool = False) -> Dict[str, Any]:
	return {"submitted": True, "auto_submitted": auto, "result": result_to_dict(row)}


async def _finalize(
	db: Session,
	exam: Exam,
	user: User,
	factory: GeminiFactory,
	extra_answers: Optional[Dict[str, str]] = None,
) -> ExamResult:
	existing = find_result(db, exam.id, user.username)
	if existing is not None:
		return existing
	cached = session_store.load_cached_questions(db, exam.id, user.username)
	if cached is None:
		raise HTTPException(status_code=409, detail="Exam session has not been started")
	questions, exam_type = cached
	if exam_type == ESSAY:
		raise HTTPException(status_code=400, detail="Essay exams are submitted as a file")

	state = session_store.load_session(db, exam.id, user.username) or {}
	answers = dict(state.get("user_answers") or {})
	if _timer_expired(state):
		if extra_answers:
			logger.info("Ignoring answers sent after time ran out on exam %s by %s", exam.id, user.username)
	else:
		answers.update(extra_answers or {})

	document = None
	if exam_type == MULTIPLE_CHOICE and exam.files:
		try:
			document = _exam_document(exam)
		except HTTPException:
			logger.warning("Grading exam %s without its document", exam.id)

	submitted_at = datetime.utcnow()
	client = _client(factory, exam)
	try:
		graded = await grade_submission(
			client, exam, questions, answers,
			exam_type=exam_type, document=document, submitted_at=submitted_at,
		)
	except GeminiError as e:
		raise HTTPException(status_code=502, detail=str(e))
	finally:
		await client.aclose()

	row = ExamResult(
		id=uuid.uuid4().hex,
		exam_id=exam.id,
		exam_name=exam.name,
		username=user.username,
		score=graded.final_score,
		exam_type=graded.exam_type,
		details_json=json.dumps(graded.details, ensure_ascii=False),
		evaluation=graded.evaluation,
		late_penalty_json=penalty_json(graded.penalty, graded.penalty_note, graded.reconciled_score),
		duration=_duration(exam),
		created_at=submitted_at,
	)
	db.add(row)
	try:
		db.commit()
	except IntegrityError:
		# A concurrent submit won the race
		db.rollback()
		existing = find_result(db, exam.id, user.username)
		if existing is None:
			raise
		return existing
	logger.info("Exam %s submitted by %s: %.1f", exam.id, user.username, row.score)
	session_store.clear_session(db, exam.id, user.username)
	session_store.clear_cached_questions(db, exam.id, user.username)
	return row


async def _auto_submit_if_expired(db: Session, exam: Exam, user: User, factory: GeminiFactory) -> Optional[Dict[str, Any]]:
	state = session_store.load_session(db, exam.id, user.username)
	if not _timer_expired(state):
		return None
	cached = session_store.load_cached_questions(db, exam.id, user.username)
	if cached is None or cached[1] == ESSAY:
		return None
	logger.info("Timer expired on exam %s for %s; submitting", exam.id, user.username)
	return _submitted_payload(await _finalize(db, exam, user, factory), auto=True)


@router.post("/{exam_id}/session")
async def start_session(
	exam_id: str,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	factory: GeminiFactory = Depends(get_gemini_factory),
):
	exam = get_exam_or_404(db, exam_id, user)
	existing = find_result(db, exam.id, user.username)
	if existing is not None:
		return _submitted_payload(existing)
	questions, exam_type = await _ensure_questions(db, exam, user, factory)

	state = session_store.load_session(db, exam.id, user.username)
	minutes = parse_minutes_from_prompt(exam.prompt)
	if minutes > 0 and (state is None or state.get("expires_at") is None):
		session_store.save_timer_state(db, exam.id, user.username, minutes * 60, minutes * 60)
	elif state is None:
		session_store.save_question_index(db, exam.id, user.username, 0)

	submitted = await _auto_submit_if_expired(db, exam, user, factory)
	if submitted is not None:
		return submitted
	return _state_payload(exam, questions, exam_type, session_store.load_session(db, exam.id, user.username))


@router.get("/{exam_id}/session")
async def get_session(
	exam_id: str,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	factory: GeminiFactory = Depends(get_gemini_factory),
):
	exam = get_exam_or_404(db, exam_id, user)
	existing = find_result(db, exam.id, user.username)
	if existing is not None:
		return _submitted_payload(existing)
	cached = session_store.load_cached_questions(db, exam.id, user.username)
	if cached is None:
		raise HTTPException(status_code=404, detail="Exam session has not been started")
	submitted = await _auto_submit_if_expired(db, exam, user, factory)
	if submitted is not None:
		return submitted
	questions, exam_type = cached
	return _state_payload(exam, questions, exam_type, session_store.load_session(db, exam.id, user.username))


@router.put("/{exam_id}/session/answers")
async def save_answers(
	exam_id: str,
	req: AnswersRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	factory: GeminiFactory = Depends(get_gemini_factory),
):
	exam = get_exam_or_404(db, exam_id, user)
	submitted = await _auto_submit_if_expired(db, exam, user, factory)
	if submitted is not None:
		return submitted
	saved = session_store.save_answers(db, exam.id, user.username, req.answers)
	return {"submitted": False, "saved": saved, "answered": sum(1 for v in req.answers.values() if v)}


@router.put("/{exam_id}/session/index")
async def save_index(
	exam_id: str,
	req: IndexRequest,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	factory: GeminiFactory = Depends(get_gemini_factory),
):
	exam = get_exam_or_404(db, exam_id, user)
	submitted = await _auto_submit_if_expired(db, exam, user, factory)
	if submitted is not None:
		return submitted
	saved = session_store.save_question_index(db, exam.id, user.username, req.index)
	return {"submitted": False, "saved": saved, "current_question_index": req.index}


@router.post("/{exam_id}/session/submit")
async def submit(
	exam_id: str,
	req: Optional[SubmitRequest] = None,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	factory: GeminiFactory = Depends(get_gemini_factory),
):
	exam = get_exam_or_404(db, exam_id, user)
	submitted = await _auto_submit_if_expired(db, exam, user, factory)
	if submitted is not None:
		return submitted
	row = await _finalize(db, exam, user, factory, req.answers if req else None)
	return _submitted_payload(row)


@router.post("/{exam_id}/session/essay", status_code=201)
async def submit_essay(
	exam_id: str,
	file: UploadFile = File(...),
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
):
	exam = get_exam_or_404(db, exam_id, user)
	existing = find_result(db, exam.id, user.username)
	if existing is not None:
		return _submitted_payload(existing)
	cached = session_store.load_cached_questions(db, exam.id, user.username)
	if cached is None:
		raise HTTPException(status_code=409, detail="Exam session has not been started")
	if cached[1] != ESSAY:
		raise HTTPException(status_code=400, detail="Only essay exams accept a file submission")
	if _timer_expired(session_store.load_session(db, exam.id, user.username)):
		raise HTTPException(status_code=409, detail="Exam time has run out")
	_, url = await store_upload(file, "submissions")
	row = ExamResult(
		id=uuid.uuid4().hex,
		exam_id=exam.id,
		exam_name=exam.name,
		username=user.username,
		score=0.0,
		exam_type=ESSAY,
		submission_url=url,
		duration=_duration(exam),
		created_at=datetime.utcnow(),
	)
	db.add(row)
	db.commit()
	logger.info("Essay for exam %s uploaded by %s", exam.id, user.username)
	session_store.clear_session(db, exam.id, user.username)
	session_store.clear_cached_questions(db, exam.id, user.username)
	return _submitted_payload(row)


@router.delete("/{exam_id}/session")
def clear_session(exam_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	get_exam_or_404(db, exam_id)
	session_store.clear_session(db, exam_id, user.username)
	session_store.clear_cached_questions(db, exam_id, user.username)
	return {"ok": True}
