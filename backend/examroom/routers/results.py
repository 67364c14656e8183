from __future__ import annotations
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import prompts
from ..db import get_db
from ..documents import DocumentError, DocumentNotFound, load_document
from ..extraction import ESSAY
from ..gemini_client import GeminiError, GeminiFactory, get_gemini_factory
from ..grading import parse_essay_grade, round_half_up
from ..models import Exam, ExamResult
from ..timer import late_penalty
from .auth import User, get_current_user
from .exams import get_exam_or_404

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/results", tags=["results"])


class ScoreUpdate(BaseModel):
	score: float = Field(ge=0, le=10)


def _loads(raw: Optional[str], default: Any) -> Any:
	if not raw:
		return default
	try:
		return json.loads(raw)
	except ValueError:
		return default


def result_to_dict(row: ExamResult) -> Dict[str, Any]:
	return {
		"id": row.id,
		"exam_id": row.exam_id,
		"exam_name": row.exam_name,
		"username": row.username,
		"score": row.score,
		"exam_type": row.exam_type,
		"details": _loads(row.details_json, []),
		"evaluation": row.evaluation,
		"late_penalty": _loads(row.late_penalty_json, None),
		"submission_url": row.submission_url,
		"duration": row.duration,
		"created_at": row.created_at,
		"updated_at": row.updated_at,
	}


def penalty_json(amount: float, note: str, original: float) -> Optional[str]:
	if amount <= 0:
		return None
	return json.dumps({"amount": amount, "note": note, "original_score": original}, ensure_ascii=False)


def find_result(db: Session, exam_id: str, username: str) -> Optional[ExamResult]:
	return db.query(ExamResult).filter(ExamResult.exam_id == exam_id, ExamResult.username == username).first()


def _owned_result_or_404(db: Session, result_id: str, user: User) -> ExamResult:
	row = db.get(ExamResult, result_id)
	if row is None:
		raise HTTPException(status_code=404, detail="Result not found")
	if row.username != user.username and not user.is_admin:
		raise HTTPException(status_code=403, detail="Not allowed to access this result")
	return row


def apply_penalty(row: ExamResult, exam: Exam, score: float) -> None:
	"""Store ``score`` on ``row`` after deducting the late penalty for its submission time."""
	amount, note = late_penalty(score, exam.deadline, row.created_at or datetime.utcnow())
	row.score = round_half_up(max(0.0, score - amount), 1)
	row.late_penalty_json = penalty_json(amount, note, score)
	row.updated_at = datetime.utcnow()


@router.get("")
def lookup_result(exam_id: str = Query(...), user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = find_result(db, exam_id, user.username)
	if row is None:
		raise HTTPException(status_code=404, detail="Result not found")
	return result_to_dict(row)


@router.get("/{result_id}")
def get_result(result_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return result_to_dict(_owned_result_or_404(db, result_id, user))


@router.put("/{result_id}/score")
def update_score(result_id: str, req: ScoreUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	row = _owned_result_or_404(db, result_id, user)
	exam = get_exam_or_404(db, row.exam_id)
	apply_penalty(row, exam, req.score)
	db.commit()
	logger.info("Score for result %s set to %.1f by %s", row.id, row.score, user.username)
	return result_to_dict(row)


@router.post("/{result_id}/grade-essay")
async def grade_essay(
	result_id: str,
	user: User = Depends(get_current_user),
	db: Session = Depends(get_db),
	factory: GeminiFactory = Depends(get_gemini_factory),
):
	row = _owned_result_or_404(db, result_id, user)
	if row.exam_type != ESSAY:
		raise HTTPException(status_code=400, detail="Only essay submissions are graded from a file")
	if row.score and row.score > 0:
		return result_to_dict(row)
	if not row.submission_url:
		raise HTTPException(status_code=400, detail="No submitted file to grade")
	exam = get_exam_or_404(db, row.exam_id)
	try:
		document = load_document(exam.id, row.submission_url.split("/")[-1], row.submission_url, use_cache=False)
	except DocumentNotFound as e:
		raise HTTPException(status_code=404, detail=str(e))
	except DocumentError as e:
		raise HTTPException(status_code=400, detail=str(e))

	try:
		client = factory(model=exam.model_id or None)
	except ValueError as e:
		raise HTTPException(status_code=503, detail=str(e))
	try:
		topic = exam.description or exam.name
		evaluation = await client.generate_with_document(
			prompts.essay_grading_prompt(topic), document, system_prompt=exam.prompt or None
		)
	except GeminiError as e:
		raise HTTPException(status_code=502, detail=str(e))
	finally:
		await client.aclose()

	apply_penalty(row, exam, parse_essay_grade(evaluation))
	row.evaluation = evaluation
	db.commit()
	logger.info("Essay %s graded: %.1f", row.id, row.score)
	return result_to_dict(row)
