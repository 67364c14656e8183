from __future__ import annotations
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..documents import DocumentError, forget_document, resolve_upload_path
from ..models import Exam, ExamFile, ExamResult, ExamSession, QuestionCache
from ..settings import settings
from ..timer import is_deadline_passed, parse_minutes_from_prompt
from .auth import User, get_current_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exams", tags=["exams"])

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class ExamCreate(BaseModel):
	name: str = Field(min_length=1, max_length=256)
	description: Optional[str] = None
	prompt: Optional[str] = None
	model_id: Optional[str] = None
	deadline: Optional[datetime] = None
	allow_references: bool = False
	shuffle_questions: bool = False
	question_count: Optional[int] = Field(default=None, ge=1, le=200)
	is_active: bool = True


class ExamUpdate(BaseModel):
	name: Optional[str] = Field(default=None, min_length=1, max_length=256)
	description: Optional[str] = None
	prompt: Optional[str] = None
	model_id: Optional[str] = None
	deadline: Optional[datetime] = None
	allow_references: Optional[bool] = None
	shuffle_questions: Optional[bool] = None
	question_count: Optional[int] = Field(default=None, ge=1, le=200)
	is_active: Optional[bool] = None


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
	if value is None or value.tzinfo is None:
		return value
	return value.astimezone(timezone.utc).replace(tzinfo=None)


def file_to_dict(f: ExamFile) -> Dict[str, Any]:
	return {"id": f.id, "name": f.name, "url": f.url, "created_at": f.created_at}


def exam_to_dict(exam: Exam) -> Dict[str, Any]:
	minutes = parse_minutes_from_prompt(exam.prompt)
	return {
		"id": exam.id,
		"name": exam.name,
		"description": exam.description,
		"prompt": exam.prompt,
		"model_id": exam.model_id,
		"deadline": exam.deadline,
		"deadline_passed": is_deadline_passed(exam.deadline),
		"allow_references": bool(exam.allow_references),
		"shuffle_questions": bool(exam.shuffle_questions),
		"question_count": exam.question_count or settings.default_question_count,
		"is_active": bool(exam.is_active),
		"duration_minutes": minutes or None,
		"created_by": exam.created_by,
		"created_at": exam.created_at,
		"updated_at": exam.updated_at,
		"files": [file_to_dict(f) for f in exam.files],
	}


def get_exam_or_404(db: Session, exam_id: str, user: Optional[User] = None) -> Exam:
	exam = db.get(Exam, exam_id)
	if exam is None:
		raise HTTPException(status_code=404, detail="Exam not found")
	if user is not None and not exam.is_active and not user.is_admin:
		raise HTTPException(status_code=403, detail="Exam is not active")
	return exam


@router.get("")
def list_exams(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	query = db.query(Exam)
	if not user.is_admin:
		query = query.filter(Exam.is_active.is_(True))
	return [exam_to_dict(e) for e in query.order_by(Exam.created_at.desc()).all()]


@router.get("/{exam_id}")
def get_exam(exam_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return exam_to_dict(get_exam_or_404(db, exam_id, user))


@router.post("", status_code=201)
def create_exam(req: ExamCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	data = req.model_dump()
	data["deadline"] = naive_utc(data["deadline"])
	exam = Exam(id=uuid.uuid4().hex, created_by=admin.username, **data)
	db.add(exam)
	db.commit()
	db.refresh(exam)
	logger.info("Exam %s created by %s", exam.id, admin.username)
	return exam_to_dict(exam)


@router.put("/{exam_id}")
def update_exam(exam_id: str, req: ExamUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	exam = get_exam_or_404(db, exam_id)
	changes = req.model_dump(exclude_unset=True)
	if "deadline" in changes:
		changes["deadline"] = naive_utc(changes["deadline"])
	for key, value in changes.items():
		if value is None and key not in ("description", "prompt", "model_id", "deadline", "question_count"):
			continue
		setattr(exam, key, value)
	exam.updated_at = datetime.utcnow()
	db.commit()
	db.refresh(exam)
	return exam_to_dict(exam)


def _remove_stored_file(url: str) -> None:
	try:
		path = resolve_upload_path(url)
		if path.is_file():
			path.unlink()
	except (OSError, DocumentError):
		logger.warning("Could not remove stored file %s", url)


@router.delete("/{exam_id}")
def delete_exam(exam_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	exam = get_exam_or_404(db, exam_id)
	urls = [f.url for f in exam.files]
	db.query(ExamResult).filter(ExamResult.exam_id == exam_id).delete()
	db.query(ExamSession).filter(ExamSession.exam_id == exam_id).delete()
	db.query(QuestionCache).filter(QuestionCache.exam_id == exam_id).delete()
	db.delete(exam)
	db.commit()
	for url in urls:
		_remove_stored_file(url)
	forget_document(exam_id)
	return {"ok": True}


@router.post("/{exam_id}/toggle-shuffle")
def toggle_shuffle(exam_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	exam = get_exam_or_404(db, exam_id)
	exam.shuffle_questions = not exam.shuffle_questions
	db.commit()
	return {"id": exam.id, "shuffle_questions": bool(exam.shuffle_questions)}


@router.post("/{exam_id}/toggle-active")
def toggle_active(exam_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	exam = get_exam_or_404(db, exam_id)
	exam.is_active = not exam.is_active
	db.commit()
	return {"id": exam.id, "is_active": bool(exam.is_active)}


async def store_upload(file: UploadFile, subdir: str) -> tuple[str, str]:
	"""Write an upload under the upload dir; returns (display name, public url)."""
	content = await file.read()
	if not content:
		raise HTTPException(status_code=400, detail="Uploaded file is empty")
	if len(content) > settings.max_upload_size_mb * 1024 * 1024:
		raise HTTPException(status_code=413, detail=f"File exceeds {settings.max_upload_size_mb} MB")
	original = file.filename or "upload"
	stored = f"{uuid.uuid4().hex[:12]}_{_UNSAFE_NAME_RE.sub('_', Path(original).name)}"
	target_dir = Path(settings.upload_dir) / subdir
	target_dir.mkdir(parents=True, exist_ok=True)
	(target_dir / stored).write_bytes(content)
	return original, f"/uploads/{subdir}/{stored}"


@router.post("/{exam_id}/files", status_code=201)
async def upload_exam_file(
	exam_id: str,
	file: UploadFile = File(...),
	admin: User = Depends(require_admin),
	db: Session = Depends(get_db),
):
	exam = get_exam_or_404(db, exam_id)
	name, url = await store_upload(file, "files")
	row = ExamFile(id=uuid.uuid4().hex, exam_id=exam.id, name=name, url=url)
	db.add(row)
	db.commit()
	# A new attachment invalidates the cached payload
	forget_document(exam.id)
	return file_to_dict(row)


@router.delete("/{exam_id}/files/{file_id}")
def delete_exam_file(exam_id: str, file_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	row = db.query(ExamFile).filter(ExamFile.id == file_id, ExamFile.exam_id == exam_id).first()
	if row is None:
		raise HTTPException(status_code=404, detail="File not found")
	url = row.url
	db.delete(row)
	db.commit()
	_remove_stored_file(url)
	forget_document(exam_id)
	return {"ok": True}


@router.get("/{exam_id}/results")
def list_exam_results(exam_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
	from .results import result_to_dict

	get_exam_or_404(db, exam_id)
	rows: List[ExamResult] = (
		db.query(ExamResult).filter(ExamResult.exam_id == exam_id).order_by(ExamResult.created_at.desc()).all()
	)
	return [result_to_dict(r) for r in rows]
