import os
import tempfile

# Must be set before examroom.settings is imported
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="examroom-uploads-"))
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from pathlib import Path
from typing import Any, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examroom import documents
from examroom.db import Base, get_db
from examroom.gemini_client import get_gemini_factory
from examroom.main import app
from examroom.models import Exam, ExamFile
from examroom.routers.auth import User, get_current_user
from examroom.settings import settings


class FakeGemini:
	"""Stands in for GeminiClient; replies are consumed in order."""

	def __init__(self) -> None:
		self.responses: List[Any] = []
		self.calls: List[dict] = []
		self.models: List[Any] = []
		self.closed = 0

	def _next(self, **call: Any) -> str:
		self.calls.append(call)
		reply = self.responses.pop(0)
		if isinstance(reply, Exception):
			raise reply
		return reply

	async def generate(self, prompt, *, system_prompt=None):
		return self._next(kind="text", prompt=prompt, system_prompt=system_prompt, document=None)

	async def generate_with_document(self, prompt, document, *, system_prompt=None):
		return self._next(kind="document", prompt=prompt, system_prompt=system_prompt, document=document)

	async def aclose(self):
		self.closed += 1


@pytest.fixture
def engine():
	eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
	Base.metadata.create_all(bind=eng)
	yield eng
	Base.metadata.drop_all(bind=eng)
	eng.dispose()


@pytest.fixture
def db_session(engine):
	session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
	try:
		yield session
	finally:
		session.close()


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
	root = tmp_path / "uploads"
	(root / "files").mkdir(parents=True)
	monkeypatch.setattr(settings, "upload_dir", str(root))
	documents._documents.clear()
	yield root
	documents._documents.clear()


@pytest.fixture
def fake_gemini():
	return FakeGemini()


@pytest.fixture
def client(db_session, fake_gemini):
	def _get_db():
		yield db_session

	def _factory(**kwargs):
		fake_gemini.models.append(kwargs.get("model"))
		return fake_gemini

	app.dependency_overrides[get_db] = _get_db
	app.dependency_overrides[get_gemini_factory] = lambda: _factory
	# No context manager: startup hooks would touch the real database
	yield TestClient(app)
	app.dependency_overrides.clear()


@pytest.fixture
def login_as():
	def _login(username: str = "alice", role: str = "USER") -> User:
		user = User(username=username, role=role)
		app.dependency_overrides[get_current_user] = lambda: user
		return user

	return _login


@pytest.fixture
def make_exam(db_session, upload_dir):
	def _make(with_file: bool = True, exam_id: str = None, **fields: Any) -> Exam:
		exam_id = exam_id or f"exam{db_session.query(Exam).count() + 1}"
		data = {"name": "Sinh học 10", "prompt": "Thời gian làm bài: 45 phút", "is_active": True}
		data.update(fields)
		exam = Exam(id=exam_id, **data)
		db_session.add(exam)
		if with_file:
			path: Path = upload_dir / "files" / f"{exam.id}.pdf"
			path.write_bytes(b"%PDF-1.4 de thi")
			db_session.add(ExamFile(id=f"file-{exam.id}", exam_id=exam.id, name="de-thi.pdf", url=f"/uploads/files/{exam.id}.pdf"))
		db_session.commit()
		db_session.refresh(exam)
		return exam

	return _make
