from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Float, Boolean, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from .db import Base


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	# USER or ADMIN
	role = Column(String(16), default="USER", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti of the issued token
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Exam(Base):
	__tablename__ = "exams"
	id = Column(String(64), primary_key=True)
	name = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	# Duration directive ("45 phút") and grading instructions; sent as system instruction
	prompt = Column(Text, nullable=True)
	model_id = Column(String(128), nullable=True)
	deadline = Column(DateTime, nullable=True)
	allow_references = Column(Boolean, default=False, nullable=False)
	shuffle_questions = Column(Boolean, default=False, nullable=False)
	question_count = Column(Integer, nullable=True)
	is_active = Column(Boolean, default=True, nullable=False)
	created_by = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	files = relationship("ExamFile", back_populates="exam", cascade="all, delete-orphan", order_by="ExamFile.created_at")


class ExamFile(Base):
	__tablename__ = "exam_files"
	id = Column(String(64), primary_key=True)
	exam_id = Column(String(64), ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
	name = Column(String(256), nullable=False)
	url = Column(String(512), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	exam = relationship("Exam", back_populates="files")


class ExamSession(Base):
	__tablename__ = "exam_sessions"
	__table_args__ = (UniqueConstraint("exam_id", "username", name="uq_exam_session_user"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	exam_id = Column(String(64), nullable=False, index=True)
	username = Column(String(128), nullable=False, index=True)
	answers_json = Column(Text, nullable=True)  # JSON string {question_id: answer}
	current_question_index = Column(Integer, default=0, nullable=False)
	expires_at = Column(DateTime, nullable=True)
	total_time = Column(Integer, nullable=True)  # seconds
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class QuestionCache(Base):
	__tablename__ = "question_caches"
	__table_args__ = (UniqueConstraint("exam_id", "username", name="uq_question_cache_user"),)
	id = Column(Integer, primary_key=True, autoincrement=True)
	exam_id = Column(String(64), nullable=False, index=True)
	username = Column(String(128), nullable=False, index=True)
	questions_json = Column(Text, nullable=False)
	exam_type = Column(String(32), nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class ExamResult(Base):
	__tablename__ = "exam_results"
	__table_args__ = (UniqueConstraint("exam_id", "username", name="uq_exam_result_user"),)
	id = Column(String(64), primary_key=True)
	exam_id = Column(String(64), ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
	exam_name = Column(String(256), nullable=False)
	username = Column(String(128), nullable=False, index=True)
	score = Column(Float, default=0.0, nullable=False)
	exam_type = Column(String(32), nullable=False)
	details_json = Column(Text, nullable=True)  # JSON list of per-question details
	evaluation = Column(Text, nullable=True)  # raw model output
	late_penalty_json = Column(Text, nullable=True)
	submission_url = Column(String(512), nullable=True)  # essay file
	duration = Column(Text, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
