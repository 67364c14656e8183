from examroom.models import Exam, ExamFile, ExamResult


def _create(client, **fields):
	body = {"name": "Tiếng Anh 12", "prompt": "Thời gian: 60 phút", "question_count": 30, "allow_references": True}
	body.update(fields)
	return client.post("/exams", json=body)


def test_admin_creates_and_lists_exams(client, login_as):
	login_as("admin", "ADMIN")
	res = _create(client, deadline="2024-06-01T10:00:00+07:00")
	assert res.status_code == 201
	exam = res.json()
	assert exam["created_by"] == "admin"
	assert exam["duration_minutes"] == 60
	assert exam["question_count"] == 30
	# Stored as naive UTC
	assert exam["deadline"].startswith("2024-06-01T03:00:00")
	assert [e["id"] for e in client.get("/exams").json()] == [exam["id"]]


def test_question_count_defaults_when_unset(client, login_as):
	login_as("admin", "ADMIN")
	exam = _create(client, question_count=None).json()
	assert exam["question_count"] == 10


def test_students_cannot_manage_exams(client, login_as, make_exam):
	exam = make_exam()
	login_as("alice")
	assert _create(client).status_code == 403
	assert client.put(f"/exams/{exam.id}", json={"name": "x"}).status_code == 403
	assert client.post(f"/exams/{exam.id}/toggle-active").status_code == 403
	assert client.get(f"/exams/{exam.id}/results").status_code == 403


def test_inactive_exams_are_hidden_from_students(client, login_as, make_exam):
	visible = make_exam()
	hidden = make_exam(is_active=False)
	login_as("alice")
	assert [e["id"] for e in client.get("/exams").json()] == [visible.id]
	assert client.get(f"/exams/{hidden.id}").status_code == 403
	assert client.get("/exams/nope").status_code == 404
	login_as("admin", "ADMIN")
	assert len(client.get("/exams").json()) == 2


def test_update_and_toggles(client, login_as, make_exam):
	exam = make_exam()
	login_as("admin", "ADMIN")
	res = client.put(f"/exams/{exam.id}", json={"name": "Đề mới", "description": "Ôn tập", "is_active": None})
	assert res.status_code == 200
	assert res.json()["name"] == "Đề mới"
	assert res.json()["is_active"] is True
	assert client.post(f"/exams/{exam.id}/toggle-shuffle").json()["shuffle_questions"] is True
	assert client.post(f"/exams/{exam.id}/toggle-shuffle").json()["shuffle_questions"] is False
	assert client.post(f"/exams/{exam.id}/toggle-active").json()["is_active"] is False


def test_upload_and_delete_file(client, login_as, make_exam, upload_dir, db_session):
	exam = make_exam(with_file=False)
	login_as("admin", "ADMIN")
	res = client.post(
		f"/exams/{exam.id}/files",
		files={"file": ("de thi cuoi ky.pdf", b"%PDF-1.4 content", "application/pdf")},
	)
	assert res.status_code == 201
	uploaded = res.json()
	assert uploaded["name"] == "de thi cuoi ky.pdf"
	assert uploaded["url"].startswith("/uploads/files/")
	stored = upload_dir / uploaded["url"][len("/uploads/"):]
	assert stored.read_bytes() == b"%PDF-1.4 content"
	assert client.get(f"/exams/{exam.id}").json()["files"][0]["id"] == uploaded["id"]

	assert client.delete(f"/exams/{exam.id}/files/{uploaded['id']}").status_code == 200
	assert not stored.exists()
	assert db_session.query(ExamFile).count() == 0


def test_empty_upload_is_rejected(client, login_as, make_exam):
	exam = make_exam(with_file=False)
	login_as("admin", "ADMIN")
	res = client.post(f"/exams/{exam.id}/files", files={"file": ("x.pdf", b"", "application/pdf")})
	assert res.status_code == 400


def test_delete_exam_removes_results_and_files(client, login_as, make_exam, db_session, upload_dir):
	exam = make_exam()
	exam_id = exam.id
	db_session.add(ExamResult(id="r1", exam_id=exam.id, exam_name=exam.name, username="alice", score=5, exam_type="essay"))
	db_session.commit()
	login_as("admin", "ADMIN")
	assert client.delete(f"/exams/{exam_id}").status_code == 200
	assert db_session.query(Exam).count() == 0
	assert db_session.query(ExamResult).count() == 0
	assert not (upload_dir / "files" / f"{exam_id}.pdf").exists()


def test_admin_lists_exam_results(client, login_as, make_exam, db_session):
	exam = make_exam()
	db_session.add(ExamResult(id="r1", exam_id=exam.id, exam_name=exam.name, username="alice", score=7.5,
	                          exam_type="multiple-choice", details_json='[{"status": "correct"}]'))
	db_session.commit()
	login_as("admin", "ADMIN")
	(result,) = client.get(f"/exams/{exam.id}/results").json()
	assert result["username"] == "alice"
	assert result["details"] == [{"status": "correct"}]
