from datetime import datetime, timedelta

from examroom.gemini_client import GeminiError
from examroom.models import ExamResult

DEADLINE = datetime(2024, 5, 1, 8, 0, 0)


def _result(db_session, exam, **fields):
	data = {
		"id": "r1", "exam_id": exam.id, "exam_name": exam.name, "username": "alice",
		"score": 6.0, "exam_type": "multiple-choice", "created_at": DEADLINE + timedelta(minutes=10),
	}
	data.update(fields)
	row = ExamResult(**data)
	db_session.add(row)
	db_session.commit()
	return row


def test_lookup_by_exam(client, login_as, make_exam, db_session):
	exam = make_exam()
	login_as("alice")
	assert client.get(f"/results?exam_id={exam.id}").status_code == 404
	_result(db_session, exam)
	assert client.get(f"/results?exam_id={exam.id}").json()["id"] == "r1"
	login_as("bob")
	assert client.get(f"/results?exam_id={exam.id}").status_code == 404


def test_results_are_private(client, login_as, make_exam, db_session):
	exam = make_exam()
	_result(db_session, exam)
	login_as("bob")
	assert client.get("/results/r1").status_code == 403
	assert client.put("/results/r1/score", json={"score": 9}).status_code == 403
	login_as("admin", "ADMIN")
	assert client.get("/results/r1").json()["username"] == "alice"
	assert client.get("/results/missing").status_code == 404


def test_update_score_reapplies_late_penalty(client, login_as, make_exam, db_session):
	exam = make_exam(deadline=DEADLINE)
	_result(db_session, exam)
	login_as("admin", "ADMIN")
	res = client.put("/results/r1/score", json={"score": 8})
	assert res.status_code == 200
	body = res.json()
	assert body["score"] == 7.5
	assert body["late_penalty"] == {"amount": 0.5, "note": "Nộp muộn 10 phút, trừ 0.5 điểm.", "original_score": 8.0}


def test_update_score_on_time_and_bounds(client, login_as, make_exam, db_session):
	exam = make_exam(deadline=DEADLINE + timedelta(hours=1))
	_result(db_session, exam)
	login_as("alice")
	body = client.put("/results/r1/score", json={"score": 9.25}).json()
	assert body["score"] == 9.3
	assert body["late_penalty"] is None
	assert client.put("/results/r1/score", json={"score": 11}).status_code == 422


def test_grade_essay(client, login_as, make_exam, db_session, fake_gemini, upload_dir):
	exam = make_exam(description="Phân tích bài thơ Tây Tiến", deadline=None)
	(upload_dir / "submissions").mkdir()
	(upload_dir / "submissions" / "bai.txt").write_text("Bài làm", encoding="utf-8")
	_result(db_session, exam, exam_type="essay", score=0.0, submission_url="/uploads/submissions/bai.txt")
	login_as("alice")
	fake_gemini.responses.append("ĐIỂM SỐ: 8.5/10\n\nĐÁNH GIÁ:\nLập luận chặt chẽ.")
	res = client.post("/results/r1/grade-essay")
	assert res.status_code == 200
	body = res.json()
	assert body["score"] == 8.5
	assert body["evaluation"].startswith("ĐIỂM SỐ: 8.5/10")
	call = fake_gemini.calls[0]
	assert "Đề bài: Phân tích bài thơ Tây Tiến" in call["prompt"]
	assert call["document"].mime_type == "text/plain"

	# Already graded: no second model call
	assert client.post("/results/r1/grade-essay").json()["score"] == 8.5
	assert len(fake_gemini.calls) == 1


def test_grade_essay_rejects_other_types_and_model_errors(client, login_as, make_exam, db_session, fake_gemini, upload_dir):
	exam = make_exam()
	_result(db_session, exam)
	login_as("alice")
	assert client.post("/results/r1/grade-essay").status_code == 400

	(upload_dir / "submissions").mkdir()
	(upload_dir / "submissions" / "bai.txt").write_text("Bài làm", encoding="utf-8")
	_result(db_session, exam, id="r2", username="alice2", exam_type="essay", score=0.0,
	        submission_url="/uploads/submissions/bai.txt")
	login_as("alice2")
	fake_gemini.responses.append(GeminiError("blocked"))
	assert client.post("/results/r2/grade-essay").status_code == 502
