import asyncio
from datetime import datetime, timedelta

import pytest

from examroom.extraction import MULTIPLE_CHOICE, WRITTEN
from examroom.grading import (
	build_choice_evaluation_prompt,
	build_written_grading_prompt,
	choice_computed_score,
	grade_submission,
	parse_choice_evaluation,
	parse_essay_grade,
	parse_stated_score,
	parse_written_evaluation,
	reconcile_score,
	round_half_up,
	to_float,
	written_level,
)
from examroom.models import Exam

CHOICE_QUESTIONS = [
	{"id": "q1", "text": "2 + 2 = ?", "options": ["A. 4", "B. 5"], "passage": None},
	{"id": "q2", "text": "3 + 3 = ?", "options": ["A. 5", "B. 6"], "passage": None},
	{"id": "q3", "text": "Thủ đô của Việt Nam?", "options": ["A. Huế", "B. Hà Nội"], "passage": "Bản đồ Việt Nam"},
]

CHOICE_EVALUATION = """ĐIỂM SỐ: 3,3/10

Câu 1: Đúng - Đáp án đúng: A. 4 - Phép cộng cơ bản.
Câu 2: Sai - Đáp án đúng: B. 6 - Ba cộng ba bằng sáu.
Câu 3: Sai - Đáp án đúng: B. Hà Nội - Đáp án đúng: B. Hà Nội. Thủ đô là Hà Nội.
"""

WRITTEN_QUESTIONS = [
	{"id": "w1", "text": "Chất mang năng lượng của tế bào là ___", "type": "written"},
	{"id": "w2", "text": "Bào quan hô hấp tế bào là ___", "type": "written"},
]

WRITTEN_EVALUATION = """ĐIỂM TỔNG: 7/10

Câu 1: 4.5/5 - Tỷ lệ: 90% - Trạng thái: Xuất sắc
+ Đáp án chuẩn: ATP
+ Phân tích: câu hỏi có 1 ý
+ Gợi ý: ôn lại chuyển hóa năng lượng

Câu 2: 2/5 - Tỷ lệ: 40% - Trạng thái: Trung bình
+ Đáp án chuẩn: Ti thể
+ Điểm mạnh: có ý tưởng

TỔNG KẾT:
- Nhận xét chung: khá tốt
"""


def test_number_helpers():
	assert to_float("8,5") == 8.5
	assert to_float("7.25.") == 7.25
	assert to_float("abc") == 0.0
	assert round_half_up(6.65, 1) == 6.7
	assert round_half_up(2.375, 2) == 2.38


def test_choice_prompt_lists_every_question():
	prompt = build_choice_evaluation_prompt(CHOICE_QUESTIONS, {"q1": "A. 4"})
	assert "Lựa chọn của học sinh: A. 4" in prompt
	assert prompt.count("Không trả lời") == 2
	assert "Đoạn văn: Bản đồ Việt Nam" in prompt
	assert "ĐIỂM SỐ" in prompt


def test_parse_choice_evaluation_statuses():
	answers = {"q1": "A. 4", "q2": "A. 5"}
	details = parse_choice_evaluation(CHOICE_EVALUATION, CHOICE_QUESTIONS, answers)
	assert [d["status"] for d in details] == ["correct", "incorrect", "unanswered"]
	assert details[0]["is_correct"] is True
	assert details[0]["correct_answer"] == "A. 4"
	assert details[0]["explanation"].startswith("Đáp án đúng: A. 4. ")
	# Not prefixed twice
	assert details[2]["explanation"].count("Đáp án đúng") == 1
	assert details[2]["user_answer"] is None


def test_parse_choice_evaluation_missing_lines():
	details = parse_choice_evaluation("ĐIỂM SỐ: 0/10", CHOICE_QUESTIONS[:2], {"q1": "A. 4"})
	assert [d["status"] for d in details] == ["incorrect", "unanswered"]
	assert details[0]["explanation"] == "Không có đánh giá chi tiết"


def test_choice_scores():
	details = parse_choice_evaluation(CHOICE_EVALUATION, CHOICE_QUESTIONS, {"q1": "A. 4", "q2": "A. 5"})
	assert choice_computed_score(details) == 3.3
	assert parse_stated_score(CHOICE_EVALUATION) == 3.3
	assert choice_computed_score([]) == 0.0


@pytest.mark.parametrize("stated,scores,expected", [
	(8.0, [2.0, 3.0], 8.0),
	(4.0, [3.0, 3.5], 6.5),
	(12.0, [], 10.0),
	(0.0, [-1.0], 0.0),
])
def test_reconcile_score_favours_higher_and_clamps(stated, scores, expected):
	assert reconcile_score(stated, scores) == expected


def test_written_prompt_states_per_question_maximum():
	prompt = build_written_grading_prompt("Sinh học", WRITTEN_QUESTIONS, {"w1": "ATP"})
	assert "Điểm tối đa mỗi câu: 5.00 điểm" in prompt
	assert "Câu trả lời của học sinh: ATP" in prompt
	assert "Câu trả lời của học sinh: Không có câu trả lời" in prompt


def test_parse_written_evaluation_reads_scores_and_sections():
	answers = {"w1": "ATP", "w2": "lục lạp"}
	first, second = parse_written_evaluation(WRITTEN_EVALUATION, WRITTEN_QUESTIONS, answers)
	assert first["score"] == 4.5
	assert first["max_score"] == 5.0
	assert first["status"] == "correct"
	assert first["level"] == "Xuất sắc"
	assert first["standard_answer"] == "ATP"
	assert first["suggestions"] == "ôn lại chuyển hóa năng lượng"
	assert first["strengths"] == "Chưa có đánh giá"
	assert "Đáp án chuẩn: ATP" in first["explanation"]
	assert second["score"] == 2.0
	assert second["status"] == "partial"
	assert second["level"] == "Trung bình"
	assert second["strengths"] == "có ý tưởng"


def test_written_score_is_clamped_to_question_maximum():
	text = "Câu 1: 9/5 - Tỷ lệ: 150% - Trạng thái: Tốt\n+ Đáp án chuẩn: x"
	(detail,) = parse_written_evaluation(text, WRITTEN_QUESTIONS[:1], {"w1": "x"})
	assert detail["score"] == 5.0


def test_written_fallback_percentage():
	(detail,) = parse_written_evaluation("Câu 1 đạt khoảng 60% yêu cầu.", WRITTEN_QUESTIONS[:1], {"w1": "ATP"})
	assert detail["percentage"] == 60.0
	assert detail["score"] == 6.0
	assert detail["level"] == "Khá"
	assert detail["status"] == "partial"


def test_written_partial_credit_phrase():
	(detail,) = parse_written_evaluation(
		"Câu 1: học sinh trả lời đúng một phần.", WRITTEN_QUESTIONS[:1], {"w1": "năng lượng"}
	)
	assert detail["percentage"] == 25.0
	assert detail["score"] == 2.5
	assert detail["level"] == "Yếu"


def test_written_attempt_without_feedback_gets_token_credit():
	(attempted,) = parse_written_evaluation("Không có thông tin.", WRITTEN_QUESTIONS[:1], {"w1": "xyz"})
	assert attempted["percentage"] == 5.0
	assert attempted["score"] == 0.5
	assert attempted["status"] == "partial"
	(blank,) = parse_written_evaluation("Không có thông tin.", WRITTEN_QUESTIONS[:1], {"w1": "  "})
	assert blank["score"] == 0.0
	assert blank["status"] == "unanswered"
	assert blank["level"] == "Kém"


@pytest.mark.parametrize("percentage,level", [
	(85, "Xuất sắc"), (70, "Tốt"), (50, "Khá"), (30, "Trung bình"), (0.5, "Yếu"), (0, "Kém"),
])
def test_written_level(percentage, level):
	assert written_level(percentage) == level


def test_parse_essay_grade():
	assert parse_essay_grade("ĐIỂM SỐ: 8,5/10\n\nĐÁNH GIÁ: tốt") == 8.5
	assert parse_essay_grade("Không chấm được") == 0.0


class ReplyClient:
	def __init__(self, reply):
		self.reply = reply
		self.calls = []

	async def generate(self, prompt, *, system_prompt=None):
		self.calls.append(("text", prompt, system_prompt))
		return self.reply

	async def generate_with_document(self, prompt, document, *, system_prompt=None):
		self.calls.append(("document", prompt, system_prompt))
		return self.reply


def test_grade_submission_multiple_choice_with_late_penalty():
	submitted_at = datetime(2024, 5, 1, 9, 0, 0)
	exam = Exam(id="e1", name="Toán", prompt="45 phút", deadline=submitted_at - timedelta(minutes=45))
	client = ReplyClient(CHOICE_EVALUATION)
	graded = asyncio.run(grade_submission(
		client, exam, CHOICE_QUESTIONS, {"q1": "A. 4", "q2": "A. 5"},
		exam_type=MULTIPLE_CHOICE, document=None, submitted_at=submitted_at,
	))
	assert client.calls[0][0] == "document"
	assert client.calls[0][2] == "45 phút"
	assert graded.reconciled_score == 3.3
	assert graded.penalty == 2.0
	assert graded.final_score == 1.3
	assert graded.answers == {"q1": "A. 4", "q2": "A. 5", "q3": ""}
	assert graded.late_penalty_info()["note"] == "Nộp muộn 45 phút, trừ 2 điểm."


def test_grade_submission_written_uses_text_prompt():
	exam = Exam(id="e2", name="Sinh", prompt=None, deadline=None)
	client = ReplyClient(WRITTEN_EVALUATION)
	graded = asyncio.run(grade_submission(
		client, exam, WRITTEN_QUESTIONS, {"w1": "ATP", "w2": "lục lạp"}, exam_type=WRITTEN,
	))
	assert client.calls[0][0] == "text"
	assert graded.exam_type == WRITTEN
	assert graded.computed_score == 6.5
	assert graded.stated_score == 7.0
	assert graded.final_score == 7.0
	assert graded.late_penalty_info() is None
