from __future__ import annotations
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from . import prompts
from .documents import LoadedDocument
from .extraction import ESSAY, MULTIPLE_CHOICE, WRITTEN
from .gemini_client import GeminiClient
from .models import Exam
from .timer import late_penalty

logger = logging.getLogger(__name__)

MAX_SCORE = 10.0

_STATED_SCORE_RE = re.compile(r"ĐIỂM SỐ:\s*(\d+([.,]\d+)?)/10")
_STATED_TOTAL_RE = re.compile(r"ĐIỂM TỔNG:\s*(\d+([.,]\d+)?)/10")
_NUMBER_RE = re.compile(r"\s*(\d+(?:\.\d*)?|\.\d+)")

_SECTION_PATTERNS = {
    "standard_answer": (r"Đáp\s*án\s*chuẩn", "Chưa có đáp án chuẩn"),
    "analysis": (r"Phân\s*tích", "Chưa có phân tích"),
    "details_breakdown": (r"Chi\s*tiết\s*chấm\s*điểm", "Chưa có chi tiết chấm điểm"),
    "calculation": (r"Tính\s*toán", "Chưa có tính toán"),
    "strengths": (r"Điểm\s*mạnh", "Chưa có đánh giá"),
    "improvements": (r"Cần\s*cải\s*thiện", "Chưa có đánh giá"),
    "suggestions": (r"Gợi\s*ý", "Chưa có đánh giá"),
}

_PARTIAL_CREDIT_RES = [
    re.compile(p, re.IGNORECASE)
    for p in (r"một\s*phần", r"phần\s*đúng", r"đúng\s*một\s*ít", r"có\s*ý\s*tưởng", r"chưa\s*đầy\s*đủ")
]


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def to_float(text: Optional[str]) -> float:
    """Leading number of ``text`` with a decimal comma accepted; 0 when absent."""
    if not text:
        return 0.0
    match = _NUMBER_RE.match(text.replace(",", ".", 1))
    return float(match.group(1)) if match else 0.0


def clamp_score(value: float) -> float:
    return max(0.0, min(value, MAX_SCORE))


def reconcile_score(stated: float, per_question_scores: Iterable[float]) -> float:
    """Favour the student: the higher of the model's total and our own sum."""
    return clamp_score(max(stated, sum(per_question_scores)))


def parse_stated_score(text: str, pattern: re.Pattern = _STATED_SCORE_RE) -> float:
    match = pattern.search(text or "")
    return to_float(match.group(1)) if match else 0.0


def _combined_answers(questions: List[Dict[str, Any]], answers: Dict[str, str]) -> Dict[str, str]:
    combined = {q["id"]: "" for q in questions}
    combined.update({k: v for k, v in answers.items() if v})
    return combined


# ---- multiple choice ----

def build_choice_evaluation_prompt(questions: List[Dict[str, Any]], answers: Dict[str, str]) -> str:
    blocks = []
    for i, q in enumerate(questions, start=1):
        selected = answers.get(q["id"]) or "Không trả lời"
        block = (
            f"Câu hỏi {i}: {q['text']}\n"
            f"Lựa chọn của học sinh: {selected}\n"
            f"Các lựa chọn: {', '.join(q.get('options') or [])}\n"
        )
        if q.get("passage"):
            block += f"Đoạn văn: {q['passage']}\n"
        blocks.append(block)
    return prompts.choice_evaluation_prompt("\n\n".join(blocks))


def parse_choice_evaluation(text: str, questions: List[Dict[str, Any]], answers: Dict[str, str]) -> List[Dict[str, Any]]:
    results = []
    for number, question in enumerate(questions, start=1):
        pattern = re.compile(
            rf"Câu\s*{number}:\s*(Đúng|Sai|Chưa trả lời)\s*-\s*Đáp án đúng:\s*(.+?)\s*-\s*(.+?)(?=Câu\s*\d+:|\Z)",
            re.DOTALL,
        )
        match = pattern.search(text or "")
        user_answer = answers.get(question["id"]) or None
        correct_answer = ""
        explanation = "Không có đánh giá chi tiết"
        if match:
            correct_answer = match.group(2).strip()
            explanation = match.group(3).strip() or "Không có giải thích"
            if user_answer is None:
                status = "unanswered"
            else:
                # The model's verdict wins over string comparison
                status = "correct" if match.group(1) == "Đúng" else "incorrect"
            if correct_answer not in explanation:
                explanation = f"Đáp án đúng: {correct_answer}. {explanation}"
        else:
            status = "unanswered" if user_answer is None else "incorrect"
        results.append({
            "question_id": question["id"],
            "question": question["text"],
            "options": question.get("options") or [],
            "passage": question.get("passage"),
            "user_answer": user_answer,
            "correct_answer": correct_answer,
            "status": status,
            "is_correct": status == "correct",
            "explanation": explanation,
        })
    return results


def choice_computed_score(results: List[Dict[str, Any]]) -> float:
    if not results:
        return 0.0
    correct = sum(1 for r in results if r["status"] == "correct")
    return round_half_up(correct / len(results) * MAX_SCORE, 1)


# ---- written (short answer, partial credit) ----

def build_written_grading_prompt(exam_name: str, questions: List[Dict[str, Any]], answers: Dict[str, str]) -> str:
    answers_text = "\n\n".join(
        f"Câu {i}: {q['text']}\nCâu trả lời của học sinh: {answers.get(q['id']) or 'Không có câu trả lời'}"
        for i, q in enumerate(questions, start=1)
    )
    return prompts.written_grading_prompt(exam_name or "Bài kiểm tra tự luận", len(questions), answers_text)


def _section(details: str, label: str, default: str) -> str:
    match = re.search(rf"\+\s*{label}:\s*([^+]*?)(?=\+|\Z)", details, re.IGNORECASE)
    return match.group(1).strip() if match else default


def _question_block(text: str, number: int) -> str:
    start = text.find(f"Câu {number}")
    if start == -1:
        return ""
    end = text.find(f"Câu {number + 1}", start + 1)
    return text[start:end] if end != -1 else text[start:]


def _fallback_percentage(text: str, number: int) -> float:
    patterns = [
        rf"Câu\s*{number}[\s\S]*?([\d.,]+)%",
        rf"{number}[\s\S]*?([\d.,]+)\s*%",
        rf"Câu\s*{number}[\s\S]*?Tỷ\s*lệ[\s\S]*?([\d.,]+)%",
    ]
    for pattern in patterns:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return to_float(match.group(1))
    block = _question_block(text, number)
    if block and any(p.search(block) for p in _PARTIAL_CREDIT_RES):
        return 25.0
    return 0.0


def written_level(percentage: float) -> str:
    if percentage >= 85:
        return "Xuất sắc"
    if percentage >= 70:
        return "Tốt"
    if percentage >= 50:
        return "Khá"
    if percentage >= 30:
        return "Trung bình"
    if percentage > 0:
        return "Yếu"
    return "Kém"


def parse_written_evaluation(text: str, questions: List[Dict[str, Any]], answers: Dict[str, str]) -> List[Dict[str, Any]]:
    text = text or ""
    max_per_question = MAX_SCORE / len(questions) if questions else 0.0
    results = []
    for number, question in enumerate(questions, start=1):
        pattern = re.compile(
            rf"Câu\s*{number}:\s*([\d.,]+)\s*/\s*([\d.,]+)\s*-\s*Tỷ\s*lệ:\s*([\d.,]+)%\s*-\s*Trạng\s*thái:\s*([^+\n]+)"
            rf"([\s\S]*?)(?=Câu\s*\d+:|TỔNG\s*KẾT:|\Z)",
            re.IGNORECASE,
        )
        match = pattern.search(text)
        max_score = max_per_question
        sections = {key: default for key, (_, default) in _SECTION_PATTERNS.items()}
        if match:
            model_score = to_float(match.group(1))
            max_score = to_float(match.group(2)) or max_per_question
            percentage = to_float(match.group(3))
            score = percentage / 100 * max_score
            # Accept the model's own figure when it is close and higher
            if model_score > 0 and abs(model_score - score) <= max_score * 0.1:
                score = max(model_score, score)
            details = match.group(5) or ""
            for key, (label, default) in _SECTION_PATTERNS.items():
                sections[key] = _section(details, label, default)
        else:
            percentage = _fallback_percentage(text, number)
            score = percentage / 100 * max_per_question

        answer = answers.get(question["id"]) or ""
        if percentage >= 85:
            status = "correct"
        elif percentage > 0:
            status = "partial"
        elif answer.strip():
            # Any attempt earns a token 5%
            percentage = 5.0
            score = max(score, 0.05 * max_per_question)
            status = "partial"
        else:
            status = "unanswered"

        score = round_half_up(max(0.0, min(score, max_score)), 2)
        level = written_level(percentage)
        feedback = (
            f"Điểm: {score:.2f}/{max_score:.2f} ({percentage:.1f}%)\n"
            f"Trạng thái: {level}\n\n"
            f"Đáp án chuẩn: {sections['standard_answer']}\n\n"
            f"Phân tích: {sections['analysis']}\n\n"
            f"Chi tiết chấm điểm:\n{sections['details_breakdown']}\n\n"
            f"Tính toán: {sections['calculation']}\n\n"
            f"Điểm mạnh: {sections['strengths']}\n\n"
            f"Cần cải thiện: {sections['improvements']}\n\n"
            f"Gợi ý: {sections['suggestions']}"
        )
        results.append({
            "question_id": question["id"],
            "question": question["text"],
            "user_answer": answer,
            "type": WRITTEN,
            "question_index": number,
            "score": score,
            "max_score": round_half_up(max_score, 2),
            "percentage": round_half_up(percentage, 1),
            "level": level,
            "status": status,
            "correct_answer": sections["standard_answer"],
            "explanation": feedback,
            **sections,
        })
    return results


def written_computed_score(results: List[Dict[str, Any]]) -> float:
    return round_half_up(sum(r["score"] for r in results), 2)


# ---- essay (uploaded file) ----

def parse_essay_grade(text: str) -> float:
    return clamp_score(parse_stated_score(text))


@dataclass
class GradedSubmission:
    exam_type: str
    answers: Dict[str, str]
    details: List[Dict[str, Any]]
    evaluation: str
    stated_score: float
    computed_score: float
    reconciled_score: float
    penalty: float = 0.0
    penalty_note: str = ""
    final_score: float = 0.0

    def late_penalty_info(self) -> Optional[Dict[str, Any]]:
        if self.penalty <= 0:
            return None
        return {"amount": self.penalty, "note": self.penalty_note, "original_score": self.reconciled_score}


async def grade_submission(
    client: GeminiClient,
    exam: Exam,
    questions: List[Dict[str, Any]],
    answers: Dict[str, str],
    *,
    exam_type: str,
    document: Optional[LoadedDocument] = None,
    submitted_at: Optional[datetime] = None,
) -> GradedSubmission:
    """Grade answered questions with the model and reconcile its verdict."""
    if exam_type == ESSAY:
        raise ValueError("essay exams are graded from an uploaded file")
    submitted_at = submitted_at or datetime.utcnow()
    combined = _combined_answers(questions, answers)
    system_prompt = exam.prompt or None

    if exam_type == WRITTEN:
        prompt = build_written_grading_prompt(exam.name, questions, combined)
        evaluation = await client.generate(prompt, system_prompt=system_prompt)
        details = parse_written_evaluation(evaluation, questions, combined)
        stated = parse_stated_score(evaluation, _STATED_TOTAL_RE)
        computed = written_computed_score(details)
    else:
        prompt = build_choice_evaluation_prompt(questions, combined)
        evaluation = await client.generate_with_document(prompt, document, system_prompt=system_prompt)
        details = parse_choice_evaluation(evaluation, questions, combined)
        stated = parse_stated_score(evaluation, _STATED_SCORE_RE)
        computed = choice_computed_score(details)

    reconciled = reconcile_score(stated, [computed])
    penalty, note = late_penalty(reconciled, exam.deadline, submitted_at)
    final = round_half_up(max(0.0, reconciled - penalty), 1)
    if note:
        for item in details:
            item["late_penalty"] = note
    logger.info(
        "Graded exam %s (%s): stated=%.2f computed=%.2f penalty=%.2f final=%.1f",
        exam.id, exam_type, stated, computed, penalty, final,
    )
    return GradedSubmission(
        exam_type=exam_type if exam_type == WRITTEN else MULTIPLE_CHOICE,
        answers=combined,
        details=details,
        evaluation=evaluation,
        stated_score=stated,
        computed_score=computed,
        reconciled_score=reconciled,
        penalty=penalty,
        penalty_note=note,
        final_score=final,
    )
