from __future__ import annotations
import json
import logging
import math
import random
import re
from typing import Any, Dict, List, Optional, Tuple

from . import prompts
from .documents import LoadedDocument
from .gemini_client import GeminiClient, GeminiError
from .models import Exam
from .settings import settings

logger = logging.getLogger(__name__)

WRITTEN = "written"
MULTIPLE_CHOICE = "multiple-choice"
ESSAY = "essay"

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_LEADING_REFERENCE_RES = [
    re.compile(r"^(Theo đoạn văn (trên|sau|dưới đây),?\s*)", re.IGNORECASE),
    re.compile(r"^(Dựa vào đoạn văn,?\s*)", re.IGNORECASE),
]
_DUPLICATE_PASSAGE_RE = re.compile(r"\(\s*đoạn văn giống hệt đoạn văn của q\d+\s*\)", re.IGNORECASE)


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def clean_questions(raw_questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalise model-produced question records.

    Questions sharing a group id get the first passage seen for that group;
    the passage is removed from the question text, as are "Theo đoạn văn
    trên," style lead-ins.
    """
    records = [q for q in raw_questions if isinstance(q, dict)]
    passages: Dict[str, str] = {}
    for q in records:
        group_id = _first(q, "groupId", "group_id")
        passage = q.get("passage")
        if group_id and isinstance(passage, str) and passage.strip():
            passages.setdefault(str(group_id), passage.strip())

    cleaned: List[Dict[str, Any]] = []
    for index, q in enumerate(records):
        group_id = _first(q, "groupId", "group_id")
        group_id = str(group_id) if group_id else None
        passage = passages.get(group_id) if group_id else q.get("passage")
        passage = passage if isinstance(passage, str) else None
        text = str(q.get("text") or q.get("question") or "")

        if text and passage and passage in text:
            text = text.replace(passage, "", 1).strip()
        for pattern in _LEADING_REFERENCE_RES:
            text = pattern.sub("", text)
        text = text.strip()

        if passage:
            passage = _DUPLICATE_PASSAGE_RE.sub("", passage).strip()

        options = q.get("options")
        correct_answer = _first(q, "correctAnswer", "correct_answer")
        cleaned.append({
            "id": str(q.get("id") or f"q{index + 1}"),
            "text": text,
            "options": [str(o) for o in options] if isinstance(options, list) else [],
            "passage": passage or None,
            "group_id": group_id,
            "correct_answer": str(correct_answer) if correct_answer is not None else None,
            "type": q.get("type"),
        })
    return cleaned


def extract_questions_from_response(response: str) -> List[Dict[str, Any]]:
    match = _JSON_ARRAY_RE.search(response or "")
    candidate = match.group(0) if match else (response or "")
    try:
        data = json.loads(candidate)
    except ValueError:
        return []
    if isinstance(data, list) and data:
        return clean_questions(data)
    return []


def classify_exam_type(questions: List[Dict[str, Any]]) -> str:
    if any(q.get("type") == WRITTEN for q in questions):
        return WRITTEN
    if any(len(q.get("options") or []) >= 2 for q in questions):
        return MULTIPLE_CHOICE
    return ESSAY


def detect_questions_type(questions: List[Dict[str, Any]]) -> Optional[str]:
    if not questions:
        return None
    if all(q.get("type") == WRITTEN for q in questions):
        return WRITTEN
    if any(len(q.get("options") or []) > 1 for q in questions):
        return MULTIPLE_CHOICE
    return None


def _is_grouped(question: Dict[str, Any]) -> bool:
    return bool(question.get("passage") and question.get("group_id"))


def shuffle_questions(questions: List[Dict[str, Any]], rng: Optional[random.Random] = None) -> List[Dict[str, Any]]:
    """Shuffle standalone questions; passage-grouped questions keep their slots."""
    if not questions:
        return questions
    rng = rng or random.Random()
    individual = [q for q in questions if not _is_grouped(q)]
    # Fisher-Yates
    for i in range(len(individual) - 1, 0, -1):
        j = rng.randint(0, i)
        individual[i], individual[j] = individual[j], individual[i]
    shuffled = iter(individual)
    return [q if _is_grouped(q) else next(shuffled) for q in questions]


def _enforce_written(questions: List[Dict[str, Any]]) -> None:
    for q in questions:
        q["type"] = WRITTEN
        if not q.get("correct_answer"):
            q["correct_answer"] = "Unknown"
        if not isinstance(q.get("options"), list):
            q["options"] = []


async def _extract_in_batches(
    client: GeminiClient,
    exam: Exam,
    document: LoadedDocument,
    total: int,
    batch_size: int,
) -> List[Dict[str, Any]]:
    total_batches = math.ceil(total / batch_size)
    collected: List[Dict[str, Any]] = []
    for batch_num in range(total_batches):
        in_batch = min(batch_size, total - len(collected))
        if in_batch <= 0:
            break
        # The first batch lets the model decide; later ones follow it
        existing_type = detect_questions_type(collected) if batch_num > 0 else None
        prompt = prompts.batch_prompt(in_batch, batch_num + 1, total_batches, existing_type)
        try:
            response = await client.generate_with_document(prompt, document, system_prompt=exam.prompt or None)
        except GeminiError as err:
            logger.warning("Question batch %d/%d for exam %s failed: %s", batch_num + 1, total_batches, exam.id, err)
            continue
        batch = extract_questions_from_response(response)
        if existing_type == WRITTEN and batch:
            _enforce_written(batch)
        collected.extend(batch)
        logger.info("Exam %s: %d/%d questions after batch %d", exam.id, len(collected), total, batch_num + 1)
    return collected


async def extract_questions(
    client: GeminiClient,
    exam: Exam,
    document: LoadedDocument,
    *,
    rng: Optional[random.Random] = None,
    batch_size: Optional[int] = None,
) -> Tuple[List[Dict[str, Any]], str]:
    """Ask the model for the exam's questions and classify the result.

    An empty result means an essay exam: the document itself is the task.
    """
    batch_size = batch_size or settings.question_batch_size
    count = exam.question_count or settings.default_question_count
    if exam.allow_references and count > batch_size:
        questions = await _extract_in_batches(client, exam, document, count, batch_size)
    else:
        prompt = prompts.generation_prompt(count) if exam.allow_references else prompts.extraction_prompt(count)
        response = await client.generate_with_document(prompt, document, system_prompt=exam.prompt or None)
        questions = extract_questions_from_response(response)

    if not questions:
        return [], ESSAY
    if exam.shuffle_questions:
        questions = shuffle_questions(questions, rng)
    return questions, classify_exam_type(questions)
