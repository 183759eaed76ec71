import re
import json
import logging
from typing import List, Optional

import config

logger = logging.getLogger(__name__)

DEFAULT_QUESTIONS = [
    {"id": "q1", "text": "What is 12 + 30?", "answer": "42"},
    {"id": "q2", "text": "What is the capital of Norway?", "answer": "oslo"},
    {"id": "q3", "text": "What is 9 * 9?", "answer": "81"},
]

MAX_QUESTION_TEXT_LENGTH = 2000
MAX_ANSWER_LENGTH = 200


def _sanitize_text(text: str) -> str:
    """Strip HTML tags and control characters from question file text."""
    text = re.sub(r'<[^>]+>', '', text)
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', text)
    return text.strip()


def normalize_answer(text: str) -> str:
    return text.strip().lower()


def _validate_questions(questions, source: str) -> bool:
    if not isinstance(questions, list) or len(questions) == 0:
        logger.error("%s: expected a non-empty list of questions", source)
        return False
    for i, q in enumerate(questions):
        if not isinstance(q, dict):
            logger.error("%s: question %d is not an object", source, i)
            return False
        if not isinstance(q.get("text"), str) or not isinstance(q.get("answer"), str):
            logger.error("%s: question %d missing text or answer", source, i)
            return False
        if not _sanitize_text(q["text"]) or not _sanitize_text(q["answer"]):
            logger.error("%s: question %d has empty text or answer", source, i)
            return False
    return True


def load_questions(path: Optional[str] = None) -> List[dict]:
    """Return a fresh question list for a rotation.

    Uses the built-in questions unless a JSON file is given (or configured via
    QUESTIONS_FILE). The file holds either a list of questions or an object
    with a "questions" list; each entry needs "text" and "answer".
    """
    path = path or config.QUESTIONS_FILE
    if not path:
        return [dict(q) for q in DEFAULT_QUESTIONS]

    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Could not read questions file %s: %s", path, e)
        raise ValueError(f"Could not read questions file {path}") from e

    if isinstance(data, dict):
        data = data.get("questions")
    if not _validate_questions(data, path):
        raise ValueError(f"Invalid questions file {path}")

    questions = []
    for i, q in enumerate(data):
        questions.append({
            "id": str(q.get("id") or f"q{i + 1}"),
            "text": _sanitize_text(q["text"])[:MAX_QUESTION_TEXT_LENGTH],
            "answer": _sanitize_text(q["answer"])[:MAX_ANSWER_LENGTH],
        })
    logger.info("Loaded %d questions from %s", len(questions), path)
    return questions


def current_question(room) -> dict:
    return room.questions[room.question_index % len(room.questions)]


def advance_question(room):
    """Move the rotation cursor forward (wrapping) and assign the new question."""
    room.question_index = (room.question_index + 1) % len(room.questions)
    room.question = current_question(room)
