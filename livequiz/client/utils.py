import re
from typing import Iterable, List, Tuple

from livequiz.server.quiz_types import OPTION_KEYS, SESSION_CODE_LENGTH, Question

from .common import logger
from .errors import ValidationError

_SESSION_CODE_RE = re.compile(rf"^[A-Z0-9]{{{SESSION_CODE_LENGTH}}}$")

MAX_NAME_LENGTH = 20
MAX_QUESTIONS_PER_QUIZ = 20


def normalize_session_code(code: str) -> str:
    return (code or "").strip().upper()


def validate_session_code(code: str) -> Tuple[bool, str]:
    if not code:
        return False, "Session code is required."
    if not _SESSION_CODE_RE.match(code):
        return False, f"Session code must be {SESSION_CODE_LENGTH} letters or digits."
    return True, ""


def normalize_name(name: str) -> str:
    """Spaces and path separators become underscores; capped at MAX_NAME_LENGTH."""
    un = (name or "").strip()
    if " " in un:
        un = un.replace(" ", "_")
    if "\\" in un or "/" in un:
        un = un.replace("\\", "_").replace("/", "_")
    return un[:MAX_NAME_LENGTH]


def validate_name(name: str) -> Tuple[bool, str]:
    if not name:
        return False, "Name cannot be empty."
    return True, ""


def question_problems(question: Question) -> List[str]:
    """Reasons a question cannot be published (empty list if fine)."""
    problems = []
    if not (question.text or "").strip():
        problems.append("missing question text")
    options = list(question.options) + [""] * (2 - len(question.options))
    if not (options[0] or "").strip() or not (options[1] or "").strip():
        problems.append("first two options are required")
    if not question.correct_answer:
        problems.append("no correct answer selected")
    elif question.correct_answer not in question.option_keys():
        problems.append(f"correct answer {question.correct_answer} is not a filled option")
    return problems


def validate_questions(questions: Iterable[Question]) -> None:
    """Raise ValidationError naming every offending question index."""
    questions = list(questions)
    if not questions:
        raise ValidationError("Quiz has no questions.", [])
    if len(questions) > MAX_QUESTIONS_PER_QUIZ:
        raise ValidationError(f"Quiz has more than {MAX_QUESTIONS_PER_QUIZ} questions.", [])

    bad = []
    details = []
    for i, q in enumerate(questions):
        problems = question_problems(q)
        if problems:
            bad.append(i)
            details.append(f"#{i + 1}: {', '.join(problems)}")
    if bad:
        logger.debug(f"[validate] rejected questions {bad}")
        raise ValidationError("Please complete all questions: " + "; ".join(details), bad)


def format_time(seconds) -> str:
    """Format seconds as MM:SS."""
    if seconds is None:
        return "00:00"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes:02d}:{secs:02d}"


def option_label(option_key: str) -> str:
    """'option2' -> 'B'."""
    if option_key in OPTION_KEYS:
        return chr(65 + OPTION_KEYS.index(option_key))
    return "?"
