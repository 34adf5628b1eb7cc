import time
from typing import Optional

from .models import QuestionItem, SessionState


def now_ts() -> float:
    return time.time()


def normalize_handle(handle: str) -> str:
    return handle.strip().lstrip("@").lower()


def remaining_time_str(deadline_ts: Optional[float], now: Optional[float] = None) -> str:
    if deadline_ts is None:
        return "00:00"
    remaining = max(0, round(deadline_ts - (now_ts() if now is None else now)))
    minutes, seconds = divmod(remaining, 60)
    return f"{minutes:02d}:{seconds:02d}"


def progress_text(state: SessionState, now: Optional[float] = None) -> str:
    shown = min(state.current_question + 1, state.total_questions)
    return (
        f"Time left: {remaining_time_str(state.deadline_ts, now)}\n"
        f"Question {shown} of {state.total_questions}"
    )


def question_text(question: QuestionItem, index: int) -> str:
    return f"Question {index + 1}:\n{question.text}"


def summary_text(state: SessionState) -> str:
    who = f"@{state.candidate_handle}" if state.candidate_handle else state.candidate_id
    category = state.category or "general"
    return f"Candidate {who} finished the {category} test: {state.score}/{state.total_questions} correct"
