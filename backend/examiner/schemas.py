from pydantic import BaseModel
from typing import List, Optional


class AssignIn(BaseModel):
    candidate_handle: str
    assigned_by: Optional[str] = None
    assigned_by_id: Optional[str] = None
    category: Optional[str] = None


class StartIn(BaseModel):
    candidate_id: str
    candidate_handle: str


class AnswerIn(BaseModel):
    candidate_id: str
    question_index: int
    option_index: int


class AnswerOut(BaseModel):
    accepted: bool
    is_correct: bool
    finished: bool


class PublicQuestionOut(BaseModel):
    index: int
    text: str
    options: List[str]


class PublicSessionOut(BaseModel):
    candidate_id: str
    status: str
    current_question: int
    total_questions: int
    deadline_ts: Optional[float]
    question: Optional[PublicQuestionOut] = None

