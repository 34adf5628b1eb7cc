from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

SessionStatus = Literal["assigned", "in-progress", "finished"]

ASSIGNED: SessionStatus = "assigned"
IN_PROGRESS: SessionStatus = "in-progress"
FINISHED: SessionStatus = "finished"


class QuestionItem(BaseModel):
    id: int
    text: str
    options: List[str]
    answer: int  # index into options
    category: Optional[str] = None
    # owning candidate id, "" when free; never part of the bank file
    reserved_by: str = Field(default="", exclude=True)


class TestType(BaseModel):
    type: str
    description: str = ""
    question_count: Optional[int] = None
    duration_minutes: Optional[float] = None


class PendingAssignment(BaseModel):
    candidate_handle: str
    assigned_by: Optional[str] = None
    assigned_by_id: Optional[str] = None
    category: Optional[str] = None
    assigned_at: float


# States: assigned -> in-progress -> finished
class SessionState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    candidate_id: str
    status: SessionStatus = ASSIGNED
    questions: List[QuestionItem] = Field(default_factory=list)
    current_question: int = 0
    score: int = 0
    answers: Dict[int, int] = Field(default_factory=dict)
    deadline_ts: Optional[float] = None  # epoch seconds
    timer_message_id: Optional[str] = None
    question_message_id: Optional[str] = None
    candidate_handle: Optional[str] = None
    assigned_by: Optional[str] = None
    assigned_by_id: Optional[str] = None
    category: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def total_questions(self) -> int:
        return len(self.questions)
