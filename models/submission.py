from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


class AnswerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: int
    student_answer: str = ""


class SubmissionResult(BaseModel):
    """Scoring response. Authoritative only when it comes from the server."""

    score: float = Field(..., ge=0, le=100)
    correct_answers: int = Field(..., ge=0)
    total_questions: int = Field(..., ge=0)
    points_earned: int = 0


class PendingStatus(str, Enum):
    PENDING = "pending"
    REJECTED = "rejected"


class PendingSubmission(BaseModel):
    """A submission that could not reach the server, kept until a retry succeeds."""

    submission_id: str
    subject: str
    assignment_id: str
    title: str = ""
    answers: List[AnswerEntry] = Field(default_factory=list)
    attempts: int = 0
    last_error: str = ""
    status: PendingStatus = PendingStatus.PENDING
    created_at: datetime = Field(default_factory=datetime.utcnow)


class SubmissionDeferred(BaseModel):
    """Returned instead of a result when the submission was parked for a later retry."""
    model_config = ConfigDict(frozen=True)

    submission_id: str
    assignment_id: str
    reason: str = ""


class Progress(BaseModel):
    subject: str
    reference: str = Field("", description="Assignment ID or default stage name")
    source: str = ""
    attempts: int = 0
    best_score: float = 0.0
    last_result: Optional[SubmissionResult] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)
