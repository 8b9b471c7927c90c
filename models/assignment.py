import re
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class QuestionType(str, Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    FILL_IN_BLANK = "fill_in_blank"
    YES_NO = "yes_no"
    ENUMERATION = "enumeration"


_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _normalize_question_type(value: str) -> str:
    # "MultipleChoice", "multiple-choice" and "multiple_choice" are all seen on the wire
    text = _CAMEL_BOUNDARY.sub("_", value.strip())
    text = text.replace("-", "_").replace(" ", "_").lower()
    if text == "fill_in_the_blank":
        return QuestionType.FILL_IN_BLANK.value
    return text


class Question(BaseModel):
    """A single question of a teacher assignment, as served by the directory."""
    model_config = ConfigDict(frozen=True)

    question_id: int = Field(..., description="Server-side question ID")
    question_text: str = Field("", description="The question prompt")
    question_type: QuestionType = Field(QuestionType.MULTIPLE_CHOICE, description="How the question is answered")
    options: List[str] = Field(default_factory=list, description="Answer options, empty unless multiple choice")
    correct_answer: str = Field("", description="Expected answer text")

    @field_validator("question_type", mode="before")
    @classmethod
    def _coerce_type(cls, value):
        if isinstance(value, str):
            return _normalize_question_type(value)
        return value


class RemoteAssignment(BaseModel):
    """Server-owned assignment. Question order is the presentation and grading order."""
    model_config = ConfigDict(frozen=True)

    assignment_id: int = Field(..., description="Server-side assignment ID")
    title: str = ""
    description: str = ""
    subject: str = ""
    created_by: str = ""
    due_date: Optional[str] = None
    assignment_type: str = ""
    questions: List[Question] = Field(default_factory=list)


class AssignmentsResponse(BaseModel):
    """Body of POST /api/student/assignments. The list is required: an absent key is malformed."""
    assignments: List[RemoteAssignment]


class ActiveAssignmentSnapshot(BaseModel):
    """Locally cached copy of one subject's active assignment."""

    subject: str = Field(..., min_length=1)
    assignment_id: str = Field("", description="Empty means no active assignment")
    title: str = ""
    content: str = ""
    assignment_type: str = ""
    # None: question list unknown (older snapshot). []: assignment has no questions.
    questions: Optional[List[Question]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return bool(self.assignment_id)

    @classmethod
    def from_remote(cls, subject: str, remote: RemoteAssignment) -> "ActiveAssignmentSnapshot":
        return cls(
            subject=subject,
            assignment_id=str(remote.assignment_id),
            title=remote.title,
            content=remote.description,
            assignment_type=remote.assignment_type,
            questions=list(remote.questions),
        )
