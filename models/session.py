from datetime import datetime
from enum import Enum
from typing import Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field
from models.assignment import ActiveAssignmentSnapshot, Question, RemoteAssignment

DEFAULT_TEACHER_TITLE = "Teacher Assignment"


class AssignmentSource(str, Enum):
    TEACHER = "teacher"
    DEFAULT = "default"


class SessionState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    COMMITTED = "committed"
    SUBMITTING = "submitting"


class Decision(BaseModel):
    """What to present for a subject. Recomputed on every navigation event, never persisted."""
    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., min_length=1)
    source: AssignmentSource
    assignment_id: str = ""
    display_title: str = ""
    assignment_type: str = ""
    questions: Optional[Tuple[Question, ...]] = None
    stages: Tuple[str, ...] = ()
    stale: bool = False
    # Order in which the resolution was started; 0 for decisions built outside a SessionManager
    generation: int = Field(default=0, ge=0, exclude=True)

    @property
    def is_teacher(self) -> bool:
        return self.source is AssignmentSource.TEACHER

    @classmethod
    def teacher(cls, subject: str, remote: RemoteAssignment) -> "Decision":
        return cls(
            subject=subject,
            source=AssignmentSource.TEACHER,
            assignment_id=str(remote.assignment_id),
            display_title=remote.title or DEFAULT_TEACHER_TITLE,
            assignment_type=remote.assignment_type,
            questions=tuple(remote.questions),
        )

    @classmethod
    def from_snapshot(cls, subject: str, snapshot: ActiveAssignmentSnapshot) -> "Decision":
        return cls(
            subject=subject,
            source=AssignmentSource.TEACHER,
            assignment_id=snapshot.assignment_id,
            display_title=snapshot.title or DEFAULT_TEACHER_TITLE,
            assignment_type=snapshot.assignment_type,
            questions=tuple(snapshot.questions) if snapshot.questions is not None else None,
            stale=True,
        )

    @classmethod
    def default(cls, subject: str, stages) -> "Decision":
        return cls(
            subject=subject,
            source=AssignmentSource.DEFAULT,
            display_title=f"{subject} - Default Stages",
            stages=tuple(stages),
        )


class Session(BaseModel):
    """The single device-wide gameplay identity. Only the SessionManager writes it."""
    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., min_length=1)
    assignment_id: str = ""
    title: str = ""
    source: AssignmentSource
    stage: Optional[str] = None
    assignment_type: str = ""
    questions: Optional[Tuple[Question, ...]] = None
    committed_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_teacher(self) -> bool:
        return self.source is AssignmentSource.TEACHER

    @property
    def progress_ref(self) -> str:
        """Assignment ID for teacher sessions, stage name for default ones."""
        if self.is_teacher:
            return self.assignment_id
        return self.stage or ""
