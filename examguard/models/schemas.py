from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Dict, List, Optional
from datetime import datetime
from enum import Enum


class ViolationKind(str, Enum):
    TAB_SWITCH = "tab_switch"
    APP_BLUR = "app_blur"
    MULTIPLE_PEOPLE = "multiple_people"
    NO_FACE_OR_AWAY = "no_face_or_away"
    DEVICE_DETECTED = "device_detected"
    OTHER = "other"


class SignalSource(str, Enum):
    DETECTOR = "detector"
    ENVIRONMENT = "environment"
    CAPTURE = "capture"
    MANUAL = "manual"


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class EndReason(str, Enum):
    VIOLATION = "violation"
    TIME_EXPIRED = "time_expired"
    SUBMITTED = "submitted"
    STOPPED = "stopped"
    CAPTURE_LOST = "capture_lost"


class Role(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


class Signal(BaseModel):
    """Raw observation from a detector or environment listener."""

    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    detail: Optional[str] = None
    source: SignalSource = SignalSource.DETECTOR


class ViolationEvent(BaseModel):
    """A signal once it has been accepted into a session's violation log."""

    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    occurred_at: datetime
    detail: Optional[str] = None


class CaptureConstraints(BaseModel):
    """Parameters for opening the capture device. Width/height of None means unconstrained."""

    model_config = ConfigDict(frozen=True)

    width: Optional[int] = Field(default=1280, gt=0)
    height: Optional[int] = Field(default=720, gt=0)
    facing: str = "user"
    audio: bool = False

    @field_validator("audio")
    @classmethod
    def _video_only(cls, value: bool) -> bool:
        if value:
            raise ValueError("audio capture is never requested")
        return value


PREFERRED_CONSTRAINTS = CaptureConstraints(width=1280, height=720)
FALLBACK_CONSTRAINTS = CaptureConstraints(width=None, height=None)


class Option(BaseModel):
    id: str
    text: str


class Question(BaseModel):
    id: str
    text: str
    options: List[Option]
    correct_option_id: str

    @model_validator(mode="after")
    def _correct_option_is_member(self):
        if self.correct_option_id not in {option.id for option in self.options}:
            raise ValueError(
                f"correct_option_id {self.correct_option_id!r} is not an option of question {self.id!r}"
            )
        return self

    def has_option(self, option_id: str) -> bool:
        return any(option.id == option_id for option in self.options)


class ExamDraft(BaseModel):
    """Exam as submitted by a teacher, before the catalog assigns an id."""

    title: str
    description: str
    teacher_id: str
    questions: List[Question] = Field(min_length=1)
    time_limit_minutes: int = Field(gt=0)

    @field_validator("title", "description")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def _questions_complete(self):
        question_ids = [question.id for question in self.questions]
        if len(set(question_ids)) != len(question_ids):
            raise ValueError("question ids must be unique")
        for index, question in enumerate(self.questions, start=1):
            option_ids = [option.id for option in question.options]
            if len(set(option_ids)) != len(option_ids):
                raise ValueError(f"question {index} has duplicate option ids")
            if not question.text.strip():
                raise ValueError(f"question {index} has no text")
            if len(question.options) < 2:
                raise ValueError(f"question {index} needs at least two options")
            if any(not option.text.strip() for option in question.options):
                raise ValueError(f"question {index} has an empty option")
        return self


class Exam(ExamDraft):
    id: str
    created_at: datetime

    def get_question(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None


class ExamUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    questions: Optional[List[Question]] = None
    time_limit_minutes: Optional[int] = Field(default=None, gt=0)


class ExamResultDraft(BaseModel):
    exam_id: str
    student_id: str
    score: int
    total_questions: int
    answers: Dict[str, str]
    violations: List[ViolationEvent]
    start_time: datetime
    end_time: datetime
    status: SessionStatus
    end_reason: EndReason


class ExamResult(ExamResultDraft):
    id: str


class Identity(BaseModel):
    id: str
    username: str
    role: Role


# ---- HTTP request / response models ----


class RegisterRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    role: Role


class LoginRequest(BaseModel):
    username: str
    password: str


class StartSessionRequest(BaseModel):
    exam_id: str
    student_id: str


class AnswerRequest(BaseModel):
    question_id: str
    option_id: str


class NavigateRequest(BaseModel):
    direction: str = Field(pattern="^(next|previous)$")


class EnvironmentRequest(BaseModel):
    event: str = Field(pattern="^(hidden|visible|blur|focus)$")


class ReportViolationRequest(BaseModel):
    kind: ViolationKind
    detail: Optional[str] = None


class QuestionView(BaseModel):
    """Question as shown to the test-taker, without the correct option."""

    id: str
    text: str
    options: List[Option]


class SessionResponse(BaseModel):
    session_id: str
    exam_id: str
    student_id: str
    status: SessionStatus
    remaining_seconds: int
    current_question_index: int
    total_questions: int
    current_question: QuestionView
    answers: Dict[str, str]
    violations: List[ViolationEvent]
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    end_reason: Optional[EndReason] = None
    score: Optional[int] = None
    result_id: Optional[str] = None
    message: Optional[str] = None
