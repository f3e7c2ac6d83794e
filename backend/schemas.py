# schemas.py
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from backends import new_id


class QuestionType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    MULTIPLE_CHOICE = "multiple-choice"
    MULTIPLE_SELECT = "multiple-select"
    RATING = "rating"
    EMAIL = "email"
    NUMBER = "number"


CHOICE_TYPES = (QuestionType.MULTIPLE_CHOICE, QuestionType.MULTIPLE_SELECT)
DEFAULT_MAX_RATING = 5


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Question(BaseModel):
    id: str = Field(default_factory=new_id)
    type: QuestionType = QuestionType.TEXT
    title: str
    required: bool = False
    options: Optional[List[str]] = None
    max_rating: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_shape(self):
        if self.type in CHOICE_TYPES:
            options = self.options or []
            if len(options) < 2 or any(not (o or "").strip() for o in options):
                raise ValueError("Choice questions need at least two non-empty options")
        if self.type == QuestionType.RATING and self.max_rating is None:
            self.max_rating = DEFAULT_MAX_RATING
        return self


class Survey(BaseModel):
    id: Optional[str] = None
    public_id: Optional[str] = None
    title: str
    description: str = ""
    questions: List[Question] = Field(default_factory=list)
    is_active: bool = True
    allow_public_access: bool = True
    response_limit: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    owner_id: Optional[str] = None

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value):
        return _as_utc(value)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def is_open(self, now: datetime) -> bool:
        """Reachable through its public link at ``now``."""
        return self.is_active and self.allow_public_access and not self.is_expired(now)

    def question(self, question_id: str) -> Optional[Question]:
        for q in self.questions:
            if q.id == question_id:
                return q
        return None


class Answer(BaseModel):
    question_id: str
    value: Union[List[str], int, float, str]


class Response(BaseModel):
    id: Optional[str] = None
    survey_id: str
    answers: List[Answer] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None
    ip_address: Optional[str] = None

    @field_validator("submitted_at")
    @classmethod
    def normalize_timestamp(cls, value):
        return _as_utc(value)

    def answer_for(self, question_id: str) -> Optional[Answer]:
        for a in self.answers:
            if a.question_id == question_id:
                return a
        return None


class User(BaseModel):
    id: str
    email: str
    created_at: Optional[datetime] = None
    class Config:
        from_attributes = True


class SubmissionCheck(BaseModel):
    can_submit: bool
    reason: Optional[str] = None


class SurveyStats(BaseModel):
    total_responses: int
    average_rating: Dict[str, float] = Field(default_factory=dict)
    choice_distribution: Dict[str, Dict[str, int]] = Field(default_factory=dict)


class QuestionAnalytics(BaseModel):
    question_id: str
    title: str
    kind: str  # choice | rating | text
    distribution: Optional[Dict[str, int]] = None
    average: Optional[float] = None
    answers: Optional[List[str]] = None


class SurveyAnalytics(BaseModel):
    stats: SurveyStats
    questions: List[QuestionAnalytics]


# --- request / response bodies ---

class Credentials(BaseModel):
    email: str
    password: str


class AuthResult(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: User


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetConfirm(BaseModel):
    token: str
    password: str


class SubmitAnswers(BaseModel):
    answers: List[Answer] = Field(default_factory=list)


class SurveyOut(Survey):
    public_url: Optional[str] = None
