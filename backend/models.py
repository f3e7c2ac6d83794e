from sqlalchemy import Column, Integer, String, Text, ForeignKey, Boolean, JSON
from sqlalchemy.orm import relationship
from db import Base, UTCDateTime
from backends import utcnow

class UserRow(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    password_hash = Column(String(512), nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    sessions = relationship("AuthSessionRow", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)

class AuthSessionRow(Base):
    __tablename__ = "auth_sessions"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    revoked_at = Column(UTCDateTime, nullable=True)
    user = relationship("UserRow", back_populates="sessions")

class SurveyRow(Base):
    __tablename__ = "surveys"
    id = Column(String(36), primary_key=True)
    public_id = Column(String(64), unique=True, index=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    questions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    allow_public_access = Column(Boolean, nullable=False, default=True)
    response_limit = Column(Integer, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=True)
    responses = relationship("ResponseRow", back_populates="survey", cascade="all, delete-orphan", passive_deletes=True)

class ResponseRow(Base):
    __tablename__ = "responses"
    id = Column(String(36), primary_key=True)
    survey_id = Column(String(36), ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    answers = Column(JSON, nullable=False, default=list)
    submitted_at = Column(UTCDateTime, nullable=False, default=utcnow)
    ip_address = Column(String(64), nullable=True)
    # copied from the parent survey at insert time
    user_id = Column(String(36), nullable=True, index=True)
    survey = relationship("SurveyRow", back_populates="responses")

SURVEY_COLUMNS = [c.name for c in SurveyRow.__table__.columns]
RESPONSE_COLUMNS = [c.name for c in ResponseRow.__table__.columns]

def row_to_dict(row, columns) -> dict:
    return {name: getattr(row, name) for name in columns}
