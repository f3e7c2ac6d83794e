"""Row-level access policies for the relational backend.

Each function returns a SQL predicate for a caller (``user`` is None for an
anonymous caller). The response admission rule also exists as a plain Python
function so the advisory check in the facade evaluates exactly the same
boundary as the store.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, exists, false, func, or_, select

from models import ResponseRow, SurveyRow

SURVEY_NOT_FOUND = "Survey not found"
SURVEY_CLOSED = "Survey is not accepting responses"
SURVEY_EXPIRED = "Survey has expired"
LIMIT_REACHED = "Response limit reached"


def _published():
    return and_(SurveyRow.is_active.is_(True), SurveyRow.allow_public_access.is_(True))


def _unexpired(now: datetime):
    return or_(SurveyRow.expires_at.is_(None), SurveyRow.expires_at > now)


def survey_select(user, now: datetime):
    if user is None:
        return and_(_published(), _unexpired(now))
    return or_(SurveyRow.user_id == user.id, _published())


def survey_modify(user):
    """Update/delete: owners only."""
    if user is None:
        return false()
    return SurveyRow.user_id == user.id


def survey_insert_allowed(user, owner_id: Optional[str]) -> bool:
    return user is not None and owner_id == user.id


def response_select(user):
    if user is None:
        return false()
    owned = select(SurveyRow.id).where(SurveyRow.user_id == user.id)
    return ResponseRow.survey_id.in_(owned)


def response_admission(survey_id: str, now: datetime):
    """EXISTS predicate a new response for ``survey_id`` must satisfy."""
    r2 = ResponseRow.__table__.alias("r2")
    current = (
        select(func.count())
        .select_from(r2)
        .where(r2.c.survey_id == survey_id)
        .scalar_subquery()
    )
    return exists().where(
        SurveyRow.id == survey_id,
        _published(),
        _unexpired(now),
        or_(SurveyRow.response_limit.is_(None), current < SurveyRow.response_limit),
    )


def admission_refusal(survey, response_count: int, now: datetime) -> Optional[str]:
    """Why ``survey`` cannot take another response, or None if it can.

    Mirrors :func:`response_admission`: expired when ``now >= expires_at``,
    full when ``response_count >= response_limit``.
    """
    if survey is None:
        return SURVEY_NOT_FOUND
    if not (survey.is_active and survey.allow_public_access):
        return SURVEY_CLOSED
    if survey.is_expired(now):
        return SURVEY_EXPIRED
    if survey.response_limit is not None and response_count >= survey.response_limit:
        return LIMIT_REACHED
    return None
