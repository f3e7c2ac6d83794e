import logging
from contextlib import contextmanager

from sqlalchemy import delete, func, insert, literal, select, String
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.types import JSON

import policies
from backends import SurveyBackend, new_public_id, utcnow
from db import UTCDateTime
from errors import (
    AuthorizationRequired, BackendError, LimitExceeded, PermissionDenied,
    ReferentialViolation, SurveyError, UniquenessConflict,
)
from models import RESPONSE_COLUMNS, SURVEY_COLUMNS, ResponseRow, SurveyRow, row_to_dict
from schemas import Survey

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"

# columns a caller may write on a survey row
WRITABLE_SURVEY_FIELDS = (
    "public_id", "title", "description", "questions", "is_active",
    "allow_public_access", "response_limit", "expires_at",
)


def classify_integrity_error(exc: IntegrityError) -> SurveyError:
    """Map a driver integrity error onto the error taxonomy."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    text = str(orig or exc)
    lowered = text.lower()
    if code == UNIQUE_VIOLATION or "unique constraint" in lowered or "duplicate key" in lowered:
        return UniquenessConflict("Duplicate record", text)
    if code == FOREIGN_KEY_VIOLATION or "foreign key constraint" in lowered:
        return ReferentialViolation("Referenced record does not exist", text)
    return BackendError(text)


@contextmanager
def backend_errors(action: str):
    try:
        yield
    except SurveyError:
        raise
    except IntegrityError as exc:
        logger.error("Integrity error while %s: %s", action, exc.orig)
        raise classify_integrity_error(exc) from exc
    except SQLAlchemyError as exc:
        logger.error("Database error while %s: %s", action, exc)
        raise BackendError(str(getattr(exc, "orig", None) or exc)) from exc


class RemoteBackend(SurveyBackend):
    """Relational backend. Every statement carries the caller's row policy."""

    name = "remote"

    def __init__(self, session_factory, clock=utcnow):
        super().__init__(clock)
        self.session_factory = session_factory

    # ------------------------
    # Surveys
    # ------------------------
    def save_survey(self, record, user=None):
        if user is None:
            raise AuthorizationRequired("Authentication required to save surveys")
        with backend_errors("saving survey"), self.session_factory.begin() as db:
            now = self.clock()
            row = db.get(SurveyRow, record["id"])
            if row is not None:
                if row.user_id != user.id:
                    raise PermissionDenied("Row-level policy rejected survey update", f"survey_id={row.id}")
                if record.get("public_id") and record["public_id"] != row.public_id:
                    raise PermissionDenied("The public link of a survey cannot be changed")
            else:
                if not policies.survey_insert_allowed(user, user.id):
                    raise PermissionDenied("Row-level policy rejected survey insert")
                row = SurveyRow(id=record["id"], public_id=record.get("public_id") or new_public_id(),
                                user_id=user.id, created_at=now)
                db.add(row)

            for field in WRITABLE_SURVEY_FIELDS:
                if field in record:
                    setattr(row, field, record[field])
            row.updated_at = now
            db.flush()
            return row_to_dict(row, SURVEY_COLUMNS)

    def list_surveys(self, user=None):
        stmt = select(SurveyRow).where(policies.survey_select(user, self.clock()))
        if user is not None:
            stmt = stmt.where(SurveyRow.user_id == user.id)
        stmt = stmt.order_by(SurveyRow.created_at.desc())
        with backend_errors("listing surveys"), self.session_factory() as db:
            return [row_to_dict(r, SURVEY_COLUMNS) for r in db.execute(stmt).scalars().all()]

    def get_survey(self, survey_id, user=None):
        stmt = select(SurveyRow).where(SurveyRow.id == survey_id, policies.survey_select(user, self.clock()))
        with backend_errors("loading survey"), self.session_factory() as db:
            row = db.execute(stmt).scalar_one_or_none()
            return row_to_dict(row, SURVEY_COLUMNS) if row else None

    def find_survey_by_public_id(self, public_id, user=None):
        stmt = select(SurveyRow).where(
            SurveyRow.public_id == public_id,
            SurveyRow.is_active.is_(True),
            SurveyRow.allow_public_access.is_(True),
            policies.survey_select(user, self.clock()),
        )
        with backend_errors("loading survey by public id"), self.session_factory() as db:
            row = db.execute(stmt).scalar_one_or_none()
            return row_to_dict(row, SURVEY_COLUMNS) if row else None

    def delete_survey(self, survey_id, user=None):
        stmt = delete(SurveyRow).where(SurveyRow.id == survey_id, policies.survey_modify(user))
        if user is not None:
            stmt = stmt.where(SurveyRow.user_id == user.id)
        with backend_errors("deleting survey"), self.session_factory.begin() as db:
            result = db.execute(stmt)
            return result.rowcount or 0

    def owns_survey(self, survey_id, user):
        stmt = select(SurveyRow.id).where(SurveyRow.id == survey_id, SurveyRow.user_id == user.id)
        with backend_errors("checking survey ownership"), self.session_factory() as db:
            return db.execute(stmt).first() is not None

    # ------------------------
    # Responses
    # ------------------------
    def insert_response(self, record, user=None):
        survey_id = record["survey_id"]
        owner = select(SurveyRow.user_id).where(SurveyRow.id == survey_id).scalar_subquery()
        admitted = select(
            literal(record["id"], String()),
            literal(survey_id, String()),
            literal(record["answers"], JSON()),
            literal(record["submitted_at"], UTCDateTime()),
            literal(record.get("ip_address"), String()),
            owner,
        )

        with backend_errors("saving response"), self.session_factory.begin() as db:
            now = self.clock()
            # serialize concurrent submissions to the same survey
            if db.get_bind().dialect.name != "sqlite":
                db.execute(select(SurveyRow.id).where(SurveyRow.id == survey_id).with_for_update())
            stmt = insert(ResponseRow).from_select(
                ["id", "survey_id", "answers", "submitted_at", "ip_address", "user_id"],
                admitted.where(policies.response_admission(survey_id, now)),
            )
            result = db.execute(stmt)
            if result.rowcount == 0:
                raise self._refusal(db, survey_id, now)
            row = db.get(ResponseRow, record["id"])
            return row_to_dict(row, RESPONSE_COLUMNS)

    def _refusal(self, db, survey_id, now) -> SurveyError:
        row = db.get(SurveyRow, survey_id)
        if row is None:
            return ReferentialViolation("Referenced survey does not exist", f"survey_id={survey_id}")
        count = db.execute(
            select(func.count()).select_from(ResponseRow).where(ResponseRow.survey_id == survey_id)
        ).scalar_one()
        reason = policies.admission_refusal(Survey.model_validate(row_to_dict(row, SURVEY_COLUMNS)), count, now)
        logger.info("Response to survey %s refused: %s", survey_id, reason)
        if reason in (policies.SURVEY_EXPIRED, policies.LIMIT_REACHED):
            return LimitExceeded(reason)
        return PermissionDenied(reason or "Row-level policy rejected response insert")

    def list_responses(self, survey_id, user=None):
        stmt = (
            select(ResponseRow)
            .where(ResponseRow.survey_id == survey_id, policies.response_select(user))
            .order_by(ResponseRow.submitted_at.desc())
        )
        with backend_errors("listing responses"), self.session_factory() as db:
            return [row_to_dict(r, RESPONSE_COLUMNS) for r in db.execute(stmt).scalars().all()]

    def list_all_responses(self, user=None):
        stmt = select(ResponseRow).where(policies.response_select(user)).order_by(ResponseRow.submitted_at.desc())
        with backend_errors("listing responses"), self.session_factory() as db:
            return [row_to_dict(r, RESPONSE_COLUMNS) for r in db.execute(stmt).scalars().all()]

    def count_responses(self, survey_id):
        stmt = select(func.count()).select_from(ResponseRow).where(ResponseRow.survey_id == survey_id)
        with backend_errors("counting responses"), self.session_factory() as db:
            return db.execute(stmt).scalar_one()
