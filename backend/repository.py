"""Data-access facade: the single entry point the API layer talks to.

The storage backend is chosen once (see ``services.build_services``); nothing
in here branches on which one it is. Each operation takes the caller's user
explicitly so authorization scope is visible at the call site.
"""
import logging
import re
from typing import Dict, List, Optional

from backends import new_id, utcnow
from errors import (
    BackendError, InvalidInput, PermissionDenied, ReferentialViolation,
    SurveyError, UniquenessConflict,
)
from policies import admission_refusal
from schemas import CHOICE_TYPES, QuestionType, Response, SubmissionCheck, Survey

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# fields the store assigns; never taken from the caller
SERVER_FIELDS = ("created_at", "updated_at", "owner_id")


def _survey_from_record(record: dict) -> Survey:
    data = dict(record)
    if "user_id" in data:
        data["owner_id"] = data.pop("user_id")
    return Survey.model_validate(data)


def _response_from_record(record: dict) -> Response:
    data = {k: v for k, v in record.items() if k != "user_id"}
    return Response.model_validate(data)


class DataAccess:
    def __init__(self, backend, clock=utcnow):
        self.backend = backend
        self.clock = clock

    @property
    def mode(self) -> str:
        return self.backend.name

    # ------------------------
    # Surveys
    # ------------------------
    def save_survey(self, survey: Survey, user=None) -> Survey:
        """Create or update a survey owned by ``user``.

        Only fields the caller actually set are written, so an update built
        from a partial survey keeps the stored values of everything else.

        Raises:
            AuthorizationRequired: the backend needs an owner and none was given.
            UniquenessConflict / PermissionDenied / BackendError: see errors.py.
        """
        if not (survey.title or "").strip():
            raise InvalidInput("Survey title is required")

        record = survey.model_dump(exclude_unset=True)
        for field in SERVER_FIELDS:
            record.pop(field, None)
        if "questions" in record:
            record["questions"] = [q.model_dump(mode="json") for q in survey.questions]
        record["title"] = survey.title.strip()
        if not record.get("id"):
            record["id"] = new_id()
        if "public_id" in record and not record["public_id"]:
            del record["public_id"]
        if user is not None:
            record["owner_id"] = user.id

        logger.info("Saving survey %s (backend=%s, user=%s)", record["id"], self.mode, getattr(user, "id", None))
        try:
            saved = self.backend.save_survey(record, user)
        except UniquenessConflict as exc:
            raise UniquenessConflict("A survey with this ID already exists", exc.detail) from exc
        except PermissionDenied as exc:
            raise PermissionDenied("Permission denied. Please ensure you are signed in.", exc.message) from exc
        except ReferentialViolation as exc:
            raise BackendError(exc.detail or exc.message) from exc
        return _survey_from_record(saved)

    def get_surveys(self, user=None) -> List[Survey]:
        records = self._read(lambda: self.backend.list_surveys(user), "Failed to fetch surveys")
        return [_survey_from_record(r) for r in records]

    def get_survey(self, survey_id: str, user=None) -> Optional[Survey]:
        record = self._read(lambda: self.backend.get_survey(survey_id, user), "Failed to fetch survey")
        return _survey_from_record(record) if record else None

    def get_survey_by_public_id(self, public_id: str, user=None) -> Optional[Survey]:
        """Resolve a public link. Absent, closed and expired surveys all give None."""
        record = self._read(
            lambda: self.backend.find_survey_by_public_id(public_id, user), "Failed to fetch survey"
        )
        if record is None:
            return None
        survey = _survey_from_record(record)
        return survey if survey.is_open(self.clock()) else None

    def delete_survey(self, survey_id: str, user=None) -> None:
        deleted = self._read(lambda: self.backend.delete_survey(survey_id, user), "Failed to delete survey")
        logger.info("Deleted %d survey(s) with id %s", deleted, survey_id)

    # ------------------------
    # Responses
    # ------------------------
    def save_response(self, response: Response, user=None) -> Response:
        record = response.model_dump()
        record["answers"] = [a.model_dump(mode="json") for a in response.answers]
        record["id"] = record.get("id") or new_id()
        record["submitted_at"] = record.get("submitted_at") or self.clock()

        logger.info("Saving response %s for survey %s (%d answers)",
                    record["id"], record["survey_id"], len(record["answers"]))
        try:
            saved = self.backend.insert_response(record, user)
        except ReferentialViolation as exc:
            raise ReferentialViolation("Survey not found or no longer accepting responses", exc.detail) from exc
        except PermissionDenied as exc:
            raise PermissionDenied("Unable to submit response. Survey may be inactive or expired.", exc.message) from exc
        except UniquenessConflict as exc:
            raise UniquenessConflict("This response has already been submitted", exc.detail) from exc
        return _response_from_record(saved)

    def get_responses_for_survey(self, survey_id: str, user=None) -> List[Response]:
        if user is not None and not self._read(
            lambda: self.backend.owns_survey(survey_id, user), "Failed to fetch responses"
        ):
            raise PermissionDenied("Survey not found or access denied")
        records = self._read(lambda: self.backend.list_responses(survey_id, user), "Failed to fetch responses")
        return [_response_from_record(r) for r in records]

    def get_all_responses(self, user=None) -> List[Response]:
        records = self._read(lambda: self.backend.list_all_responses(user), "Failed to fetch responses")
        return [_response_from_record(r) for r in records]

    def check_survey_limits(self, survey_id: str, user=None) -> SubmissionCheck:
        """Advisory: can another response be submitted right now?

        The store runs the same rule again on insert and has the last word.
        """
        record = self._read(lambda: self.backend.get_survey(survey_id, user), "Failed to fetch survey")
        survey = _survey_from_record(record) if record else None
        count = self._read(lambda: self.backend.count_responses(survey_id), "Failed to fetch responses") if survey else 0
        reason = admission_refusal(survey, count, self.clock())
        return SubmissionCheck(can_submit=reason is None, reason=reason)

    def get_user_survey_count(self, user) -> int:
        return len(self.get_surveys(user))

    def get_user_response_count(self, user) -> int:
        return len(self.get_all_responses(user))

    def export_data(self, user=None) -> dict:
        return {
            "surveys": [s.model_dump(mode="json") for s in self.get_surveys(user)],
            "responses": [r.model_dump(mode="json") for r in self.get_all_responses(user)],
            "exported_at": self.clock().isoformat(),
        }

    def _read(self, call, message: str):
        try:
            return call()
        except BackendError as exc:
            raise BackendError(exc.detail, message=f"{message}: {exc.detail}") from exc


def validate_answers(survey: Survey, answers) -> Dict[str, str]:
    """Check submitted answers against the survey's questions.

    Returns:
        dict[str, str]: {question_id: error message}; empty when valid.
    """
    errors = {}
    given = {a.question_id: a.value for a in answers}

    for qid in given:
        if survey.question(qid) is None:
            errors[qid] = "Unknown question"

    for q in survey.questions:
        value = given.get(q.id)
        if value is None or value == "" or value == []:
            if q.required:
                errors[q.id] = "This field is required"
            continue

        if q.type == QuestionType.EMAIL:
            if not isinstance(value, str) or not EMAIL_RE.match(value):
                errors[q.id] = "Please enter a valid email address"
        elif q.type == QuestionType.NUMBER:
            try:
                float(value)
            except (TypeError, ValueError):
                errors[q.id] = "Please enter a valid number"
        elif q.type in CHOICE_TYPES:
            picked = value if isinstance(value, list) else [value]
            if q.type == QuestionType.MULTIPLE_CHOICE and isinstance(value, list):
                errors[q.id] = "Please choose a single option"
            elif any(p not in (q.options or []) for p in picked):
                errors[q.id] = "Please choose one of the available options"
        elif q.type == QuestionType.RATING:
            try:
                rating = float(value)
            except (TypeError, ValueError):
                rating = None
            if rating is None or not 1 <= rating <= q.max_rating:
                errors[q.id] = f"Please choose a rating between 1 and {q.max_rating}"
    return errors


class ScopedSurveyCache:
    """Survey list for the signed-in user, refreshed on every session change.

    Subscribes to an ``auth.AuthSession``; ``close()`` detaches it so a
    consumer that went away drops later results instead of acting on them.
    """

    def __init__(self, data_access: DataAccess, session):
        self.data_access = data_access
        self.session = session
        self.surveys: List[Survey] = []
        self.error: Optional[SurveyError] = None
        self._unsubscribe = session.subscribe(self._on_change)
        self.refresh()

    def refresh(self) -> List[Survey]:
        try:
            self.surveys = self.data_access.get_surveys(self.session.user)
            self.error = None
        except SurveyError as exc:
            logger.warning("Could not refresh surveys: %s", exc.message)
            self.surveys = []
            self.error = exc
        return self.surveys

    def _on_change(self, state, user):
        self.refresh()

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
