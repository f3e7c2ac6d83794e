import abc
import uuid
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time as an aware datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def new_public_id() -> str:
    return uuid.uuid4().hex


class SurveyBackend(abc.ABC):
    """Storage strategy behind the data-access facade.

    Records are plain dicts. Survey records use the column names of the
    ``surveys`` table, except that the owner is ``owner_id`` on the way in and
    whatever the store keeps on the way out (the facade normalizes).
    ``user`` is the caller's identity or None for an anonymous caller.
    """

    name = "abstract"

    def __init__(self, clock=utcnow):
        self.clock = clock

    @abc.abstractmethod
    def save_survey(self, record: dict, user=None) -> dict:
        """Insert or update a survey by id (last write wins)."""

    @abc.abstractmethod
    def list_surveys(self, user=None) -> list:
        """Surveys visible to the caller, newest first."""

    @abc.abstractmethod
    def get_survey(self, survey_id: str, user=None) -> Optional[dict]:
        ...

    @abc.abstractmethod
    def find_survey_by_public_id(self, public_id: str, user=None) -> Optional[dict]:
        ...

    @abc.abstractmethod
    def delete_survey(self, survey_id: str, user=None) -> int:
        """Delete a survey and its responses; returns the number of surveys removed."""

    @abc.abstractmethod
    def owns_survey(self, survey_id: str, user) -> bool:
        ...

    @abc.abstractmethod
    def insert_response(self, record: dict, user=None) -> dict:
        """Insert a response if the survey currently admits one."""

    @abc.abstractmethod
    def list_responses(self, survey_id: str, user=None) -> list:
        ...

    @abc.abstractmethod
    def list_all_responses(self, user=None) -> list:
        ...

    @abc.abstractmethod
    def count_responses(self, survey_id: str) -> int:
        """Unscoped count used for admission decisions."""
