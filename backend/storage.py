import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from backends import SurveyBackend, new_public_id, utcnow
from errors import LimitExceeded, PermissionDenied, ReferentialViolation, UniquenessConflict
from policies import LIMIT_REACHED, SURVEY_EXPIRED, admission_refusal
from schemas import Survey

logger = logging.getLogger(__name__)

SURVEYS_KEY = "surveys"
RESPONSES_KEY = "responses"


def _encode(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class MemoryStore:
    """Key/value store holding raw JSON strings in a dict."""

    def __init__(self):
        self._data = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value


class JsonFileStore:
    """One ``<key>.json`` file per key inside ``directory``."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp, self._path(key))
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise


class LocalBackend(SurveyBackend):
    """Survey storage in a local key/value store.

    There is a single implicit owner, so no caller filtering happens here:
    every caller sees every record. Every write reloads and rewrites a whole
    collection, so writers hold ``_lock`` from load to dump.
    """

    name = "local"

    def __init__(self, store, clock=utcnow):
        super().__init__(clock)
        self.store = store
        self._lock = threading.RLock()

    def _load(self, key: str) -> list:
        data = self.store.get(key)
        return json.loads(data) if data else []

    def _dump(self, key: str, records: list) -> None:
        self.store.set(key, json.dumps(records, default=_encode))

    def save_survey(self, record, user=None):
        with self._lock:
            surveys = self._load(SURVEYS_KEY)
            now = self.clock()
            for other in surveys:
                if other["id"] != record["id"] and other.get("public_id") == record.get("public_id"):
                    raise UniquenessConflict("Duplicate public id", f"public_id={record.get('public_id')}")

            existing = next((s for s in surveys if s["id"] == record["id"]), None)
            if existing is not None:
                if record.get("public_id") and existing.get("public_id") != record["public_id"]:
                    raise PermissionDenied("The public link of a survey cannot be changed")
                existing.update(record)
                existing["updated_at"] = now
                saved = existing
            else:
                saved = dict(record, created_at=now, updated_at=now)
                saved["public_id"] = record.get("public_id") or new_public_id()
                surveys.append(saved)

            self._dump(SURVEYS_KEY, surveys)
        return json.loads(json.dumps(saved, default=_encode))

    def list_surveys(self, user=None):
        surveys = self._load(SURVEYS_KEY)
        return sorted(surveys, key=lambda s: s.get("created_at") or "", reverse=True)

    def get_survey(self, survey_id, user=None):
        return next((s for s in self._load(SURVEYS_KEY) if s["id"] == survey_id), None)

    def find_survey_by_public_id(self, public_id, user=None):
        return next((s for s in self._load(SURVEYS_KEY) if s.get("public_id") == public_id), None)

    def delete_survey(self, survey_id, user=None):
        with self._lock:
            surveys = self._load(SURVEYS_KEY)
            kept = [s for s in surveys if s["id"] != survey_id]
            self._dump(SURVEYS_KEY, kept)
            # no foreign keys here, cascade by hand
            responses = [r for r in self._load(RESPONSES_KEY) if r["survey_id"] != survey_id]
            self._dump(RESPONSES_KEY, responses)
        return len(surveys) - len(kept)

    def owns_survey(self, survey_id, user):
        return True

    def insert_response(self, record, user=None):
        with self._lock:
            responses = self._load(RESPONSES_KEY)
            if any(r["id"] == record["id"] for r in responses):
                raise UniquenessConflict("Duplicate response id", f"id={record['id']}")

            survey = self.get_survey(record["survey_id"])
            if survey is None:
                raise ReferentialViolation("Referenced survey does not exist", f"survey_id={record['survey_id']}")
            count = sum(1 for r in responses if r["survey_id"] == record["survey_id"])
            reason = admission_refusal(Survey.model_validate(survey), count, self.clock())
            if reason in (SURVEY_EXPIRED, LIMIT_REACHED):
                raise LimitExceeded(reason)
            if reason is not None:
                raise PermissionDenied(reason)

            responses.append(record)
            self._dump(RESPONSES_KEY, responses)
        logger.debug("Stored response %s for survey %s", record["id"], record["survey_id"])
        return json.loads(json.dumps(record, default=_encode))

    def list_responses(self, survey_id, user=None):
        responses = [r for r in self._load(RESPONSES_KEY) if r["survey_id"] == survey_id]
        return sorted(responses, key=lambda r: r.get("submitted_at") or "", reverse=True)

    def list_all_responses(self, user=None):
        return sorted(self._load(RESPONSES_KEY), key=lambda r: r.get("submitted_at") or "", reverse=True)

    def count_responses(self, survey_id):
        return sum(1 for r in self._load(RESPONSES_KEY) if r["survey_id"] == survey_id)
