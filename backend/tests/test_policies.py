from datetime import datetime, timedelta, timezone

import pytest

from errors import LimitExceeded
from policies import LIMIT_REACHED, SURVEY_CLOSED, SURVEY_EXPIRED, SURVEY_NOT_FOUND, admission_refusal
from schemas import Answer, Response, Survey

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_admission_refusal_reasons():
    assert admission_refusal(None, 0, START) == SURVEY_NOT_FOUND
    assert admission_refusal(Survey(title="t", is_active=False), 0, START) == SURVEY_CLOSED
    assert admission_refusal(Survey(title="t", allow_public_access=False), 0, START) == SURVEY_CLOSED
    assert admission_refusal(Survey(title="t", expires_at=START - timedelta(days=1)), 0, START) == SURVEY_EXPIRED
    assert admission_refusal(Survey(title="t", response_limit=3), 3, START) == LIMIT_REACHED
    assert admission_refusal(Survey(title="t", response_limit=3), 2, START) is None
    assert admission_refusal(Survey(title="t"), 10_000, START) is None


def test_expiry_boundary_is_inclusive():
    survey = Survey(title="t", expires_at=START)
    assert admission_refusal(survey, 0, START - timedelta(microseconds=1)) is None
    assert admission_refusal(survey, 0, START) == SURVEY_EXPIRED


@pytest.fixture(params=["local", "remote"])
def data(request):
    return request.getfixturevalue(f"{request.param}_data")


def _answer(survey_id):
    return Response(survey_id=survey_id, answers=[Answer(question_id="q1", value=4)])


def test_advisory_check_and_store_agree_at_limit(data, alice, make_survey):
    survey = data.save_survey(make_survey(response_limit=2), alice)
    data.save_response(_answer(survey.id))

    check = data.check_survey_limits(survey.id, alice)
    assert check.can_submit is True
    data.save_response(_answer(survey.id))

    # count == limit: both sides refuse
    check = data.check_survey_limits(survey.id, alice)
    assert check.can_submit is False and check.reason == LIMIT_REACHED
    with pytest.raises(LimitExceeded) as exc:
        data.save_response(_answer(survey.id))
    assert exc.value.message == LIMIT_REACHED
    assert len(data.get_responses_for_survey(survey.id, alice)) == 2


def test_advisory_check_and_store_agree_at_expiry(data, alice, make_survey, clock):
    survey = data.save_survey(make_survey(expires_at=clock.now + timedelta(hours=1)), alice)

    clock.advance(minutes=59)
    assert data.check_survey_limits(survey.id, alice).can_submit is True
    data.save_response(_answer(survey.id))

    # now == expires_at
    clock.advance(minutes=1)
    check = data.check_survey_limits(survey.id, alice)
    assert check.can_submit is False and check.reason == SURVEY_EXPIRED
    with pytest.raises(LimitExceeded) as exc:
        data.save_response(_answer(survey.id))
    assert exc.value.message == SURVEY_EXPIRED


def test_check_limits_for_missing_survey(data, alice):
    check = data.check_survey_limits("no-such-survey", alice)
    assert check.can_submit is False
    assert check.reason == SURVEY_NOT_FOUND


def test_check_limits_for_inactive_survey(data, alice, make_survey):
    survey = data.save_survey(make_survey(is_active=False), alice)
    check = data.check_survey_limits(survey.id, alice)
    assert check.reason == SURVEY_CLOSED
