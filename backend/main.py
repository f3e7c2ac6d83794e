import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi import Response as HTTPResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import export
from analytics import analyze
from config import Settings
from errors import InvalidInput, LimitExceeded, NotFound, PermissionDenied, SurveyError
from policies import LIMIT_REACHED, SURVEY_EXPIRED
from repository import DataAccess, validate_answers
from schemas import (
    AuthResult, Credentials, PasswordResetConfirm, PasswordResetRequest, Response,
    SubmissionCheck, SubmitAnswers, Survey, SurveyAnalytics, SurveyOut, User,
)
from security import bearer_token, current_user, require_user
from services import get_accounts, get_data_access, get_settings

startup_settings = Settings.from_env()
logging.basicConfig(
    level=startup_settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Survey API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=startup_settings.origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@app.exception_handler(SurveyError)
async def survey_error_handler(request: Request, exc: SurveyError):
    body = {"detail": exc.message, "error": exc.code}
    if isinstance(exc, InvalidInput) and exc.fields:
        body["fields"] = exc.fields
    return JSONResponse(status_code=exc.status_code, content=body)


def _out(survey: Survey, settings: Settings) -> SurveyOut:
    url = settings.public_url(survey.public_id) if survey.public_id else None
    return SurveyOut(**survey.model_dump(), public_url=url)


def _owned_survey(data: DataAccess, survey_id: str, user: User) -> Survey:
    survey = data.get_survey(survey_id, user)
    if survey is None:
        raise NotFound("Survey not found")
    return survey


def _attachment(filename: str) -> dict:
    return {"Content-Disposition": f"attachment; filename={filename}"}


@app.get("/health")
def health(data: DataAccess = Depends(get_data_access)):
    """Readiness probe; also reports which storage backend is in use."""
    return {"ok": True, "mode": data.mode}


# ------------------------
# Auth
# ------------------------
@app.post("/auth/signup", response_model=AuthResult)
def sign_up(body: Credentials, accounts=Depends(get_accounts)):
    return accounts.sign_up(body.email, body.password)


@app.post("/auth/signin", response_model=AuthResult)
def sign_in(body: Credentials, accounts=Depends(get_accounts)):
    return accounts.sign_in(body.email, body.password)


@app.post("/auth/signout")
def sign_out(token: Optional[str] = Depends(bearer_token), accounts=Depends(get_accounts)):
    accounts.sign_out(token)
    return {"ok": True}


@app.get("/auth/session")
def session(user: Optional[User] = Depends(current_user), accounts=Depends(get_accounts)):
    """Who the bearer token belongs to.

    In local mode there is no sign-in; ``user`` is the local profile and
    ``authenticated`` stays false.
    """
    return {
        "authenticated": accounts.remote_enabled and user is not None,
        "remote_enabled": accounts.remote_enabled,
        "user": user,
    }


@app.post("/auth/reset-password")
def request_password_reset(body: PasswordResetRequest, accounts=Depends(get_accounts),
                           settings: Settings = Depends(get_settings)):
    """Start a password reset.

    No mail is sent; the reset link is written to the log. The answer is the
    same whether or not the address is registered.
    """
    token = accounts.request_password_reset(body.email)
    if token:
        logger.info("Password reset link: %s/reset-password?token=%s", settings.public_base_url, token)
    return {"ok": True}


@app.post("/auth/reset-password/confirm")
def confirm_password_reset(body: PasswordResetConfirm, accounts=Depends(get_accounts)):
    accounts.reset_password(body.token, body.password)
    return {"ok": True}


# ------------------------
# Surveys (owner side)
# ------------------------
@app.get("/surveys", response_model=List[SurveyOut])
def list_surveys(user: Optional[User] = Depends(current_user),
                 data: DataAccess = Depends(get_data_access),
                 settings: Settings = Depends(get_settings)):
    return [_out(s, settings) for s in data.get_surveys(user)]


@app.post("/surveys", response_model=SurveyOut)
def create_survey(survey: Survey, user: Optional[User] = Depends(current_user),
                  data: DataAccess = Depends(get_data_access),
                  settings: Settings = Depends(get_settings)):
    return _out(data.save_survey(survey, user), settings)


@app.put("/surveys/{survey_id}", response_model=SurveyOut)
def update_survey(survey_id: str, survey: Survey, user: Optional[User] = Depends(current_user),
                  data: DataAccess = Depends(get_data_access),
                  settings: Settings = Depends(get_settings)):
    """Upsert: fields missing from the body keep their stored values."""
    survey.id = survey_id
    return _out(data.save_survey(survey, user), settings)


@app.get("/surveys/{survey_id}", response_model=SurveyOut)
def get_survey(survey_id: str, user: Optional[User] = Depends(current_user),
               data: DataAccess = Depends(get_data_access),
               settings: Settings = Depends(get_settings)):
    survey = data.get_survey(survey_id, user)
    if survey is None:
        raise NotFound("Survey not found")
    return _out(survey, settings)


@app.delete("/surveys/{survey_id}")
def delete_survey(survey_id: str, user: User = Depends(require_user),
                  data: DataAccess = Depends(get_data_access)):
    data.delete_survey(survey_id, user)
    return {"ok": True}


@app.get("/surveys/{survey_id}/limits", response_model=SubmissionCheck)
def survey_limits(survey_id: str, user: Optional[User] = Depends(current_user),
                  data: DataAccess = Depends(get_data_access)):
    return data.check_survey_limits(survey_id, user)


@app.get("/surveys/{survey_id}/responses", response_model=List[Response])
def survey_responses(survey_id: str, user: User = Depends(require_user),
                     data: DataAccess = Depends(get_data_access)):
    return data.get_responses_for_survey(survey_id, user)


@app.get("/surveys/{survey_id}/analytics", response_model=SurveyAnalytics)
def survey_analytics(survey_id: str, user: User = Depends(require_user),
                     data: DataAccess = Depends(get_data_access)):
    survey = _owned_survey(data, survey_id, user)
    return analyze(survey, data.get_responses_for_survey(survey_id, user))


@app.get("/surveys/{survey_id}/export.csv")
def export_csv(survey_id: str, user: User = Depends(require_user),
               data: DataAccess = Depends(get_data_access)):
    survey = _owned_survey(data, survey_id, user)
    content = export.to_csv(survey, data.get_responses_for_survey(survey_id, user))
    return HTTPResponse(content=content, media_type="text/csv",
                        headers=_attachment(export.export_filename(survey, "csv")))


@app.get("/surveys/{survey_id}/export.xlsx")
def export_xlsx(survey_id: str, user: User = Depends(require_user),
                data: DataAccess = Depends(get_data_access)):
    survey = _owned_survey(data, survey_id, user)
    content = export.to_xlsx(survey, data.get_responses_for_survey(survey_id, user))
    return HTTPResponse(content=content, media_type=XLSX_MEDIA_TYPE,
                        headers=_attachment(export.export_filename(survey, "xlsx")))


@app.get("/responses", response_model=List[Response])
def all_responses(user: User = Depends(require_user), data: DataAccess = Depends(get_data_access)):
    return data.get_all_responses(user)


@app.get("/export.json")
def export_json(user: User = Depends(require_user), data: DataAccess = Depends(get_data_access)):
    return JSONResponse(content=data.export_data(user), headers=_attachment("survey-data.json"))


# ------------------------
# Public link
# ------------------------
@app.get("/s/{public_id}", response_model=Survey)
def public_survey(public_id: str, data: DataAccess = Depends(get_data_access)):
    survey = data.get_survey_by_public_id(public_id)
    if survey is None:
        raise NotFound("Survey not found")
    return survey


@app.post("/s/{public_id}/responses", response_model=Response)
def submit_response(public_id: str, body: SubmitAnswers, request: Request,
                    data: DataAccess = Depends(get_data_access)):
    """Take a survey through its public link.

    The limit check here only gives a friendlier answer up front; the
    store applies the same rule again when the response is inserted.
    """
    survey = data.get_survey_by_public_id(public_id)
    if survey is None:
        raise NotFound("Survey not found")

    check = data.check_survey_limits(survey.id)
    if not check.can_submit:
        if check.reason in (SURVEY_EXPIRED, LIMIT_REACHED):
            raise LimitExceeded(check.reason)
        raise PermissionDenied(check.reason)

    problems = validate_answers(survey, body.answers)
    if problems:
        raise InvalidInput("Please correct the highlighted answers", fields=problems)

    response = Response(
        survey_id=survey.id,
        answers=body.answers,
        ip_address=request.client.host if request.client else None,
    )
    return data.save_response(response)
