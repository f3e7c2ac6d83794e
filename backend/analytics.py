from typing import List

import pandas as pd

from schemas import (
    CHOICE_TYPES, QuestionAnalytics, QuestionType, Response, Survey,
    SurveyAnalytics, SurveyStats,
)


def _present(value) -> bool:
    if isinstance(value, list):
        return len(value) > 0
    return value is not None and value != ""


def _rating_key(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def answers_frame(responses: List[Response]) -> pd.DataFrame:
    """Long format: one row per (response, answer)."""
    rows = [
        {"response_id": r.id, "question_id": a.question_id, "value": a.value}
        for r in responses
        for a in r.answers
    ]
    return pd.DataFrame(rows, columns=["response_id", "question_id", "value"], dtype=object)


def question_analytics(question, frame: pd.DataFrame) -> QuestionAnalytics:
    values = frame.loc[frame["question_id"] == question.id, "value"]
    values = values[values.map(_present)] if len(values) else values
    base = {"question_id": question.id, "title": question.title}

    if question.type in CHOICE_TYPES:
        # multi-select answers count once per selected option
        counts = values.explode().value_counts() if len(values) else pd.Series(dtype=int)
        distribution = {option: 0 for option in question.options or []}
        for choice, n in counts.items():
            distribution[str(choice)] = int(n)
        return QuestionAnalytics(kind="choice", distribution=distribution, **base)

    if question.type == QuestionType.RATING:
        scalars = values[values.map(lambda v: not isinstance(v, list))] if len(values) else values
        ratings = pd.to_numeric(scalars, errors="coerce").dropna()
        average = float(ratings.mean()) if len(ratings) else 0.0
        distribution = {}
        for rating, n in ratings.value_counts().sort_index().items():
            distribution[_rating_key(rating)] = int(n)
        return QuestionAnalytics(kind="rating", average=average, distribution=distribution, **base)

    texts = [", ".join(v) if isinstance(v, list) else str(v) for v in values]
    return QuestionAnalytics(kind="text", answers=texts, **base)


def analyze(survey: Survey, responses: List[Response]) -> SurveyAnalytics:
    frame = answers_frame(responses)
    per_question = [question_analytics(q, frame) for q in survey.questions]

    stats = SurveyStats(total_responses=len(responses))
    for qa in per_question:
        if qa.kind == "rating":
            stats.average_rating[qa.question_id] = qa.average
        elif qa.kind == "choice":
            stats.choice_distribution[qa.question_id] = qa.distribution
    return SurveyAnalytics(stats=stats, questions=per_question)
