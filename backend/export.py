import io
import re
from typing import List

import pandas as pd
from openpyxl.utils import get_column_letter

from schemas import Response, Survey

BASE_COLUMNS = ["Response ID", "Submitted At"]
MIN_COLUMN_WIDTH = 15


def format_value(value) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def responses_frame(survey: Survey, responses: List[Response]) -> pd.DataFrame:
    """One row per response, one column per question (in survey order)."""
    rows = []
    for r in responses:
        row = [r.id, r.submitted_at.isoformat() if r.submitted_at else ""]
        for q in survey.questions:
            answer = r.answer_for(q.id)
            row.append(format_value(answer.value) if answer else "")
        rows.append(row)
    return pd.DataFrame(rows, columns=BASE_COLUMNS + [q.title for q in survey.questions])


def export_filename(survey: Survey, extension: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9]+", "-", survey.title).strip("-").lower() or "survey"
    return f"{stem}-responses.{extension}"


def to_csv(survey: Survey, responses: List[Response]) -> bytes:
    return responses_frame(survey, responses).to_csv(index=False).encode("utf-8")


def to_xlsx(survey: Survey, responses: List[Response]) -> bytes:
    frame = responses_frame(survey, responses)
    buf = io.BytesIO()
    with pd.ExcelWriter(buf, engine="openpyxl") as writer:
        frame.to_excel(writer, index=False, sheet_name="Responses")
        sheet = writer.sheets["Responses"]
        for idx, header in enumerate(frame.columns, start=1):
            sheet.column_dimensions[get_column_letter(idx)].width = max(len(str(header)), MIN_COLUMN_WIDTH)
    return buf.getvalue()
