import logging
from io import BytesIO
from typing import Tuple

import pandas as pd
from sqlalchemy.ext.asyncio import AsyncSession

from cbt import auth, crud, scoring, timer
from cbt.auth import Caller
from cbt.lifecycle import get_test_or_404

logger = logging.getLogger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

COLUMNS = [
    '№', 'Student ID', 'Started', 'Submitted', 'Forced',
    'Objective score', 'Essay score', 'Final %', 'Scaled score',
]


def _excel_time(value):
    # xlsxwriter cannot write tz-aware datetimes
    if value is None:
        return None
    return timer.as_utc(value).replace(tzinfo=None)


async def export_results(db: AsyncSession, caller: Caller, test_id: int) -> Tuple[BytesIO, str]:
    """
    Export every attempt of a test to an Excel file.
    Returns a tuple of (BytesIO containing the file, filename).
    """
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    auth.require_editor(caller, test)

    attempts = await crud.get_attempts_for_test(db, test.id)

    data = []
    count = 1
    for attempt in attempts:
        scored = attempt.scored_time is not None
        essay_total = sum(result["score"] for result in (attempt.essay_results or {}).values())
        row = {
            '№': count,
            'Student ID': attempt.student_id,
            'Started': _excel_time(attempt.start_time),
            'Submitted': _excel_time(attempt.submitted_time),
            'Forced': 'Yes' if attempt.forced else 'No',
            'Objective score': attempt.objective_score if scored else None,
            'Essay score': essay_total if scored else None,
            'Final %': attempt.final_percentage if scored else None,
            'Scaled score': round(scoring.category_scaled_score(
                test.category, scoring.attempt_raw_fraction(test, attempt)), 2) if scored else None,
        }
        count += 1
        data.append(row)

    df = pd.DataFrame(data, columns=COLUMNS)

    # Create Excel file in memory
    output = BytesIO()
    with pd.ExcelWriter(output, engine='xlsxwriter', datetime_format='yyyy-mm-dd hh:mm:ss') as writer:
        df.to_excel(writer, index=False, sheet_name='Results')

        # Auto-adjust column widths
        worksheet = writer.sheets['Results']
        for i, col in enumerate(df.columns):
            # empty cells (unsubmitted or unscored attempts) count as zero width
            values = df[col].map(lambda v: 0 if pd.isna(v) else len(str(v)))
            max_len = max(values.max() if len(values) else 0, len(col)) + 2
            worksheet.set_column(i, i, max_len)

    output.seek(0)
    filename = f"test_{test.id}_results.xlsx"
    logger.info(f"Exported {len(data)} attempt(s) of test {test.id} for {caller.user_id}")
    return output, filename
