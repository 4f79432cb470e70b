from typing import List, Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from cbt import attempts, export, gradebook, lifecycle, results, schemas
from cbt.auth import Caller, get_caller
from cbt.config import Settings, get_settings
from cbt.database import get_db
from cbt.evaluator import EssayEvaluator

router = APIRouter()


def get_evaluator(request: Request) -> EssayEvaluator:
    return request.app.state.evaluator


# Root endpoint
@router.get("/")
async def root():
    return {"message": "CBT API is working", "docs": "/docs", "redoc": "/redoc"}


@router.post("/tests", response_model=schemas.TestResponse)
async def create_test(payload: schemas.TestCreate, db: AsyncSession = Depends(get_db),
                      caller: Caller = Depends(get_caller)):
    return await lifecycle.create_test(db, caller, payload)


@router.get("/tests", response_model=List[Union[schemas.TestResponse, schemas.StudentTestView]])
async def get_all_tests(school_id: Optional[str] = None, class_id: Optional[str] = None,
                        db: AsyncSession = Depends(get_db), caller: Caller = Depends(get_caller)):
    tests = await lifecycle.list_tests(db, caller, school_id=school_id, class_id=class_id)
    if caller.is_student:
        return [lifecycle.student_view(test) for test in tests]
    return [schemas.TestResponse.model_validate(test) for test in tests]


@router.get("/tests/{test_id}", response_model=Union[schemas.TestResponse, schemas.StudentTestView])
async def get_test(test_id: int, db: AsyncSession = Depends(get_db), caller: Caller = Depends(get_caller)):
    return await lifecycle.get_test_for_caller(db, caller, test_id)


@router.put("/tests/{test_id}", response_model=schemas.TestResponse)
async def modify_test(test_id: int, update_data: schemas.TestUpdate, db: AsyncSession = Depends(get_db),
                      caller: Caller = Depends(get_caller)):
    return await lifecycle.update_test(db, caller, test_id, update_data)


@router.put("/tests/{test_id}/status", response_model=schemas.TestResponse)
async def change_status(test_id: int, payload: schemas.StatusUpdate, db: AsyncSession = Depends(get_db),
                        caller: Caller = Depends(get_caller)):
    return await lifecycle.set_status(db, caller, test_id, payload.status)


@router.put("/tests/{test_id}/publication", response_model=schemas.TestResponse)
async def change_publication(test_id: int, payload: schemas.PublicationUpdate, db: AsyncSession = Depends(get_db),
                             caller: Caller = Depends(get_caller), settings: Settings = Depends(get_settings)):
    return await lifecycle.set_results_published(db, caller, test_id, payload.results_published, settings)


@router.put("/tests/{test_id}/restrictions", response_model=schemas.TestResponse)
async def change_restrictions(test_id: int, payload: schemas.RestrictionUpdate, db: AsyncSession = Depends(get_db),
                              caller: Caller = Depends(get_caller)):
    return await lifecycle.set_restricted_students(db, caller, test_id, payload.student_ids)


@router.post("/tests/{test_id}/attempts", response_model=schemas.AttemptSession)
async def begin_attempt(test_id: int, db: AsyncSession = Depends(get_db), caller: Caller = Depends(get_caller)):
    test, attempt = await attempts.begin_attempt(db, caller, test_id)
    return attempts.session_view(test, attempt)


@router.post("/tests/{test_id}/attempts/submit", response_model=schemas.SubmitAnswersResponse)
async def submit_answers(test_id: int, payload: schemas.SubmitAnswersRequest, db: AsyncSession = Depends(get_db),
                         caller: Caller = Depends(get_caller), evaluator: EssayEvaluator = Depends(get_evaluator),
                         settings: Settings = Depends(get_settings)):
    attempt, already_submitted = await attempts.submit_attempt(db, caller, test_id, payload, evaluator, settings)
    return schemas.SubmitAnswersResponse(
        message="Answers submitted successfully",
        attempt_id=attempt.id,
        submitted_time=attempt.submitted_time,
        forced=attempt.forced,
        already_submitted=already_submitted,
    )


@router.get("/tests/{test_id}/results", response_model=schemas.ResultsView)
async def get_results(test_id: int, db: AsyncSession = Depends(get_db), caller: Caller = Depends(get_caller)):
    return await results.get_results_view(db, caller, test_id)


@router.get("/tests/{test_id}/export")
async def export_test_results(test_id: int, db: AsyncSession = Depends(get_db),
                              caller: Caller = Depends(get_caller)):
    """
    Export test results as an Excel file for a given test ID.
    """
    excel_file, filename = await export.export_results(db, caller, test_id)
    return Response(
        content=excel_file.getvalue(),
        media_type=export.XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/gradebook/{student_id}", response_model=List[schemas.GradeResponse])
async def get_gradebook(student_id: str, db: AsyncSession = Depends(get_db), caller: Caller = Depends(get_caller)):
    return await gradebook.get_gradebook(db, caller, student_id)
