"""
Attempt recorder, submission and forced expiry.

Submission happens in two writes:
  1. freeze: raw answers + submitted_time, only if not yet submitted. This is
     the idempotency point; a second submit finds the row taken and is a no-op.
  2. score: objective score, essay results and final percentage together.
If step 2 never lands, the expiry sweep scores the attempt later.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cbt import access, auth, crud, gradebook, models, schemas, scoring, timer
from cbt.auth import Caller
from cbt.config import Settings
from cbt.errors import AlreadySubmitted, Forbidden, NotFound
from cbt.evaluator import EssayEvaluator
from cbt.lifecycle import get_test_or_404

logger = logging.getLogger(__name__)


def session_view(test: models.Test, attempt: models.Attempt,
                 now: Optional[datetime] = None) -> schemas.AttemptSession:
    now = timer.as_utc(now or timer.utcnow())
    return schemas.AttemptSession(
        attempt_id=attempt.id,
        test_id=test.id,
        student_id=attempt.student_id,
        start_time=timer.as_utc(attempt.start_time),
        deadline=timer.deadline(attempt.start_time, test.duration_minutes),
        remaining_seconds=timer.remaining_seconds(attempt.start_time, test.duration_minutes, now),
        server_time=now,
        submitted=attempt.submitted_time is not None,
    )


def _refusal(student_id: str, test: models.Test, attempt: Optional[models.Attempt]) -> str:
    if access.is_restricted(student_id, test):
        return "You are not permitted to take this test"
    if attempt is not None and attempt.submitted_time is not None:
        return "Test already submitted"
    return f"Test is not open (status: {test.status})"


async def begin_attempt(db: AsyncSession, caller: Caller, test_id: int,
                        now: Optional[datetime] = None) -> Tuple[models.Test, models.Attempt]:
    auth.require_student(caller)
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    attempt = await crud.get_attempt(db, test.id, caller.user_id)

    if access.can_start(caller.user_id, test, attempt):
        try:
            attempt = await crud.create_attempt(db, test.id, caller.user_id, timer.as_utc(now or timer.utcnow()))
        except SQLAlchemyError:
            # no stored attempt, no answering
            logger.error(f"Could not record attempt for test {test.id} / student {caller.user_id}", exc_info=True)
            raise
        logger.info(f"Attempt {attempt.id} started: test {test.id}, student {caller.user_id}")
    elif access.can_resume(caller.user_id, test, attempt):
        logger.info(f"Attempt {attempt.id} resumed, start time kept at {attempt.start_time}")
    else:
        raise Forbidden(_refusal(caller.user_id, test, attempt))

    return test, attempt


async def score_and_record(db: AsyncSession, test: models.Test, attempt_id: int, evaluator: EssayEvaluator,
                           settings: Settings) -> models.Attempt:
    attempt = await crud.get_attempt_by_id(db, attempt_id)
    sheet = await scoring.score_attempt(
        test,
        attempt.objective_answers or {},
        attempt.essay_answers or {},
        evaluator,
        timeout=settings.essay_grading_timeout,
        concurrency=settings.essay_grading_concurrency,
    )
    try:
        recorded = await crud.record_scores(db, attempt.id, sheet, timer.utcnow())
    except SQLAlchemyError:
        # answers are already frozen; the sweep retries scoring
        logger.error(f"Attempt {attempt.id}: storing scores failed, left for rescoring", exc_info=True)
        await db.rollback()
        return await crud.get_attempt_by_id(db, attempt.id)

    attempt = await crud.get_attempt_by_id(db, attempt.id)
    if recorded:
        logger.info(f"Attempt {attempt.id} scored: objective={sheet.objective_score}, "
                    f"essays={sheet.essay_score}, final={sheet.final_percentage}%")
        if test.results_published:
            await gradebook.merge_attempt(db, test, attempt)
            await db.refresh(attempt)
    return attempt


async def _submit(db: AsyncSession, test: models.Test, attempt: models.Attempt, objective_answers: dict,
                  essay_answers: dict, forced: bool, evaluator: EssayEvaluator, settings: Settings,
                  now: datetime) -> models.Attempt:
    frozen = await crud.freeze_answers(db, attempt.id, objective_answers, essay_answers, now, forced)
    if not frozen:
        raise AlreadySubmitted(f"Attempt {attempt.id} already submitted")

    logger.info(f"Attempt {attempt.id} submitted{' (forced)' if forced else ''}")
    return await score_and_record(db, test, attempt.id, evaluator, settings)


async def submit_attempt(db: AsyncSession, caller: Caller, test_id: int, payload: schemas.SubmitAnswersRequest,
                         evaluator: EssayEvaluator, settings: Settings,
                         now: Optional[datetime] = None) -> Tuple[models.Attempt, bool]:
    """Returns (attempt, already_submitted)."""
    auth.require_student(caller)
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    attempt = await crud.get_attempt(db, test.id, caller.user_id)
    if attempt is None:
        raise NotFound("No attempt has been started for this test")

    if attempt.submitted_time is not None:
        logger.info(f"Attempt {attempt.id} already submitted, ignoring repeated submission")
        return attempt, True

    now = timer.as_utc(now or timer.utcnow())
    objective_answers = dict(payload.objective_answers)
    essay_answers = dict(payload.essay_answers)
    forced = payload.forced
    if timer.is_expired(attempt.start_time, test.duration_minutes, now, settings.submission_grace_seconds):
        logger.warning(f"Attempt {attempt.id}: answers arrived after the deadline, discarding them")
        objective_answers, essay_answers, forced = {}, {}, True

    try:
        attempt = await _submit(db, test, attempt, objective_answers, essay_answers, forced,
                                evaluator, settings, now)
    except AlreadySubmitted as e:
        logger.info(f"{e.detail}, ignoring repeated submission")
        return await crud.get_attempt_by_id(db, attempt.id), True
    return attempt, False


async def force_submit(db: AsyncSession, test: models.Test, attempt: models.Attempt, evaluator: EssayEvaluator,
                       settings: Settings, now: Optional[datetime] = None) -> bool:
    """Timer-driven submission with no answers; False if it was already submitted."""
    now = timer.as_utc(now or timer.utcnow())
    try:
        await _submit(db, test, attempt, {}, {}, True, evaluator, settings, now)
    except AlreadySubmitted:
        return False
    return True


async def sweep_expired_attempts(session_factory: async_sessionmaker, evaluator: EssayEvaluator,
                                 settings: Settings, now: Optional[datetime] = None) -> int:
    """Force-submit overdue attempts and rescore interrupted ones. Returns the forced count."""
    now = timer.as_utc(now or timer.utcnow())
    forced = 0
    async with session_factory() as db:
        overdue = [
            (attempt.id, test.id) for attempt, test in await crud.get_unsubmitted_attempts(db)
            if timer.is_expired(attempt.start_time, test.duration_minutes, now, settings.submission_grace_seconds)
        ]
        for attempt_id, test_id in overdue:
            # reload per item, a failed write earlier in the loop expires the session
            test = await crud.get_test_by_id(db, test_id)
            attempt = await crud.get_attempt_by_id(db, attempt_id)
            if await force_submit(db, test, attempt, evaluator, settings, now):
                forced += 1

        # leave room for a live submission that is still grading essays
        settled = now - timedelta(seconds=2 * settings.essay_grading_timeout)
        interrupted = [
            (attempt.id, test.id) for attempt, test in await crud.get_unscored_attempts(db)
            if timer.as_utc(attempt.submitted_time) <= settled
        ]
        for attempt_id, test_id in interrupted:
            logger.info(f"Attempt {attempt_id}: rescoring interrupted submission")
            test = await crud.get_test_by_id(db, test_id)
            await score_and_record(db, test, attempt_id, evaluator, settings)

    if forced:
        logger.info(f"Expiry sweep force-submitted {forced} attempt(s)")
    return forced


async def run_expiry_sweeper(session_factory: async_sessionmaker, evaluator: EssayEvaluator, settings: Settings):
    logger.info(f"Expiry sweeper running every {settings.expiry_sweep_interval}s")
    while True:
        await asyncio.sleep(settings.expiry_sweep_interval)
        try:
            await sweep_expired_attempts(session_factory, evaluator, settings)
        except Exception:
            # keep sweeping; the next round retries whatever failed
            logger.error("Expiry sweep failed", exc_info=True)
