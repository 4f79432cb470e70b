"""
Scoring engine.

1. Objective marking: full marks when the stored answer equals the correct
   option, otherwise 0.
2. Essay marking through the external evaluator, clamped to [0, marks]. A
   failed evaluation becomes a zero score flagged for manual review.
3. Normalization. The attempt stores a 0-100 percentage; the gradebook gets a
   category-scaled contribution (x20 for CA tests, x50 for exams). Both are
   computed from the raw fraction, never from each other.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from cbt import models
from cbt.errors import EvaluationUnavailable
from cbt.evaluator import EssayEvaluator
from cbt.models import TestCategory
from cbt.schemas import EssayResult

logger = logging.getLogger(__name__)

NO_ANSWER_FEEDBACK = "No answer submitted."
UNAVAILABLE_FEEDBACK = "Evaluation unavailable, requires manual review."

CATEGORY_SCALE = {
    TestCategory.FIRST_CA.value: 20,
    TestCategory.SECOND_CA.value: 20,
    TestCategory.EXAM.value: 50,
}


@dataclass
class ScoreSheet:
    objective_score: float
    essay_results: Dict[str, EssayResult] = field(default_factory=dict)
    raw_fraction: float = 0.0
    final_percentage: float = 0.0

    @property
    def essay_score(self) -> float:
        return sum(result.score for result in self.essay_results.values())


def objective_score(questions: List[dict], answers: Mapping[str, str]) -> float:
    score = 0
    for question in questions:
        if answers.get(question["id"]) == question["correct_option"]:
            score += question["marks"]
    return score


def total_marks(questions: List[dict]) -> int:
    return sum(question["marks"] for question in questions)


def available_marks(test: models.Test) -> int:
    return total_marks(test.objective_questions or []) + total_marks(test.essay_questions or [])


def clamp_score(score: float, marks: int) -> float:
    return max(0.0, min(float(score), float(marks)))


def rubric_with_max_marks(question: dict) -> str:
    return f"{question['rubric_text']}\n\nThe total marks for this question is {question['marks']}."


async def grade_essay(question: dict, answer: Optional[str], evaluator: EssayEvaluator,
                      timeout: Optional[float] = None) -> EssayResult:
    if answer is None or not answer.strip():
        return EssayResult(score=0, feedback=NO_ANSWER_FEEDBACK)

    try:
        response = await asyncio.wait_for(
            evaluator.evaluate(question["prompt"], rubric_with_max_marks(question), answer),
            timeout=timeout,
        )
        if not math.isfinite(response.score):
            raise EvaluationUnavailable(f"Non-finite score {response.score!r}")
    except asyncio.TimeoutError:
        logger.warning(f"Essay {question['id']}: evaluator timed out after {timeout}s, using fallback")
        return EssayResult(score=0, feedback=UNAVAILABLE_FEEDBACK, needs_review=True)
    except EvaluationUnavailable as e:
        logger.warning(f"Essay {question['id']}: {e.detail}, using fallback")
        return EssayResult(score=0, feedback=UNAVAILABLE_FEEDBACK, needs_review=True)
    except Exception as e:
        # evaluator outages must never fail a submission
        logger.error(f"Essay {question['id']}: unexpected evaluator error: {e}", exc_info=True)
        return EssayResult(score=0, feedback=UNAVAILABLE_FEEDBACK, needs_review=True)

    score = clamp_score(response.score, question["marks"])
    if score != response.score:
        logger.info(f"Essay {question['id']}: clamped evaluator score {response.score} to {score}")
    return EssayResult(score=score, feedback=response.feedback, is_compliant=response.is_compliant)


async def grade_essays(questions: List[dict], answers: Mapping[str, str], evaluator: EssayEvaluator,
                       timeout: Optional[float] = None, concurrency: int = 4) -> Dict[str, EssayResult]:
    semaphore = asyncio.Semaphore(concurrency)

    async def _grade(question):
        async with semaphore:
            return await grade_essay(question, answers.get(question["id"]), evaluator, timeout)

    results = await asyncio.gather(*(_grade(question) for question in questions))
    return {question["id"]: result for question, result in zip(questions, results)}


def raw_fraction(objective: float, essay_total: float, total: int) -> float:
    if total == 0:
        return 0.0
    return (objective + essay_total) / total


def final_percentage(fraction: float) -> float:
    """Percentage stored on the attempt, 0-100 with two decimals."""
    return round(min(max(fraction, 0.0), 1.0) * 100, 2)


def category_scaled_score(category: str, fraction: float) -> float:
    """Contribution merged into the gradebook slot for the test's category."""
    return fraction * CATEGORY_SCALE[TestCategory(category).value]


def attempt_raw_fraction(test: models.Test, attempt: models.Attempt) -> float:
    """Recompute the raw fraction from a scored attempt's stored components."""
    essay_total = sum(result["score"] for result in (attempt.essay_results or {}).values())
    return raw_fraction(attempt.objective_score or 0, essay_total, available_marks(test))


async def score_attempt(test: models.Test, objective_answers: Mapping[str, str],
                        essay_answers: Mapping[str, str], evaluator: EssayEvaluator,
                        timeout: Optional[float] = None, concurrency: int = 4) -> ScoreSheet:
    objective = objective_score(test.objective_questions or [], objective_answers)
    essays = await grade_essays(test.essay_questions or [], essay_answers, evaluator, timeout, concurrency)

    sheet = ScoreSheet(objective_score=objective, essay_results=essays)
    sheet.raw_fraction = raw_fraction(objective, sheet.essay_score, available_marks(test))
    sheet.final_percentage = final_percentage(sheet.raw_fraction)
    return sheet
