"""
Client for the external essay-evaluation service.

POST {question, rubricWithMaxMarks, studentAnswer}
  -> {score, feedback, isCompliant}

Transient failures (timeouts, connection errors, 429, 5xx) are retried with
exponential backoff and jitter; anything else fails at once. After the last
attempt EvaluationUnavailable is raised. The scoring engine turns that into a
fallback score, so callers of this module never see a hard failure reach the
student.
"""
import asyncio
import logging
import random
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from cbt.config import Settings
from cbt.errors import EvaluationUnavailable
from cbt.schemas import EvaluationRequest, EvaluationResponse

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class EssayEvaluator(Protocol):
    async def evaluate(self, question: str, rubric_with_max_marks: str,
                       student_answer: str) -> EvaluationResponse:
        ...


class HttpEssayEvaluator:
    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        request_timeout: float = 15.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 4.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(headers=headers, timeout=request_timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpEssayEvaluator":
        return cls(
            url=settings.evaluator_url,
            api_key=settings.evaluator_api_key,
            request_timeout=settings.evaluator_request_timeout,
            max_attempts=settings.evaluator_max_attempts,
            backoff_seconds=settings.evaluator_backoff_seconds,
            max_backoff_seconds=settings.evaluator_max_backoff_seconds,
        )

    async def aclose(self):
        await self._client.aclose()

    def _compute_backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(self.max_backoff_seconds, max(0.0, retry_after))
        delay = self.backoff_seconds * 2 ** (attempt - 1)
        return min(self.max_backoff_seconds, delay + random.uniform(0, self.backoff_seconds))

    @staticmethod
    def _get_retry_after(response: httpx.Response) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    async def evaluate(self, question: str, rubric_with_max_marks: str,
                       student_answer: str) -> EvaluationResponse:
        payload = EvaluationRequest(
            question=question,
            rubric_with_max_marks=rubric_with_max_marks,
            student_answer=student_answer,
        ).model_dump(by_alias=True)

        last_exc: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            retry_after = None
            try:
                response = await self._client.post(self.url, json=payload)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                logger.warning(f"Evaluator unreachable ({type(e).__name__}), attempt {attempt}/{self.max_attempts}")
                last_exc = e
            else:
                if response.status_code in RETRYABLE_STATUS:
                    logger.warning(f"Evaluator returned {response.status_code}, attempt {attempt}/{self.max_attempts}")
                    retry_after = self._get_retry_after(response)
                    last_exc = httpx.HTTPStatusError(
                        f"HTTP {response.status_code}", request=response.request, response=response
                    )
                elif response.is_error:
                    logger.error(f"Evaluator rejected request with {response.status_code}: {response.text[:200]}")
                    raise EvaluationUnavailable(
                        f"Evaluator rejected request ({response.status_code})", attempts=attempt
                    )
                else:
                    try:
                        return EvaluationResponse.model_validate(response.json())
                    except (ValueError, ValidationError) as e:
                        logger.error(f"Malformed evaluator response: {e}")
                        raise EvaluationUnavailable("Malformed evaluator response", attempts=attempt,
                                                    last_exception=e)

            if attempt < self.max_attempts:
                await asyncio.sleep(self._compute_backoff(attempt, retry_after))

        raise EvaluationUnavailable(
            f"Evaluator failed after {self.max_attempts} attempts", attempts=self.max_attempts,
            last_exception=last_exc,
        )
