# /src/txflow/core/decorators.py
# The one retry policy for endpoint calls.
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from txflow.core.errors import EndpointError
from txflow.core.logger import get_logger, ENDPOINT_RETRIES

log = get_logger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Bounded exponential backoff: attempt n waits min(max_wait, min_wait * 2**n)."""
    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 5.0

    class Config:
        frozen = True

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RPC_MAX_ATTEMPTS,
            min_wait=settings.RPC_BACKOFF_MIN_S,
            max_wait=settings.RPC_BACKOFF_MAX_S,
        )

    def retrying(self, method: str) -> AsyncRetrying:
        def before_sleep(retry_state):
            ENDPOINT_RETRIES.labels(method).inc()
            log.warning(
                "ENDPOINT_CALL_RETRY",
                method=method,
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
            )

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            # Rejections and validation failures are never retried blindly
            retry=retry_if_exception_type(EndpointError),
            before_sleep=before_sleep,
            reraise=True,
        )


async def call_with_retry(policy: RetryPolicy, method: str, fn: Callable[[], Awaitable[T]]) -> T:
    async for attempt in policy.retrying(method):
        with attempt:
            return await fn()
