from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar
from tenacity import Retrying, stop_after_attempt, wait_exponential, retry_if_exception_type
from ixyci.core.config import settings
from ixyci.core.logging import get_logger

logger = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    min_wait: float = settings.RETRY_MIN_WAIT
    max_wait: float = settings.RETRY_MAX_WAIT

    @classmethod
    def from_retries(cls, retries: int, min_wait: float = settings.RETRY_MIN_WAIT,
                     max_wait: float = settings.RETRY_MAX_WAIT) -> "RetryPolicy":
        """One initial attempt plus `retries` retries."""
        return cls(attempts=retries + 1, min_wait=min_wait, max_wait=max_wait)


def retrying(policy: RetryPolicy, retry_on: Tuple[Type[BaseException], ...], what: str) -> Retrying:
    def _log_retry(retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(
            f"{what} failed (attempt {retry_state.attempt_number}/{policy.attempts}): {exc}; "
            f"retrying in {retry_state.next_action.sleep:.1f}s"
        )

    return Retrying(
        stop=stop_after_attempt(max(policy.attempts, 1)),
        wait=wait_exponential(multiplier=policy.min_wait, min=policy.min_wait, max=policy.max_wait),
        retry=retry_if_exception_type(retry_on),
        before_sleep=_log_retry,
        reraise=True,
    )


def call_with_retry(fn: Callable[[], T], policy: RetryPolicy,
                    retry_on: Tuple[Type[BaseException], ...], what: str) -> T:
    """
    Call `fn` until it succeeds, raises a non-retryable error, or the policy is exhausted.
    The last exception is re-raised unchanged.
    """
    return retrying(policy, retry_on, what)(fn)
