from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception, retry_if_result, stop_after_attempt, wait_exponential

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.errors import PreconditionMissing, RunInterrupted
from kappsul_devenv.log import get_logger
from kappsul_devenv.outcome import Outcome


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")

    def delay_after(self, attempt: int) -> float:
        return self.initial_delay * self.backoff_multiplier ** (attempt - 1)

    def wait_strategy(self) -> wait_exponential:
        return wait_exponential(multiplier=self.initial_delay, exp_base=self.backoff_multiplier)


DEFAULT_POLICY = RetryPolicy()


def retry(
    action: Callable[[], Any],
    policy: RetryPolicy = DEFAULT_POLICY,
    *,
    name: str = "action",
    non_retryable: Tuple[Type[BaseException], ...] = (PreconditionMissing,),
    sleep: Optional[Callable[[float], None]] = None,
    cancel: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[int, float], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> Outcome:
    """Run ``action`` until it succeeds or ``policy.max_attempts`` is exhausted.

    ``action`` returning ``False`` is a reported failure; any other return value
    counts as success. Raised exceptions are retried like reported failures unless
    they are instances of ``non_retryable``. The result is always an ``Outcome``;
    only ``RunInterrupted`` escapes.
    """
    cancel = cancel or CancellationToken()
    logger = logger or get_logger("retry")
    attempts = {"current": 0}

    def attempt() -> Any:
        cancel.raise_if_cancelled(name)
        attempts["current"] += 1
        number = attempts["current"]
        logger.info(f"[Retry] Attempt {number}/{policy.max_attempts} action={name}")
        try:
            result = action()
        except RunInterrupted:
            raise
        except Exception as exc:
            logger.warning(f"[Retry] Attempt {number}/{policy.max_attempts} raised action={name} error={exc}")
            raise
        if result is False:
            logger.warning(f"[Retry] Attempt {number}/{policy.max_attempts} failed action={name}")
        else:
            logger.info(f"[Retry] ✓ Succeeded on attempt {number} action={name}")
        return result

    def is_retryable(exc: BaseException) -> bool:
        return not isinstance(exc, (RunInterrupted,) + tuple(non_retryable))

    def before_sleep(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(f"[Retry] Retrying action={name} in {delay:g}s")
        if on_retry is not None:
            on_retry(retry_state.attempt_number, delay)

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=policy.wait_strategy(),
        retry=retry_if_result(lambda result: result is False) | retry_if_exception(is_retryable),
        before_sleep=before_sleep,
        sleep=sleep or cancel.sleep,
        reraise=False,
    )

    try:
        retrying(attempt)
    except RetryError as exc:
        last = exc.last_attempt
        if last.failed:
            reason = f"{name} failed after {policy.max_attempts} attempts: {last.exception()}"
        else:
            reason = f"{name} failed after {policy.max_attempts} attempts"
        logger.error(f"[Retry] Giving up action={name} attempts={policy.max_attempts}")
        return Outcome.failure(reason)
    except RunInterrupted:
        raise
    except Exception as exc:
        logger.error(f"[Retry] Not retrying action={name} error={exc}")
        return Outcome.failure(f"{name} failed: {exc}")
    return Outcome.success()
