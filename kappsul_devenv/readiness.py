from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.errors import RunInterrupted
from kappsul_devenv.log import get_logger
from kappsul_devenv.outcome import Outcome

Predicate = Callable[[], bool]
Clock = Callable[[], float]
Sleep = Callable[[float], None]


class OnTimeout(str, Enum):
    WARN = "warn"
    FAIL = "fail"


def _evaluate(predicate: Predicate, description: str, logger: logging.Logger) -> bool:
    try:
        return bool(predicate())
    except RunInterrupted:
        raise
    except Exception as exc:
        logger.debug(f"[Readiness] Probe raised condition={description} error={exc}")
        return False


def _run_diagnostics(diagnostics: Optional[Callable[[], None]], description: str, logger: logging.Logger) -> None:
    if diagnostics is None:
        return
    try:
        diagnostics()
    except RunInterrupted:
        raise
    except Exception as exc:
        logger.warning(f"[Readiness] Diagnostics failed condition={description} error={exc}")


def await_condition(
    predicate: Predicate,
    poll_interval: float,
    timeout: float,
    *,
    on_timeout: Optional[Callable[[], None]] = None,
    description: str = "condition",
    clock: Clock = time.monotonic,
    sleep: Optional[Sleep] = None,
    cancel: Optional[CancellationToken] = None,
    logger: Optional[logging.Logger] = None,
) -> bool:
    """Poll ``predicate`` every ``poll_interval`` seconds until it is true or ``timeout`` elapses.

    ``on_timeout`` runs once when the wait gives up and never changes the result.
    """
    cancel = cancel or CancellationToken()
    sleep = sleep or cancel.sleep
    logger = logger or get_logger("readiness")

    start = clock()
    evaluations = 0
    while True:
        cancel.raise_if_cancelled(description)
        evaluations += 1
        if _evaluate(predicate, description, logger):
            logger.debug(f"[Readiness] Ready condition={description} evaluations={evaluations}")
            return True
        elapsed = clock() - start
        if elapsed >= timeout:
            logger.warning(f"[Readiness] Timed out condition={description} timeout={timeout:g}s evaluations={evaluations}")
            _run_diagnostics(on_timeout, description, logger)
            return False
        logger.debug(f"[Readiness] Waiting condition={description} elapsed={elapsed:g}s next-poll={poll_interval:g}s")
        sleep(poll_interval)


@dataclass(frozen=True)
class ReadinessCheck:
    predicate: Predicate
    poll_interval: float
    timeout: float
    on_timeout: OnTimeout = OnTimeout.WARN
    description: str = "condition"
    diagnostics: Optional[Callable[[], None]] = None

    def wait(
        self,
        *,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
        cancel: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
    ) -> Outcome:
        ready = await_condition(
            self.predicate,
            self.poll_interval,
            self.timeout,
            on_timeout=self.diagnostics,
            description=self.description,
            clock=clock,
            sleep=sleep,
            cancel=cancel,
            logger=logger,
        )
        if ready:
            return Outcome.success()
        reason = f"{self.description} not ready after {self.timeout:g}s"
        if self.on_timeout is OnTimeout.FAIL:
            return Outcome.failure(reason)
        return Outcome.degraded(reason)


@dataclass(frozen=True)
class Condition:
    name: str
    predicate: Predicate


class CompoundReadinessCheck:
    """Readiness as a conjunction of declarative conditions, a live probe and a settle delay.

    Each condition is polled on its own with a short wait. Once all of them hold,
    ``probe`` performs an actual connection attempt; only a successful probe
    followed by ``settle`` seconds counts as ready. Declared status alone is not
    trusted because an admission webhook can report Ready before its TLS
    endpoint is servable.
    """

    def __init__(
        self,
        conditions: Sequence[Condition],
        probe: Predicate,
        *,
        timeout: float,
        poll_interval: float = 5.0,
        condition_timeout: float = 15.0,
        probe_interval: float = 10.0,
        settle: float = 15.0,
        description: str = "compound readiness",
        on_timeout: Optional[Callable[[], None]] = None,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
        cancel: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.conditions = list(conditions)
        self.probe = probe
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.condition_timeout = condition_timeout
        self.probe_interval = probe_interval
        self.settle = settle
        self.description = description
        self.on_timeout = on_timeout
        self.clock = clock
        self.cancel = cancel or CancellationToken()
        self.sleep = sleep or self.cancel.sleep
        self.logger = logger or get_logger("readiness")

    def pending_condition(self) -> Optional[Condition]:
        for condition in self.conditions:
            ready = await_condition(
                condition.predicate,
                self.poll_interval,
                self.condition_timeout,
                description=condition.name,
                clock=self.clock,
                sleep=self.sleep,
                cancel=self.cancel,
                logger=self.logger,
            )
            if not ready:
                return condition
        return None

    def wait(self) -> bool:
        start = self.clock()
        round_number = 0
        while True:
            self.cancel.raise_if_cancelled(self.description)
            round_number += 1
            self.logger.info(f"[Readiness] Checking {self.description} round={round_number}")

            pending = self.pending_condition()
            if pending is None:
                self.logger.info(f"[Readiness] Declarative checks passed; probing {self.description}")
                if _evaluate(self.probe, f"{self.description} probe", self.logger):
                    self.logger.info(f"[Readiness] Probe succeeded; settling {self.settle:g}s")
                    self.sleep(self.settle)
                    return True
                self.logger.warning(f"[Readiness] Probe not responding yet condition={self.description}")
                backoff = self.probe_interval
            else:
                self.logger.warning(f"[Readiness] Still waiting condition={pending.name}")
                backoff = 0.0

            if self.clock() - start >= self.timeout:
                self.logger.warning(f"[Readiness] Gave up condition={self.description} timeout={self.timeout:g}s")
                _run_diagnostics(self.on_timeout, self.description, self.logger)
                return False
            if backoff:
                self.sleep(backoff)
