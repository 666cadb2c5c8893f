from __future__ import annotations

import logging
import subprocess
from collections import deque
from typing import Dict, List, Optional, Sequence

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.errors import AlreadySatisfied, BootstrapError, RunInterrupted, StageOrderError
from kappsul_devenv.log import CHECK, WARN, get_logger
from kappsul_devenv.outcome import Outcome, OutcomeStatus, RunState, SequenceReport
from kappsul_devenv.stage import Stage


def dependency_order(stages: Sequence[Stage]) -> List[str]:
    """Stable topological order of ``stages``; ties keep declaration order."""
    index: Dict[str, int] = {}
    for position, stage in enumerate(stages):
        if stage.name in index:
            raise StageOrderError(f"[Sequencer] Duplicate stage name={stage.name}")
        index[stage.name] = position

    indegree = {stage.name: 0 for stage in stages}
    dependents: Dict[str, List[str]] = {stage.name: [] for stage in stages}
    for stage in stages:
        for dependency in stage.depends_on:
            if dependency not in index:
                raise StageOrderError(f"[Sequencer] Unknown dependency stage={stage.name} depends-on={dependency}")
            indegree[stage.name] += 1
            dependents[dependency].append(stage.name)

    ready = deque(sorted((name for name, degree in indegree.items() if degree == 0), key=index.__getitem__))
    order: List[str] = []
    while ready:
        name = ready.popleft()
        order.append(name)
        for dependent in sorted(dependents[name], key=index.__getitem__):
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                ready.append(dependent)

    if len(order) != len(stages):
        stuck = sorted(name for name, degree in indegree.items() if degree > 0)
        raise StageOrderError(f"[Sequencer] Dependency cycle stages={' '.join(stuck)}")
    return order


def validate_declaration_order(stages: Sequence[Stage]) -> None:
    dependency_order(stages)
    seen = set()
    for stage in stages:
        for dependency in stage.depends_on:
            if dependency not in seen:
                raise StageOrderError(f"[Sequencer] Stage declared before its dependency stage={stage.name} depends-on={dependency}")
        seen.add(stage.name)


class Sequencer:
    """Runs stages strictly in declaration order and aggregates their outcomes.

    A fatal stage that fails halts the run; a non-fatal one is logged and the
    run continues. With ``allow_abort=False`` every stage is treated as
    non-fatal, which is how teardown runs.

    Cancellation observed between stages marks every stage not yet started
    as ``NOT_RUN``; only a stage that was executing when the token fired is
    recorded as ``INTERRUPTED``. Either way the report carries the cancel
    reason and ends ``ABORTED``.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        title: str = "provisioning",
        cancel: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
        allow_abort: bool = True,
    ) -> None:
        validate_declaration_order(stages)
        self.stages = list(stages)
        self.title = title
        self.cancel = cancel or CancellationToken()
        self.logger = logger or get_logger("sequencer")
        self.allow_abort = allow_abort
        self.report = SequenceReport(title=title)

    @property
    def state(self) -> RunState:
        return self.report.state

    def run(self) -> SequenceReport:
        if self.report.state is not RunState.NOT_STARTED:
            raise RuntimeError(f"Sequencer '{self.title}' has already run")
        self.report.state = RunState.RUNNING
        self.logger.info(f"[Sequencer] Starting {self.title} stages={len(self.stages)}")

        for position, stage in enumerate(self.stages):
            if self.cancel.cancelled:
                self._abort(position)
                return self.report

            if not stage.enabled:
                self.logger.info(f"[Stage] Skipping name={stage.name} reason=disabled")
                self.report.record(stage.name, Outcome.skipped())
                continue

            self.logger.info(f"[Stage] {stage.intent} name={stage.name}")
            outcome = self._execute(stage)
            if self.cancel.cancelled and outcome.status is not OutcomeStatus.SUCCESS:
                outcome = Outcome.interrupted(self.cancel.reason)

            if outcome.status is OutcomeStatus.INTERRUPTED:
                self.logger.error(f"[Stage] Interrupted name={stage.name}")
                self._abort(position, outcome)
                return self.report

            self.report.record(stage.name, outcome)
            fatal = stage.fatal_on_failure and self.allow_abort
            if outcome.status is OutcomeStatus.FAILURE and fatal:
                self.logger.error(f"[Stage] Failed name={stage.name} fatal=true reason={outcome.reason}")
                for remaining in self.stages[position + 1 :]:
                    self.report.record(remaining.name, Outcome.not_run())
                self.report.state = RunState.ABORTED
                return self.report
            if outcome.is_warning:
                self.logger.warning(f"[Stage] {WARN} {stage.name} status={outcome.status.value} reason={outcome.reason} action=continue")
            else:
                self.logger.info(f"[Stage] {CHECK} {stage.name}" + (f" ({outcome.reason})" if outcome.reason else ""))

        self.report.state = RunState.COMPLETED_WITH_WARNINGS if self.report.has_warnings else RunState.COMPLETED
        self.logger.info(f"[Sequencer] Finished {self.title} state={self.report.state.value}")
        return self.report

    def _execute(self, stage: Stage) -> Outcome:
        try:
            outcome = stage.action()
        except AlreadySatisfied as exc:
            return Outcome.success(str(exc))
        except RunInterrupted as exc:
            return Outcome.interrupted(str(exc))
        except (BootstrapError, subprocess.CalledProcessError, OSError) as exc:
            message = str(exc)
            if isinstance(exc, subprocess.CalledProcessError) and exc.stderr:
                message = f"{message}: {exc.stderr.strip()}"
            return Outcome.failure(message)
        except Exception as exc:
            self.logger.exception(f"[Stage] Unexpected error name={stage.name} error={exc}")
            return Outcome.failure(f"unexpected {exc.__class__.__name__}: {exc}")
        return outcome if outcome is not None else Outcome.success()

    def _abort(self, position: int, outcome: Optional[Outcome] = None) -> None:
        """Stop at ``position``; ``outcome`` is recorded for that stage only when it actually ran."""
        first_not_run = position
        if outcome is not None:
            self.report.record(self.stages[position].name, outcome)
            first_not_run += 1
        for remaining in self.stages[first_not_run:]:
            self.report.record(remaining.name, Outcome.not_run())
        self.report.cancel_reason = self.cancel.reason or (outcome.reason if outcome else "interrupted")
        self.report.state = RunState.ABORTED
        self.logger.error(f"[Sequencer] Aborted {self.title} stage={self.stages[position].name} reason={self.report.cancel_reason}")

