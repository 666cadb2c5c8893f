from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from kappsul_devenv.log import CHECK, WARN


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DEGRADED = "degraded"
    SKIPPED = "skipped"
    NOT_RUN = "not-run"
    INTERRUPTED = "interrupted"


class RunState(str, Enum):
    NOT_STARTED = "not-started"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed-with-warnings"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    reason: str = ""

    @classmethod
    def success(cls, reason: str = "") -> "Outcome":
        return cls(OutcomeStatus.SUCCESS, reason)

    @classmethod
    def failure(cls, reason: str) -> "Outcome":
        return cls(OutcomeStatus.FAILURE, reason)

    @classmethod
    def degraded(cls, reason: str) -> "Outcome":
        return cls(OutcomeStatus.DEGRADED, reason)

    @classmethod
    def skipped(cls, reason: str = "disabled") -> "Outcome":
        return cls(OutcomeStatus.SKIPPED, reason)

    @classmethod
    def not_run(cls) -> "Outcome":
        return cls(OutcomeStatus.NOT_RUN)

    @classmethod
    def interrupted(cls, reason: str = "interrupted") -> "Outcome":
        return cls(OutcomeStatus.INTERRUPTED, reason)

    @classmethod
    def from_warnings(cls, warnings: Iterable[str]) -> "Outcome":
        """Collapse the warnings a stage accumulated into a single outcome."""
        collected = [w for w in warnings if w]
        if not collected:
            return cls.success()
        return cls.degraded("; ".join(collected))

    @property
    def ok(self) -> bool:
        return self.status in (OutcomeStatus.SUCCESS, OutcomeStatus.SKIPPED)

    @property
    def is_warning(self) -> bool:
        return self.status in (OutcomeStatus.FAILURE, OutcomeStatus.DEGRADED)

    def __str__(self) -> str:
        if self.reason:
            return f"{self.status.value} ({self.reason})"
        return self.status.value


_MARKS = {
    OutcomeStatus.SUCCESS: CHECK,
    OutcomeStatus.SKIPPED: "-",
    OutcomeStatus.DEGRADED: WARN,
    OutcomeStatus.FAILURE: "✗",
    OutcomeStatus.INTERRUPTED: "✗",
    OutcomeStatus.NOT_RUN: " ",
}


@dataclass
class SequenceReport:
    """Ordered stage outcomes of one provisioning or teardown run."""

    title: str = "run"
    entries: List[Tuple[str, Outcome]] = field(default_factory=list)
    state: RunState = RunState.NOT_STARTED
    cancel_reason: str = ""

    def record(self, name: str, outcome: Outcome) -> None:
        self.entries.append((name, outcome))

    def outcome_of(self, name: str) -> Optional[Outcome]:
        for stage_name, outcome in self.entries:
            if stage_name == name:
                return outcome
        return None

    @property
    def names(self) -> List[str]:
        return [name for name, _ in self.entries]

    @property
    def executed(self) -> List[Tuple[str, Outcome]]:
        return [(name, outcome) for name, outcome in self.entries if outcome.status is not OutcomeStatus.NOT_RUN]

    @property
    def has_warnings(self) -> bool:
        return any(outcome.is_warning for _, outcome in self.entries)

    @property
    def interrupted(self) -> bool:
        return bool(self.cancel_reason) or any(outcome.status is OutcomeStatus.INTERRUPTED for _, outcome in self.entries)

    @property
    def failed(self) -> bool:
        return self.state is RunState.ABORTED

    def summary_lines(self) -> List[str]:
        header = f"{self.title}: {self.state.value}"
        lines = [f"{header} ({self.cancel_reason})" if self.cancel_reason else header]
        width = max((len(name) for name in self.names), default=0)
        for name, outcome in self.entries:
            lines.append(f"  {_MARKS[outcome.status]} {name.ljust(width)}  {outcome}")
        return lines
