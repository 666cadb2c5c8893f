from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from kappsul_devenv.outcome import Outcome

StageAction = Callable[[], Optional[Outcome]]


@dataclass(frozen=True)
class Stage:
    """One named unit of provisioning or teardown work.

    ``action`` returns an ``Outcome``; returning ``None`` is read as success.
    Actions must be idempotent: a re-run against an already converged cluster
    only logs that there is nothing to do.
    """

    name: str
    action: StageAction
    fatal_on_failure: bool = True
    depends_on: Tuple[str, ...] = field(default_factory=tuple)
    description: str = ""
    enabled: bool = True

    @property
    def intent(self) -> str:
        return self.description or self.name
