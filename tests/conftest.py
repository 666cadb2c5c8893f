import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from kappsul_devenv.clients import Toolbox
from kappsul_devenv.commands import CommandRunner
from kappsul_devenv.config import DEFAULT_REQUIRED_TOOLS, DevEnvConfig
from kappsul_devenv.log import LOGGER_NAME

KIND_CONFIG_TEMPLATE = """kind: Cluster
apiVersion: kind.x-k8s.io/v1alpha4
name: dev-local
nodes:
  - role: control-plane
    extraMounts:
      - hostPath: __PROJECT_ROOT__/data
        containerPath: /data
"""

VALUES_FILES = ("openldap-values.yaml", "dex-values.yaml", "prometheus-values.yaml", "argocd-values.yaml", "forgejo-values.yaml")


def normalize(cmd: List[str]) -> List[str]:
    """Drop the ``--context`` pair kubectl commands carry so tests can match on the verb."""
    if len(cmd) > 2 and cmd[0] == "kubectl" and cmd[1] == "--context":
        return [cmd[0]] + cmd[3:]
    return list(cmd)


def completed(cmd: List[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


class FakeRunner(CommandRunner):
    """Records every command and answers from scripted responses instead of spawning processes.

    Responses are matched on a command prefix (kubectl's ``--context`` pair is
    ignored); the most recently scripted match wins. Scripting several results
    for one prefix hands them out in order and then repeats the last one.
    ``responder`` is consulted first and may return ``None`` to fall through.
    Unmatched commands succeed with empty output.
    """

    def __init__(self, tools=DEFAULT_REQUIRED_TOOLS) -> None:
        super().__init__(env={}, logger=logging.getLogger("tests.runner"))
        self.installed = set(tools)
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.responses: list = []
        self.responder: Optional[Callable[[List[str]], Optional[subprocess.CompletedProcess]]] = None

    def script(self, *prefix: str, returncode=0, stdout: str = "", stderr: str = "") -> None:
        codes = list(returncode) if isinstance(returncode, (list, tuple)) else [returncode]
        self.responses.append((list(prefix), [(code, stdout, stderr) for code in codes]))

    def run(self, cmd, *, check=True, capture_output=False, stdout=None, input=None):
        self.calls.append(list(cmd))
        self.inputs.append(input)
        result = self._respond(list(cmd))
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, cmd, output=result.stdout, stderr=result.stderr)
        return result

    def _respond(self, cmd: List[str]) -> subprocess.CompletedProcess:
        if self.responder is not None:
            result = self.responder(normalize(cmd))
            if result is not None:
                return result
        key = normalize(cmd)
        for prefix, queue in reversed(self.responses):
            if key[: len(prefix)] == prefix:
                code, out, err = queue.pop(0) if len(queue) > 1 else queue[0]
                return completed(cmd, code, out, err)
        return completed(cmd)

    def has_command(self, name: str) -> bool:
        return name in self.installed

    def ran(self, *prefix: str) -> List[List[str]]:
        return [normalize(cmd) for cmd in self.calls if normalize(cmd)[: len(prefix)] == list(prefix)]


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_package_logger():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def tools(runner: FakeRunner) -> Toolbox:
    return Toolbox.create(runner, context="kind-dev-local")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    configs = root / "configs"
    configs.mkdir(parents=True)
    (configs / "kind-config.yaml").write_text(KIND_CONFIG_TEMPLATE, encoding="utf-8")
    for name in VALUES_FILES:
        (configs / name).write_text("replicaCount: 1\n", encoding="utf-8")
    return root


@pytest.fixture
def config(project: Path, tmp_path: Path) -> DevEnvConfig:
    return DevEnvConfig(project_root=project, kubeconfig=tmp_path / "kubeconfig")
