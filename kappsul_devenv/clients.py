from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from kappsul_devenv.commands import CommandRunner
from kappsul_devenv.errors import TransientExternalError
from kappsul_devenv.log import get_logger
from kappsul_devenv.services import HelmService


# ------------------------------------------------------------- Kind
class KindClient:
    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def list_clusters(self) -> List[str]:
        output = self.runner.run(["kind", "get", "clusters"], check=False, capture_output=True).stdout or ""
        return [line.strip() for line in output.splitlines() if line.strip()]

    def cluster_exists(self, name: str) -> bool:
        return name in self.list_clusters()

    def create_cluster(self, config_path: Path, name: str) -> bool:
        return self.runner.run(["kind", "create", "cluster", "--name", name, "--config", str(config_path)], check=False).returncode == 0

    def delete_cluster(self, name: str) -> bool:
        return self.runner.run(["kind", "delete", "cluster", "--name", name], check=False).returncode == 0


# ------------------------------------------------------------- kubectl
@dataclass(frozen=True)
class DeploymentStatus:
    available: bool
    count: int


class KubectlClient:
    def __init__(self, runner: CommandRunner, context: Optional[str] = None) -> None:
        self.runner = runner
        self.context = context

    def _cmd(self, *args: str) -> List[str]:
        cmd = ["kubectl"]
        if self.context:
            cmd.extend(["--context", self.context])
        cmd.extend(args)
        return cmd

    def resource_exists(self, kind: str, name: str, namespace: Optional[str] = None) -> bool:
        args = ["get", kind, name]
        if namespace:
            args.extend(["-n", namespace])
        return self.runner.succeeds(self._cmd(*args))

    def jsonpath(self, kind: str, name: str, path: str, namespace: Optional[str] = None, selector: Optional[str] = None) -> str:
        args = ["get", kind]
        if selector:
            args.extend(["-l", selector])
        else:
            args.append(name)
        if namespace:
            args.extend(["-n", namespace])
        args.extend(["-o", f"jsonpath={path}"])
        return self.runner.output(self._cmd(*args))

    def get_deployment_status(self, name: str, namespace: str) -> DeploymentStatus:
        raw = self.runner.output(self._cmd("get", "deployment", name, "-n", namespace, "-o", "json"))
        if not raw:
            return DeploymentStatus(available=False, count=0)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return DeploymentStatus(available=False, count=0)

        status = data.get("status") or {}
        available = any(
            condition.get("type") == "Available" and condition.get("status") == "True"
            for condition in status.get("conditions") or []
        )
        return DeploymentStatus(available=available, count=int(status.get("availableReplicas") or 0))

    def pods_ready(self, selector: str, namespace: str) -> bool:
        """At least one pod matches ``selector`` and every match reports Ready."""
        statuses = self.jsonpath("pods", "", '{.items[*].status.conditions[?(@.type=="Ready")].status}', namespace=namespace, selector=selector)
        values = statuses.split()
        return bool(values) and all(value == "True" for value in values)

    def wait_for_condition(self, kind: str, selector: str, condition: str, *, namespace: Optional[str] = None, timeout: float = 300) -> bool:
        """Block on ``kubectl wait``; ``selector`` is either a name or a ``-l`` label selector."""
        args = ["wait", f"--for=condition={condition}", f"--timeout={int(timeout)}s"]
        if "=" in selector:
            args.extend([kind, "-l", selector])
        else:
            args.append(f"{kind}/{selector}")
        if namespace:
            args.extend(["-n", namespace])
        return self.runner.run(self._cmd(*args), check=False).returncode == 0

    def apply_url(self, url: str) -> bool:
        return self.runner.run(self._cmd("apply", "-f", url), check=False).returncode == 0

    def cluster_info(self) -> None:
        result = self.runner.run(self._cmd("cluster-info"), check=False, capture_output=True)
        if result.returncode != 0:
            raise TransientExternalError(f"[Cluster] API server not reachable context={self.context}: {(result.stderr or '').strip()}")

    def exec_in(self, namespace: str, target: str, command: List[str]) -> bool:
        return self.runner.succeeds(self._cmd("exec", "-n", namespace, target, "--", *command))

    # -------------------------------------------------- Namespaces
    def namespace_exists(self, namespace: str) -> bool:
        return self.runner.succeeds(self._cmd("get", "namespace", namespace))

    def ensure_namespace(self, namespace: str) -> bool:
        """Create ``namespace`` when missing; returns True when it was created."""
        if self.namespace_exists(namespace):
            return False
        self.runner.run(self._cmd("create", "namespace", namespace))
        return True

    def delete_namespace(self, namespace: str, timeout: str = "120s") -> bool:
        result = self.runner.run(
            self._cmd("delete", "namespace", namespace, f"--timeout={timeout}", "--ignore-not-found=true"),
            check=False,
        )
        return result.returncode == 0

    def pod_counts(self, namespace: str) -> Tuple[int, int]:
        """``(ready, total)`` where ready counts pods Running or Completed."""
        output = self.runner.output(self._cmd("get", "pods", "-n", namespace, "--no-headers"))
        lines = [line for line in output.splitlines() if line.strip()]
        ready = sum(1 for line in lines if "Running" in line or "Completed" in line)
        return ready, len(lines)

    # -------------------------------------------------- Configmaps & rollouts
    def patch_configmap(self, name: str, namespace: str, patch_file: Path) -> bool:
        result = self.runner.run(self._cmd("patch", "configmap", name, "-n", namespace, "--patch-file", str(patch_file)), check=False)
        return result.returncode == 0

    def rollout_restart(self, deployment: str, namespace: str) -> None:
        self.runner.run(self._cmd("rollout", "restart", "deployment", deployment, "-n", namespace))

    def rollout_status(self, deployment: str, namespace: str, timeout: float = 300) -> bool:
        result = self.runner.run(self._cmd("rollout", "status", "deployment", deployment, "-n", namespace, f"--timeout={int(timeout)}s"), check=False)
        return result.returncode == 0

    # -------------------------------------------------- Diagnostics
    def dump(self, *args: str) -> str:
        return self.runner.output(self._cmd(*args))

    def recent_events(self, namespace: str, limit: int = 10) -> List[str]:
        output = self.runner.output(self._cmd("get", "events", "-n", namespace, "--sort-by=.lastTimestamp"))
        return output.splitlines()[-limit:]

    # -------------------------------------------------- Kubeconfig
    def current_context(self) -> str:
        return self.runner.output(["kubectl", "config", "current-context"])

    def kubeconfig_delete(self, kubeconfig: Path, entry: str, name: str) -> bool:
        """``entry`` is one of ``context``, ``cluster`` or ``user``."""
        return self.runner.succeeds(["kubectl", "config", f"delete-{entry}", name, "--kubeconfig", str(kubeconfig)])


# ------------------------------------------------------------- Helm
@dataclass(frozen=True)
class ChartRef:
    ref: str
    local: bool

    def __str__(self) -> str:
        return self.ref


class HelmClient:
    def __init__(self, runner: CommandRunner, logger: Optional[logging.Logger] = None) -> None:
        self.runner = runner
        self.logger = logger or get_logger("helm")

    @staticmethod
    def local_chart(service: HelmService, charts_dir: Path) -> Optional[Path]:
        if not charts_dir.is_dir():
            return None
        candidates = sorted(charts_dir.glob(service.local_chart_glob))
        return candidates[0] if candidates else None

    def resolve_chart(self, service: HelmService, charts_dir: Path) -> ChartRef:
        """Packaged chart under ``charts_dir`` if present, otherwise the remote reference."""
        local = self.local_chart(service, charts_dir)
        if local is not None:
            self.logger.info(f"[Helm] Using local chart release={service.release} chart={local}")
            return ChartRef(ref=str(local), local=True)
        self.logger.info(f"[Helm] Using remote chart release={service.release} chart={service.remote_chart}")
        return ChartRef(ref=service.remote_chart, local=False)

    def add_repo(self, name: str, url: str) -> bool:
        return self.runner.run(["helm", "repo", "add", name, url, "--force-update"], check=False).returncode == 0

    def update_repos(self) -> bool:
        return self.runner.run(["helm", "repo", "update"], check=False).returncode == 0

    def install_or_upgrade(self, release: str, chart_ref: str, values_file: Path, namespace: str, timeout: str = "5m") -> bool:
        cmd = [
            "helm",
            "upgrade",
            "--install",
            release,
            chart_ref,
            "-n",
            namespace,
            "--values",
            str(values_file),
            "--timeout",
            timeout,
        ]
        return self.runner.run(cmd, check=False).returncode == 0

    def registry_login(self, host: str, username: str, password: str) -> bool:
        return self.runner.run(
            ["helm", "registry", "login", host, "--username", username, "--password-stdin", "--insecure"],
            check=False,
            capture_output=True,
            input=password,
        ).returncode == 0


# ------------------------------------------------------------- Docker
class DockerClient:
    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner

    def is_running(self) -> bool:
        return self.runner.succeeds(["docker", "info"])

    def volumes(self, name_filter: str) -> List[str]:
        return self.runner.output(["docker", "volume", "ls", "-q", "-f", f"name={name_filter}"]).split()

    def containers(self, name_filter: str) -> List[str]:
        return self.runner.output(["docker", "ps", "-a", "-q", "-f", f"name={name_filter}"]).split()

    def remove_volumes(self, volumes: List[str]) -> bool:
        if not volumes:
            return True
        return self.runner.run(["docker", "volume", "rm", *volumes], check=False).returncode == 0

    def remove_containers(self, containers: List[str]) -> bool:
        if not containers:
            return True
        return self.runner.run(["docker", "rm", "-f", *containers], check=False).returncode == 0


@dataclass
class Toolbox:
    """The set of tool clients a run talks to, bound to one command runner."""

    runner: CommandRunner
    kind: KindClient
    kubectl: KubectlClient
    helm: HelmClient
    docker: DockerClient

    @classmethod
    def create(cls, runner: CommandRunner, context: Optional[str] = None) -> "Toolbox":
        return cls(
            runner=runner,
            kind=KindClient(runner),
            kubectl=KubectlClient(runner, context=context),
            helm=HelmClient(runner),
            docker=DockerClient(runner),
        )


def read_kubeconfig_entries(kubeconfig: Path) -> Dict[str, List[str]]:
    """Names of the contexts, clusters and users defined in a kubeconfig file.

    An unreadable or malformed file yields no entries; sections that are not
    lists and items that are not maps are ignored.
    """
    entries: Dict[str, List[str]] = {"context": [], "cluster": [], "user": []}
    if not kubeconfig.exists():
        return entries
    try:
        with kubeconfig.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except (UnicodeDecodeError, yaml.YAMLError):
        return entries
    if not isinstance(data, dict):
        return entries

    for entry, section in (("context", "contexts"), ("cluster", "clusters"), ("user", "users")):
        items = data.get(section)
        if not isinstance(items, list):
            continue
        entries[entry] = [str(item["name"]) for item in items if isinstance(item, dict) and item.get("name")]
    return entries
