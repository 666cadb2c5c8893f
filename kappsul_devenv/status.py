"""Post-hoc probes of the environment, independent of any run log."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import requests

from kappsul_devenv.clients import Toolbox, read_kubeconfig_entries
from kappsul_devenv.config import DevEnvConfig
from kappsul_devenv.log import CHECK, WARN
from kappsul_devenv.services import ACCESS_URLS, SERVICES


@dataclass(frozen=True)
class StatusLine:
    ok: bool
    message: str

    def __str__(self) -> str:
        return f"  {CHECK if self.ok else WARN} {self.message}"


def check_prerequisites(config: DevEnvConfig, tools: Toolbox) -> List[StatusLine]:
    lines = []
    for tool in config.required_tools:
        installed = tools.runner.has_command(tool)
        lines.append(StatusLine(installed, f"{tool} is installed" if installed else f"{tool} is not installed"))
    if tools.runner.has_command("docker") and tools.docker.is_running():
        lines.append(StatusLine(True, "Docker is running"))
    else:
        lines.append(StatusLine(False, "Docker is not running"))
    return lines


class StatusProbe:
    def __init__(self, config: DevEnvConfig, tools: Toolbox, session: Optional[requests.Session] = None, http_timeout: float = 5.0) -> None:
        self.config = config
        self.tools = tools
        self.session = session or requests.Session()
        self.http_timeout = http_timeout

    def cluster_lines(self) -> List[StatusLine]:
        name = self.config.cluster_name
        if not self.tools.runner.has_command("kind"):
            return [StatusLine(False, "Kind not installed")]
        if self.tools.kind.cluster_exists(name):
            return [StatusLine(True, f"Kind cluster '{name}' is running")]
        return [StatusLine(False, f"Kind cluster '{name}' not found")]

    def context_lines(self) -> List[StatusLine]:
        if not self.tools.runner.has_command("kubectl"):
            return [StatusLine(False, "kubectl not installed")]
        current = self.tools.kubectl.current_context() or "none"
        if current == self.config.kube_context:
            return [StatusLine(True, f"Using context: {current}")]
        return [StatusLine(False, f"Current context: {current} (expected: {self.config.kube_context})")]

    def service_lines(self) -> List[StatusLine]:
        if not self.tools.runner.has_command("kubectl"):
            return [StatusLine(False, "Cannot check service status (kubectl not available)")]
        lines = []
        for service in SERVICES:
            namespace = service.namespace
            if not self.tools.kubectl.namespace_exists(namespace):
                lines.append(StatusLine(False, f"{namespace}: Namespace not found"))
                continue
            ready, total = self.tools.kubectl.pod_counts(namespace)
            if total:
                lines.append(StatusLine(ready == total, f"{namespace}: {ready}/{total} pods ready"))
            else:
                lines.append(StatusLine(False, f"{namespace}: No pods found"))
        return lines

    def url_lines(self) -> List[StatusLine]:
        lines = []
        for label, url in ACCESS_URLS:
            try:
                response = self.session.get(url, timeout=self.http_timeout, allow_redirects=True)
            except requests.RequestException as exc:
                lines.append(StatusLine(False, f"{label}: {url} unreachable ({exc.__class__.__name__})"))
                continue
            lines.append(StatusLine(response.status_code < 500, f"{label}: {url} (HTTP {response.status_code})"))
        return lines

    def environment(self) -> List[StatusLine]:
        return self.cluster_lines() + self.context_lines() + self.service_lines() + self.url_lines()

    def cleanup(self) -> List[StatusLine]:
        name = self.config.cluster_name
        lines = []
        if self.tools.runner.has_command("kind") and self.tools.kind.cluster_exists(name):
            lines.append(StatusLine(False, f"Kind cluster '{name}' still exists"))
        else:
            lines.append(StatusLine(True, f"Kind cluster '{name}' removed"))

        if self.tools.runner.has_command("docker") and self.tools.docker.containers(name):
            lines.append(StatusLine(False, "Some Docker containers still exist"))
        else:
            lines.append(StatusLine(True, "Docker containers cleaned"))

        if self.tools.runner.has_command("kubectl") and self.config.kube_context in self._kubeconfig_contexts():
            lines.append(StatusLine(False, "Kind context still exists in kubeconfig"))
        else:
            lines.append(StatusLine(True, "Kubeconfig cleaned"))
        return lines

    def _kubeconfig_contexts(self) -> List[str]:
        return read_kubeconfig_entries(self.config.kubeconfig)["context"]


def access_information() -> List[str]:
    lines = ["Access Information:"]
    lines.extend(f"  {label}: {url}" for label, url in ACCESS_URLS)
    lines.extend(
        [
            "Test Users (password: 'password' for all):",
            "  dev1@local.dev (super-admin)",
            "  dev2@local.dev (admin)",
            "  user1@local.dev",
            "Helm Package Registry:",
            "  helm push mychart-1.0.0.tgz oci://forgejo.localhost/forge --plain-http",
            "  helm registry login forgejo.localhost --username platform-admin --password-stdin --insecure",
        ]
    )
    for service in SERVICES:
        lines.extend(f"  {hint}" for hint in service.hints if "port-forward" in hint)
    return lines
