from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

import yaml

from kappsul_devenv.errors import BootstrapError

DEFAULT_CLUSTER_NAME = "dev-local"
DEFAULT_REQUIRED_TOOLS = ("kind", "kubectl", "helm", "docker", "git", "curl")
DEFAULT_NAMESPACES = ("monitoring", "dex", "ldap", "argocd", "forgejo", "mailpit")
DEFAULT_LOCALHOST_HOSTS = ("dex.localhost", "argocd.localhost", "grafana.localhost", "forgejo.localhost")
INGRESS_NGINX_MANIFEST = "https://raw.githubusercontent.com/kubernetes/ingress-nginx/main/deploy/static/provider/kind/deploy.yaml"
PROJECT_ROOT_PLACEHOLDER = "__PROJECT_ROOT__"


@dataclass(frozen=True)
class DevEnvConfig:
    """Immutable settings for one provisioning or teardown run."""

    project_root: Path
    cluster_name: str = DEFAULT_CLUSTER_NAME
    kubeconfig: Path = field(default_factory=lambda: Path.home() / ".kube" / "config")
    required_tools: Tuple[str, ...] = DEFAULT_REQUIRED_TOOLS
    namespaces: Tuple[str, ...] = DEFAULT_NAMESPACES
    localhost_hosts: Tuple[str, ...] = DEFAULT_LOCALHOST_HOSTS
    ingress_manifest_url: str = INGRESS_NGINX_MANIFEST
    wait_timeout: float = 300.0
    registry_host: str = "forgejo.localhost"
    registry_username: str = "platform-admin"
    registry_password: str = "password"

    @property
    def kube_context(self) -> str:
        return f"kind-{self.cluster_name}"

    @property
    def configs_dir(self) -> Path:
        return self.project_root / "configs"

    @property
    def charts_dir(self) -> Path:
        return self.project_root / "charts" / "setup"

    @property
    def kind_config_path(self) -> Path:
        return self.configs_dir / "kind-config.yaml"

    @property
    def kind_config_backup_path(self) -> Path:
        return self.configs_dir / "kind-config.yaml.bak"

    def values_file(self, name: str) -> Path:
        return self.configs_dir / name

    @classmethod
    def from_environment(cls, project_root: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> "DevEnvConfig":
        environ = os.environ if environ is None else environ

        root = project_root or Path(environ.get("KAPPSUL_PROJECT_ROOT") or Path.cwd())
        root = Path(root).expanduser().resolve()

        cluster_name = load_cluster_name(root / "configs" / "kind-config.yaml") or DEFAULT_CLUSTER_NAME
        cluster_name = environ.get("KAPPSUL_CLUSTER_NAME") or cluster_name

        kubeconfig = environ.get("KUBECONFIG")
        # KUBECONFIG may be a path list; only the first entry is managed.
        kubeconfig_path = Path(kubeconfig.split(os.pathsep)[0]).expanduser() if kubeconfig else Path.home() / ".kube" / "config"

        wait_timeout = environ.get("KAPPSUL_WAIT_TIMEOUT")
        try:
            timeout = float(wait_timeout) if wait_timeout else 300.0
        except ValueError as exc:
            raise BootstrapError(f"[Config] KAPPSUL_WAIT_TIMEOUT must be a number, got {wait_timeout!r}") from exc

        return cls(project_root=root, cluster_name=cluster_name, kubeconfig=kubeconfig_path, wait_timeout=timeout)


def load_cluster_name(kind_config_path: Path) -> Optional[str]:
    if not kind_config_path.exists():
        return None

    with kind_config_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise BootstrapError(f"[Config] Kind config {kind_config_path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise BootstrapError(f"[Config] {kind_config_path} must be a YAML map")
    name = data.get("name")
    return str(name) if name else None
