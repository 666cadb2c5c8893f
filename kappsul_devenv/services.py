"""Catalogue of the Helm-installed services that make up the dev environment."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from kappsul_devenv.readiness import OnTimeout
from kappsul_devenv.retry import RetryPolicy


@dataclass(frozen=True)
class WorkloadWait:
    """One readiness wait after a release is installed.

    ``kind`` is ``deployment`` (waits for condition Available on the named
    deployment) or ``pods`` (waits for condition Ready on pods matching
    ``selector``).
    """

    kind: str
    target: str
    label: str
    on_timeout: OnTimeout = OnTimeout.WARN


@dataclass(frozen=True)
class HelmService:
    name: str
    release: str
    namespace: str
    values_file: str
    chart_prefix: str
    remote_chart: str
    repo_name: Optional[str] = None
    repo_url: Optional[str] = None
    install_timeout: str = "5m"
    install_policy: RetryPolicy = field(default_factory=RetryPolicy)
    waits: Tuple[WorkloadWait, ...] = ()
    settle_seconds: float = 0.0
    hints: Tuple[str, ...] = ()

    @property
    def local_chart_glob(self) -> str:
        return f"{self.chart_prefix}-*.tgz"


OPENLDAP = HelmService(
    name="openldap",
    release="openldap",
    namespace="ldap",
    values_file="openldap-values.yaml",
    chart_prefix="openldap",
    remote_chart="helm-openldap/openldap",
    repo_name="helm-openldap",
    repo_url="https://jp-gouin.github.io/helm-openldap",
    waits=(WorkloadWait("pods", "app=openldap", "OpenLDAP statefulset"),),
    hints=(
        "Check OpenLDAP pod status: kubectl get pods -n ldap",
        "Check OpenLDAP logs: kubectl logs -n ldap openldap-0",
    ),
)

DEX = HelmService(
    name="dex",
    release="dex",
    namespace="dex",
    values_file="dex-values.yaml",
    chart_prefix="dex",
    remote_chart="dex/dex",
    repo_name="dex",
    repo_url="https://charts.dexidp.io",
    install_policy=RetryPolicy(max_attempts=5, initial_delay=10.0, backoff_multiplier=1.0),
    waits=(WorkloadWait("deployment", "dex", "Dex deployment", OnTimeout.FAIL),),
)

PROMETHEUS = HelmService(
    name="prometheus",
    release="prometheus",
    namespace="monitoring",
    values_file="prometheus-values.yaml",
    chart_prefix="kube-prometheus-stack",
    remote_chart="prometheus-community/kube-prometheus-stack",
    repo_name="prometheus-community",
    repo_url="https://prometheus-community.github.io/helm-charts",
    install_timeout="15m",
    waits=(
        WorkloadWait("deployment", "prometheus-kube-prometheus-prometheus-operator", "Prometheus operator"),
        WorkloadWait("pods", "app.kubernetes.io/name=prometheus", "Prometheus server"),
        WorkloadWait("deployment", "prometheus-grafana", "Grafana"),
    ),
    hints=(
        "Prometheus UI: kubectl port-forward -n monitoring svc/prometheus-kube-prometheus-prometheus 9090:9090",
        "AlertManager UI: kubectl port-forward -n monitoring svc/prometheus-kube-prometheus-alertmanager 9093:9093",
    ),
)

ARGOCD = HelmService(
    name="argocd",
    release="argocd",
    namespace="argocd",
    values_file="argocd-values.yaml",
    chart_prefix="argo-cd",
    remote_chart="argo/argo-cd",
    repo_name="argo",
    repo_url="https://argoproj.github.io/argo-helm",
    install_timeout="10m",
    waits=(
        WorkloadWait("deployment", "argocd-server", "ArgoCD server"),
        WorkloadWait("deployment", "argocd-application-controller", "ArgoCD application controller"),
        WorkloadWait("deployment", "argocd-repo-server", "ArgoCD repo server"),
    ),
    hints=(
        "CLI Login: argocd login argocd.localhost --sso",
        "Port-forward: kubectl port-forward -n argocd svc/argocd-server 8080:80",
    ),
)

FORGEJO = HelmService(
    name="forgejo",
    release="forgejo",
    namespace="forgejo",
    values_file="forgejo-values.yaml",
    chart_prefix="forgejo",
    remote_chart="oci://code.forgejo.org/forgejo-helm/forgejo",
    install_timeout="10m",
    waits=(
        WorkloadWait("deployment", "forgejo", "Forgejo deployment"),
        WorkloadWait("deployment", "forgejo-postgresql", "Forgejo PostgreSQL"),
    ),
    settle_seconds=30.0,
    hints=("Direct access: kubectl port-forward -n forgejo svc/forgejo 3000:3000",),
)

SERVICES: Tuple[HelmService, ...] = (OPENLDAP, DEX, PROMETHEUS, ARGOCD, FORGEJO)

ACCESS_URLS: Tuple[Tuple[str, str], ...] = (
    ("OIDC Discovery", "http://dex.localhost/.well-known/openid-configuration"),
    ("Grafana Dashboard", "http://grafana.localhost"),
    ("ArgoCD", "http://argocd.localhost"),
    ("Forgejo", "http://forgejo.localhost"),
)
