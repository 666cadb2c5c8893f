from __future__ import annotations

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Collection, List, Optional

import yaml

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.clients import Toolbox
from kappsul_devenv.config import PROJECT_ROOT_PLACEHOLDER, DevEnvConfig
from kappsul_devenv.errors import AlreadySatisfied, BootstrapError, NotReadyTimeout, PreconditionMissing
from kappsul_devenv.log import get_logger
from kappsul_devenv.outcome import Outcome, OutcomeStatus, SequenceReport
from kappsul_devenv.readiness import CompoundReadinessCheck, Condition, ReadinessCheck, await_condition
from kappsul_devenv.retry import RetryPolicy, retry
from kappsul_devenv.sequencer import Sequencer
from kappsul_devenv.services import ARGOCD, DEX, FORGEJO, OPENLDAP, PROMETHEUS, HelmService, WorkloadWait
from kappsul_devenv.stage import Stage

INGRESS_NAMESPACE = "ingress-nginx"
INGRESS_CONTROLLER = "ingress-nginx-controller"
ADMISSION_SERVICE = "ingress-nginx-controller-admission"
ADMISSION_WEBHOOK = "ingress-nginx-admission"
CONTROLLER_SELECTOR = "app.kubernetes.io/name=ingress-nginx,app.kubernetes.io/component=controller"

STAGE_NAMES = ("prerequisites", "kind-config", "cluster", "ingress-nginx", "coredns", "openldap", "dex", "prometheus", "argocd", "forgejo")

COREFILE_TEMPLATE = """.:53 {{
    errors
    health {{
        lameduck 5s
    }}
    ready
    kubernetes cluster.local in-addr.arpa ip6.arpa {{
        pods insecure
        fallthrough in-addr.arpa ip6.arpa
        ttl 30
    }}
    hosts {{
{hosts}
        fallthrough
    }}
    prometheus :9153
    forward . /etc/resolv.conf {{
        max_concurrent 1000
    }}
    cache 30
    loop
    reload
    loadbalance
}}
"""


@dataclass(frozen=True)
class ProvisionTimings:
    """Poll intervals and settle delays, in seconds."""

    poll_interval: float = 5.0
    webhook_timeout: float = 300.0
    webhook_condition_timeout: float = 15.0
    webhook_probe_interval: float = 10.0
    webhook_settle: float = 15.0
    ingress_ip_timeout: float = 150.0
    dns_settle: float = 10.0


def build_corefile(ingress_ip: str, hosts: Collection[str]) -> str:
    entries = "\n".join(f"        {ingress_ip} {host}" for host in hosts)
    return COREFILE_TEMPLATE.format(hosts=entries)


class Provisioner:
    """Builds and runs the ordered provisioning stages for the local cluster."""

    def __init__(
        self,
        config: DevEnvConfig,
        tools: Toolbox,
        *,
        recreate: bool = False,
        skip: Collection[str] = (),
        timings: ProvisionTimings = ProvisionTimings(),
        cancel: Optional[CancellationToken] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.tools = tools
        self.recreate = recreate
        self.skip = set(skip)
        self.timings = timings
        self.cancel = cancel or CancellationToken()
        self.clock = clock
        self.sleep = sleep or self.cancel.sleep
        self.logger = logger or get_logger("provision")
        self._temp_dir = tempfile.TemporaryDirectory(prefix="kappsul-")

    def __enter__(self) -> "Provisioner":
        return self

    def __exit__(self, exc_type, exc, traceback) -> bool:
        self.cleanup()
        return False

    def cleanup(self) -> None:
        self._temp_dir.cleanup()

    # --------------------------------------------------------- Execution flow
    def stages(self) -> List[Stage]:
        stages = [
            Stage("prerequisites", self.check_prerequisites, description="Checking prerequisites"),
            Stage("kind-config", self.render_kind_config, depends_on=("prerequisites",), description="Verifying Kind cluster configuration"),
            Stage("cluster", self.create_cluster, depends_on=("kind-config",), description="Creating Kind cluster"),
            Stage("ingress-nginx", self.install_ingress_nginx, depends_on=("cluster",), description="Installing Ingress NGINX"),
            Stage("coredns", self.configure_localhost_dns, depends_on=("ingress-nginx",), description="Configuring CoreDNS for .localhost resolution"),
            # LDAP before OIDC: the Dex connector config references directory groups.
            Stage("openldap", self._service_action(OPENLDAP), depends_on=("coredns",), description="Setting up OpenLDAP"),
            Stage("dex", self._service_action(DEX), depends_on=("openldap", "ingress-nginx"), description="Setting up Dex OIDC"),
            Stage("prometheus", self._service_action(PROMETHEUS), fatal_on_failure=False, depends_on=("dex",), description="Setting up Prometheus monitoring stack"),
            Stage("argocd", self._service_action(ARGOCD), fatal_on_failure=False, depends_on=("dex",), description="Setting up ArgoCD"),
            Stage("forgejo", self._service_action(FORGEJO), fatal_on_failure=False, depends_on=("dex",), description="Setting up Forgejo"),
        ]
        return [self._apply_skip(stage) for stage in stages]

    def run(self) -> SequenceReport:
        sequencer = Sequencer(self.stages(), title="provisioning", cancel=self.cancel, logger=self.logger)
        return sequencer.run()

    def _apply_skip(self, stage: Stage) -> Stage:
        if stage.name not in self.skip:
            return stage
        return Stage(stage.name, stage.action, stage.fatal_on_failure, stage.depends_on, stage.description, enabled=False)

    def _service_action(self, service: HelmService) -> Callable[[], Outcome]:
        return lambda: self.install_service(service)

    def _retry(self, action: Callable[[], object], name: str, policy: RetryPolicy = RetryPolicy(), on_retry=None) -> Outcome:
        return retry(action, policy, name=name, sleep=self.sleep, cancel=self.cancel, on_retry=on_retry, logger=self.logger)

    def make_temp_file(self, suffix: str = ".yaml") -> Path:
        temp_dir_path = Path(self._temp_dir.name)
        fd, path = tempfile.mkstemp(prefix="tmp-", suffix=suffix, dir=temp_dir_path)
        os.close(fd)
        return Path(path)

    # ---------------------------------------------------- Prerequisites
    def check_prerequisites(self) -> Outcome:
        missing = [tool for tool in self.config.required_tools if not self.tools.runner.has_command(tool)]
        if missing:
            raise PreconditionMissing(f"[Deps] Missing required tools: {' '.join(missing)}")
        for tool in self.config.required_tools:
            self.logger.info(f"[Deps] ✓ {tool} is installed")

        if not self.tools.docker.is_running():
            raise PreconditionMissing("[Docker] Docker is not running; start the Docker daemon first")
        self.logger.info("[Docker] ✓ Docker is running")

        if self.tools.kind.cluster_exists(self.config.cluster_name):
            if not self.recreate:
                self.logger.warning(f"[Cluster] Reusing existing cluster name={self.config.cluster_name} hint=pass-recreate-to-rebuild")
                return Outcome.success("existing cluster reused")
            self.logger.info(f"[Cluster] Deleting existing cluster name={self.config.cluster_name} reason=recreate")
            if not self.tools.kind.delete_cluster(self.config.cluster_name):
                raise BootstrapError(f"[Cluster] Failed to delete existing cluster name={self.config.cluster_name}")
        return Outcome.success()

    # ---------------------------------------------------- Kind cluster
    def render_kind_config(self) -> Outcome:
        path = self.config.kind_config_path
        if not path.exists():
            raise PreconditionMissing(f"[Config] Kind configuration not found at {path}")

        template = path.read_text(encoding="utf-8")
        if PROJECT_ROOT_PLACEHOLDER not in template:
            raise AlreadySatisfied("kind config has no placeholders left")

        rendered = template.replace(PROJECT_ROOT_PLACEHOLDER, str(self.config.project_root))
        try:
            config = yaml.safe_load(rendered)
        except yaml.YAMLError as exc:
            raise PreconditionMissing(f"[Config] {path} is not valid YAML: {exc}") from exc
        if not isinstance(config, dict):
            raise PreconditionMissing(f"[Config] {path} must be a YAML map")

        backup = self.config.kind_config_backup_path
        if not backup.exists():
            backup.write_text(template, encoding="utf-8")
        path.write_text(rendered, encoding="utf-8")
        self.logger.info(f"[Config] ✓ Kind configuration variables updated path={path} backup={backup.name}")
        return Outcome.success()

    def create_cluster(self) -> Outcome:
        name = self.config.cluster_name
        kind = self.tools.kind
        if kind.cluster_exists(name):
            self.logger.info(f"[Cluster] Skipping create reason=cluster-exists name={name}")
        else:
            self.logger.info(f"[Cluster] Creating Kind cluster name={name} config={self.config.kind_config_path}")
            outcome = self._retry(lambda: kind.create_cluster(self.config.kind_config_path, name), name="kind create cluster")
            if not outcome.ok:
                return outcome
            self.logger.info(f"[Cluster] ✓ Kind cluster created name={name}")

        self.logger.info(f"[Cluster] Verifying cluster access context={self.config.kube_context}")
        return self._retry(self.tools.kubectl.cluster_info, name="kubectl cluster-info")

    # ---------------------------------------------------- Ingress
    def install_ingress_nginx(self) -> Outcome:
        kubectl = self.tools.kubectl
        self.logger.info("[Ingress] Deploying Ingress NGINX controller")
        outcome = self._retry(lambda: kubectl.apply_url(self.config.ingress_manifest_url), name="apply ingress-nginx manifest")
        if not outcome.ok:
            return outcome

        self.logger.info(f"[Ingress] Waiting for deployment name={INGRESS_CONTROLLER}")
        if not kubectl.wait_for_condition("deployment", INGRESS_CONTROLLER, "available", namespace=INGRESS_NAMESPACE, timeout=self.config.wait_timeout):
            raise NotReadyTimeout(f"[Ingress] Deployment {INGRESS_CONTROLLER} not available after {self.config.wait_timeout:g}s")

        self.logger.info("[Ingress] Waiting for admission webhook")
        if not self.admission_webhook_check().wait():
            return Outcome.degraded("admission webhook may not be fully ready; retry the dex stage if it fails on webhook calls")
        self.logger.info("[Ingress] ✓ Admission webhook is ready")
        return Outcome.success()

    def admission_webhook_check(self) -> CompoundReadinessCheck:
        kubectl = self.tools.kubectl

        def controller_running() -> bool:
            phases = kubectl.jsonpath("pods", "", "{.items[*].status.phase}", namespace=INGRESS_NAMESPACE, selector=CONTROLLER_SELECTOR)
            return "Running" in phases.split()

        def has_endpoints() -> bool:
            return bool(kubectl.jsonpath("endpoints", ADMISSION_SERVICE, "{.subsets[*].addresses[*].ip}", namespace=INGRESS_NAMESPACE))

        def probe() -> bool:
            host = f"{ADMISSION_SERVICE}.{INGRESS_NAMESPACE}.svc.cluster.local"
            return kubectl.exec_in(INGRESS_NAMESPACE, f"deployment/{INGRESS_CONTROLLER}", ["nc", "-z", host, "443"])

        def diagnostics() -> None:
            self.logger.warning("[Ingress] Admission webhook not ready; current state follows")
            self.logger.warning(kubectl.dump("get", "pods", "-n", INGRESS_NAMESPACE, "-o", "wide") or "(no pods)")
            self.logger.warning(kubectl.dump("get", "endpoints", "-n", INGRESS_NAMESPACE, ADMISSION_SERVICE) or "(no endpoints)")

        return CompoundReadinessCheck(
            [
                Condition("validating webhook configuration", lambda: kubectl.resource_exists("validatingwebhookconfiguration", ADMISSION_WEBHOOK)),
                Condition("admission service", lambda: kubectl.resource_exists("service", ADMISSION_SERVICE, INGRESS_NAMESPACE)),
                Condition("controller pod running", controller_running),
                Condition("admission endpoints", has_endpoints),
            ],
            probe,
            timeout=self.timings.webhook_timeout,
            poll_interval=self.timings.poll_interval,
            condition_timeout=self.timings.webhook_condition_timeout,
            probe_interval=self.timings.webhook_probe_interval,
            settle=self.timings.webhook_settle,
            description="ingress admission webhook",
            on_timeout=diagnostics,
            clock=self.clock,
            sleep=self.sleep,
            cancel=self.cancel,
            logger=self.logger,
        )

    # ---------------------------------------------------- CoreDNS
    def configure_localhost_dns(self) -> Outcome:
        kubectl = self.tools.kubectl
        found = {}

        def ingress_ip_assigned() -> bool:
            ip = kubectl.jsonpath("svc", INGRESS_CONTROLLER, "{.spec.clusterIP}", namespace=INGRESS_NAMESPACE)
            if ip and ip != "None":
                found["ip"] = ip
                return True
            return False

        ready = await_condition(
            ingress_ip_assigned,
            self.timings.poll_interval,
            self.timings.ingress_ip_timeout,
            description="ingress controller ClusterIP",
            clock=self.clock,
            sleep=self.sleep,
            cancel=self.cancel,
            logger=self.logger,
        )
        if not ready:
            raise NotReadyTimeout(f"[DNS] Could not get ingress controller ClusterIP after {self.timings.ingress_ip_timeout:g}s")
        ingress_ip = found["ip"]
        self.logger.info(f"[DNS] Ingress controller ClusterIP ip={ingress_ip}")

        patch_file = self.make_temp_file(suffix=".yaml")
        with patch_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump({"data": {"Corefile": build_corefile(ingress_ip, self.config.localhost_hosts)}}, handle, sort_keys=False)

        self.logger.info("[DNS] Patching CoreDNS to resolve .localhost domains via the ingress controller")
        outcome = self._retry(lambda: kubectl.patch_configmap("coredns", "kube-system", patch_file), name="patch coredns configmap")
        if not outcome.ok:
            return outcome

        self.logger.info("[DNS] Restarting CoreDNS deployment")
        kubectl.rollout_restart("coredns", "kube-system")
        if not kubectl.rollout_status("coredns", "kube-system", timeout=self.config.wait_timeout):
            return Outcome.failure("coredns rollout did not complete")

        self.logger.info(f"[DNS] Waiting {self.timings.dns_settle:g}s for DNS configuration to propagate")
        self.sleep(self.timings.dns_settle)
        self.logger.info(f"[DNS] ✓ CoreDNS resolves .localhost domains via ingress ip={ingress_ip}")
        return Outcome.success()

    # ---------------------------------------------------- Helm services
    def install_service(self, service: HelmService) -> Outcome:
        kubectl = self.tools.kubectl
        helm = self.tools.helm

        values_file = self.config.values_file(service.values_file)
        if not values_file.exists():
            raise PreconditionMissing(f"[Config] {service.name} configuration not found at {values_file}")

        chart = helm.resolve_chart(service, self.config.charts_dir)
        if not chart.local and service.repo_name and service.repo_url:
            outcome = self._retry(lambda: helm.add_repo(service.repo_name, service.repo_url), name=f"helm repo add {service.repo_name}")
            if not outcome.ok:
                return outcome
            outcome = self._retry(helm.update_repos, name="helm repo update")
            if not outcome.ok:
                return outcome

        if kubectl.ensure_namespace(service.namespace):
            self.logger.info(f"[Kubernetes] Created namespace name={service.namespace}")
        else:
            self.logger.info(f"[Kubernetes] Namespace already exists name={service.namespace}")

        self.logger.info(f"[Helm] Installing release={service.release} namespace={service.namespace} timeout={service.install_timeout}")
        outcome = self._retry(
            lambda: helm.install_or_upgrade(service.release, chart.ref, values_file, service.namespace, service.install_timeout),
            name=f"helm upgrade --install {service.release}",
            policy=service.install_policy,
            on_retry=self._report_webhook_state if service is DEX else None,
        )
        if not outcome.ok:
            return outcome

        warnings = []
        for wait in service.waits:
            result = self.wait_for_workload(service.namespace, wait)
            if result.status is OutcomeStatus.FAILURE:
                return result
            if not result.ok:
                warnings.append(result.reason)
                for hint in service.hints:
                    self.logger.info(f"[{service.name}] {hint}")

        if service.settle_seconds:
            self.logger.info(f"[Helm] Waiting {service.settle_seconds:g}s for {service.name} services to settle")
            self.sleep(service.settle_seconds)

        if service is FORGEJO:
            warnings.extend(self.login_forgejo_registry())

        self.logger.info(f"[Helm] ✓ {service.name} installed and configured")
        return Outcome.from_warnings(warnings)

    def wait_for_workload(self, namespace: str, wait: WorkloadWait) -> Outcome:
        kubectl = self.tools.kubectl
        if wait.kind == "deployment":
            predicate = lambda: kubectl.get_deployment_status(wait.target, namespace).available  # noqa: E731
        else:
            predicate = lambda: kubectl.pods_ready(wait.target, namespace)  # noqa: E731

        def diagnostics() -> None:
            self.logger.warning(f"[Readiness] Pod status namespace={namespace}")
            self.logger.warning(kubectl.dump("get", "pods", "-n", namespace, "-o", "wide") or "(no pods)")
            events = kubectl.recent_events(namespace)
            if events:
                self.logger.warning("[Readiness] Recent events\n" + "\n".join(events))

        self.logger.info(f"[Readiness] Waiting for {wait.label} namespace={namespace}")
        check = ReadinessCheck(
            predicate,
            poll_interval=self.timings.poll_interval,
            timeout=self.config.wait_timeout,
            on_timeout=wait.on_timeout,
            description=wait.label,
            diagnostics=diagnostics,
        )
        return check.wait(clock=self.clock, sleep=self.sleep, cancel=self.cancel, logger=self.logger)

    def _report_webhook_state(self, attempt: int, delay: float) -> None:
        if not self.tools.kubectl.resource_exists("validatingwebhookconfiguration", ADMISSION_WEBHOOK):
            self.logger.warning("[Ingress] Admission webhook configuration not found; webhook may not be ready")
        else:
            self.logger.warning(f"[Helm] Install attempt {attempt} failed (likely webhook timing)")

    def login_forgejo_registry(self) -> List[str]:
        if not self.tools.runner.has_command("helm"):
            return ["helm not found; skipped registry login"]
        self.logger.info(f"[Helm] Logging in to registry host={self.config.registry_host}")
        if self.tools.helm.registry_login(self.config.registry_host, self.config.registry_username, self.config.registry_password):
            self.logger.info("[Helm] ✓ Registry login successful")
            return []
        self.logger.warning("[Helm] Registry login failed; log in manually")
        return ["helm registry login failed"]
