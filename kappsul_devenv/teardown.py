from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, List, Optional

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.clients import Toolbox, read_kubeconfig_entries
from kappsul_devenv.config import DevEnvConfig
from kappsul_devenv.log import get_logger
from kappsul_devenv.outcome import Outcome, SequenceReport
from kappsul_devenv.sequencer import Sequencer
from kappsul_devenv.stage import Stage


class TeardownScope(str, Enum):
    ALL = "all"
    CLUSTER_ONLY = "cluster-only"
    CONFIG_ONLY = "config-only"
    RESOURCES_ONLY = "resources-only"


# Reverse dependency order: workloads, then the cluster, then local leftovers.
SCOPE_STEPS: Dict[TeardownScope, tuple] = {
    TeardownScope.ALL: ("namespaces", "cluster", "config-backups", "docker-resources", "kubeconfig"),
    TeardownScope.CLUSTER_ONLY: ("cluster", "kubeconfig"),
    TeardownScope.CONFIG_ONLY: ("config-backups", "kubeconfig"),
    TeardownScope.RESOURCES_ONLY: ("docker-resources",),
}


class Teardown:
    """Best-effort cleanup of everything provisioning creates.

    Every step checks whether its target exists first, so running teardown
    twice leaves the same state as running it once. No step is fatal.
    """

    def __init__(
        self,
        config: DevEnvConfig,
        tools: Toolbox,
        *,
        cancel: Optional[CancellationToken] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.tools = tools
        self.cancel = cancel or CancellationToken()
        self.logger = logger or get_logger("teardown")

    def stages_for(self, scope: TeardownScope) -> List[Stage]:
        actions = {
            "namespaces": (self.cleanup_namespaces, "Cleaning up Kubernetes namespaces"),
            "cluster": (self.cleanup_kind_cluster, "Cleaning up Kind cluster"),
            "config-backups": (self.cleanup_config_backups, "Cleaning up configuration backups"),
            "docker-resources": (self.cleanup_docker_resources, "Cleaning up Docker resources"),
            "kubeconfig": (self.cleanup_kubeconfig, "Cleaning up kubeconfig"),
        }
        return [Stage(name, actions[name][0], fatal_on_failure=False, description=actions[name][1]) for name in SCOPE_STEPS[scope]]

    def run(self, scope: TeardownScope = TeardownScope.ALL) -> SequenceReport:
        sequencer = Sequencer(self.stages_for(scope), title=f"teardown ({scope.value})", cancel=self.cancel, logger=self.logger, allow_abort=False)
        return sequencer.run()

    def _missing_tool(self, name: str) -> Optional[Outcome]:
        if self.tools.runner.has_command(name):
            return None
        self.logger.warning(f"[Cleanup] {name} not found, skipping")
        return Outcome.skipped(f"{name} not installed")

    # ------------------------------------------------------------- Steps
    def cleanup_namespaces(self) -> Outcome:
        skipped = self._missing_tool("kubectl")
        if skipped:
            return skipped

        kubectl = self.tools.kubectl
        warnings = []
        for namespace in self.config.namespaces:
            self.cancel.raise_if_cancelled("namespace cleanup")
            if not kubectl.namespace_exists(namespace):
                self.logger.info(f"[Cleanup] Skipping namespace reason=not-found name={namespace}")
                continue
            self.logger.info(f"[Cleanup] Deleting namespace name={namespace}")
            if kubectl.delete_namespace(namespace):
                self.logger.info(f"[Cleanup] ✓ Namespace deleted name={namespace}")
            else:
                self.logger.warning(f"[Cleanup] Failed to delete namespace name={namespace}")
                warnings.append(f"namespace {namespace} not deleted")
        return Outcome.from_warnings(warnings)

    def cleanup_kind_cluster(self) -> Outcome:
        skipped = self._missing_tool("kind")
        if skipped:
            return skipped

        name = self.config.cluster_name
        if not self.tools.kind.cluster_exists(name):
            self.logger.info(f"[Cleanup] Skipping cluster delete reason=cluster-not-found name={name}")
            return Outcome.success("cluster not found")
        self.logger.info(f"[Cleanup] Deleting Kind cluster name={name}")
        if not self.tools.kind.delete_cluster(name):
            return Outcome.degraded(f"failed to delete Kind cluster {name}")
        self.logger.info(f"[Cleanup] ✓ Kind cluster deleted name={name}")
        return Outcome.success()

    def cleanup_config_backups(self) -> Outcome:
        backup = self.config.kind_config_backup_path
        if not backup.exists():
            self.logger.info("[Cleanup] No kind-config backup found")
            return Outcome.success("no backup found")
        backup.replace(self.config.kind_config_path)
        self.logger.info(f"[Cleanup] ✓ Kind configuration restored from backup path={self.config.kind_config_path}")
        return Outcome.success("restored from backup")

    def cleanup_docker_resources(self) -> Outcome:
        skipped = self._missing_tool("docker")
        if skipped:
            return skipped

        docker = self.tools.docker
        name = self.config.cluster_name
        warnings = []

        volumes = docker.volumes(name)
        if not volumes:
            self.logger.info("[Cleanup] No Docker volumes found for cluster")
        elif docker.remove_volumes(volumes):
            self.logger.info(f"[Cleanup] ✓ Docker volumes removed count={len(volumes)}")
        else:
            warnings.append("some Docker volumes were not removed")

        containers = docker.containers(name)
        if not containers:
            self.logger.info("[Cleanup] No stopped containers found")
        elif docker.remove_containers(containers):
            self.logger.info(f"[Cleanup] ✓ Containers removed count={len(containers)}")
        else:
            warnings.append("some containers were not removed")
        return Outcome.from_warnings(warnings)

    def cleanup_kubeconfig(self) -> Outcome:
        kubeconfig = self.config.kubeconfig
        if not kubeconfig.exists():
            self.logger.info(f"[Cleanup] No kubeconfig found path={kubeconfig}")
            return Outcome.success("no kubeconfig")
        skipped = self._missing_tool("kubectl")
        if skipped:
            return skipped

        context = self.config.kube_context
        entries = read_kubeconfig_entries(kubeconfig)
        warnings = []
        for entry in ("context", "cluster", "user"):
            if context not in entries[entry]:
                self.logger.info(f"[Cleanup] Skipping kubeconfig {entry} reason=not-found name={context}")
                continue
            if self.tools.kubectl.kubeconfig_delete(kubeconfig, entry, context):
                self.logger.info(f"[Cleanup] ✓ Removed kubeconfig {entry} name={context}")
            else:
                self.logger.warning(f"[Cleanup] Failed to delete kubeconfig {entry} name={context}")
                warnings.append(f"kubeconfig {entry} {context} not removed")
        return Outcome.from_warnings(warnings)
