import pytest
import yaml

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.outcome import OutcomeStatus, RunState
from kappsul_devenv.teardown import SCOPE_STEPS, Teardown, TeardownScope

KUBECONFIG = {
    "apiVersion": "v1",
    "kind": "Config",
    "contexts": [{"name": "kind-dev-local"}, {"name": "prod"}],
    "clusters": [{"name": "kind-dev-local"}, {"name": "prod"}],
    "users": [{"name": "kind-dev-local"}],
}


@pytest.fixture
def clean_host(runner):
    """Nothing left from a previous run: no cluster, namespaces, volumes or containers."""
    runner.script("kind", "get", "clusters", stdout="")
    runner.script("kubectl", "get", "namespace", returncode=1)
    return runner


@pytest.fixture
def leftovers(runner, config):
    runner.script("kind", "get", "clusters", stdout="dev-local\nother\n")
    runner.script("docker", "volume", "ls", stdout="vol-a\nvol-b\n")
    runner.script("docker", "ps", stdout="c1\n")
    config.kubeconfig.write_text(yaml.safe_dump(KUBECONFIG), encoding="utf-8")
    return runner


def destructive(runner):
    return (
        runner.ran("kubectl", "delete")
        + runner.ran("kind", "delete")
        + runner.ran("docker", "volume", "rm")
        + runner.ran("docker", "rm")
        + runner.ran("kubectl", "config")
    )


@pytest.mark.parametrize("scope", list(TeardownScope))
def test_stages_follow_scope(config, tools, scope):
    stages = Teardown(config, tools).stages_for(scope)

    assert tuple(stage.name for stage in stages) == SCOPE_STEPS[scope]
    assert not any(stage.fatal_on_failure for stage in stages)


def test_clean_host_is_a_no_op(config, tools, clean_host):
    report = Teardown(config, tools).run()

    assert report.state is RunState.COMPLETED
    assert all(outcome.ok for _, outcome in report.entries)
    assert destructive(clean_host) == []


def test_teardown_twice_is_idempotent(config, tools, clean_host):
    first = Teardown(config, tools).run()
    second = Teardown(config, tools).run()

    assert first.entries == second.entries


def test_full_teardown_removes_leftovers(config, tools, leftovers):
    report = Teardown(config, tools).run(TeardownScope.ALL)

    assert report.state is RunState.COMPLETED
    assert leftovers.ran("kubectl", "delete", "namespace", "monitoring")
    assert leftovers.ran("kind", "delete", "cluster", "--name", "dev-local")
    assert leftovers.ran("docker", "volume", "rm", "vol-a", "vol-b")
    assert leftovers.ran("docker", "rm", "-f", "c1")
    deleted = [cmd[2:4] for cmd in leftovers.ran("kubectl", "config")]
    assert deleted == [["delete-context", "kind-dev-local"], ["delete-cluster", "kind-dev-local"], ["delete-user", "kind-dev-local"]]
    assert all(cmd[-2:] == ["--kubeconfig", str(config.kubeconfig)] for cmd in leftovers.ran("kubectl", "config"))


def test_cluster_only_leaves_docker_resources(config, tools, leftovers):
    Teardown(config, tools).run(TeardownScope.CLUSTER_ONLY)

    assert leftovers.ran("kind", "delete", "cluster")
    assert not leftovers.ran("docker", "volume", "rm")
    assert not leftovers.ran("kubectl", "delete", "namespace")


def test_failed_step_degrades_and_continues(config, tools, leftovers):
    leftovers.script("kind", "delete", "cluster", returncode=1)

    report = Teardown(config, tools).run()

    assert report.state is RunState.COMPLETED_WITH_WARNINGS
    assert report.outcome_of("cluster").status is OutcomeStatus.DEGRADED
    assert report.outcome_of("docker-resources").ok
    assert report.outcome_of("kubeconfig").ok


def test_missing_tool_skips_step(config, tools, runner):
    runner.installed.discard("docker")

    report = Teardown(config, tools).run(TeardownScope.RESOURCES_ONLY)

    outcome = report.outcome_of("docker-resources")
    assert outcome.status is OutcomeStatus.SKIPPED
    assert outcome.reason == "docker not installed"
    assert report.state is RunState.COMPLETED


def test_config_backup_is_restored(config, tools):
    config.kind_config_backup_path.write_text("name: dev-local\n# template\n", encoding="utf-8")
    config.kind_config_path.write_text("name: dev-local\n", encoding="utf-8")

    report = Teardown(config, tools).run(TeardownScope.CONFIG_ONLY)

    assert report.outcome_of("config-backups").reason == "restored from backup"
    assert config.kind_config_path.read_text(encoding="utf-8").endswith("# template\n")
    assert not config.kind_config_backup_path.exists()


def test_cancelled_teardown_is_aborted(config, tools, runner):
    token = CancellationToken()
    token.cancel("interrupted by user")

    report = Teardown(config, tools, cancel=token).run()

    assert report.state is RunState.ABORTED
    assert report.interrupted
    assert report.cancel_reason == "interrupted by user"
    assert all(outcome.status is OutcomeStatus.NOT_RUN for _, outcome in report.entries)
    assert destructive(runner) == []


def test_kubeconfig_with_mapped_contexts_is_ignored(config, tools, clean_host):
    config.kubeconfig.write_text("contexts:\n  kind-dev-local: {}\n", encoding="utf-8")

    report = Teardown(config, tools).run(TeardownScope.ALL)

    assert report.state is RunState.COMPLETED
    assert report.outcome_of("kubeconfig").ok
    assert not clean_host.ran("kubectl", "config")


def test_undecodable_kubeconfig_is_ignored(config, tools, clean_host):
    config.kubeconfig.write_bytes(b"contexts: [\xff\xfe]")

    report = Teardown(config, tools).run(TeardownScope.CLUSTER_ONLY)

    assert report.state is RunState.COMPLETED
    assert report.outcome_of("kubeconfig").ok
    assert not clean_host.ran("kubectl", "config")
