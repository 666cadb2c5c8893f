import argparse
import signal

import pytest

from kappsul_devenv import cli
from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.outcome import Outcome, RunState, SequenceReport
from kappsul_devenv.teardown import TeardownScope


def clean_args(scope="all", force=False):
    return argparse.Namespace(command="clean", scope=scope, force=force, verbose=False)


def test_start_arguments():
    args = cli.parse_args(["-v", "start", "--recreate", "--skip", "argocd", "--skip", "forgejo"])

    assert args.verbose
    assert args.recreate
    assert args.skip == ["argocd", "forgejo"]


def test_unknown_stage_is_rejected():
    with pytest.raises(SystemExit):
        cli.parse_args(["start", "--skip", "jenkins"])


def test_clean_scopes_are_exclusive():
    assert cli.parse_args(["clean"]).scope == "all"
    assert cli.CLEAN_SCOPES[cli.parse_args(["clean", "--docker-only"]).scope] is TeardownScope.RESOURCES_ONLY
    with pytest.raises(SystemExit):
        cli.parse_args(["clean", "--all", "--cluster-only"])


def test_exit_codes():
    completed = SequenceReport(state=RunState.COMPLETED_WITH_WARNINGS)
    failed = SequenceReport(entries=[("dex", Outcome.failure("helm"))], state=RunState.ABORTED)
    interrupted = SequenceReport(entries=[("dex", Outcome.interrupted())], state=RunState.ABORTED)
    cancelled_between_stages = SequenceReport(entries=[("dex", Outcome.not_run())], state=RunState.ABORTED, cancel_reason="interrupted by user")

    assert cli.report_exit_code(completed) == 0
    assert cli.report_exit_code(failed) == 1
    assert cli.report_exit_code(interrupted) == cli.EXIT_INTERRUPTED
    assert cli.report_exit_code(cancelled_between_stages) == cli.EXIT_INTERRUPTED


def test_confirm():
    def eof(prompt):
        raise EOFError

    assert cli.confirm("Continue?", lambda prompt: "y")
    assert cli.confirm("Continue?", lambda prompt: " YES ")
    assert not cli.confirm("Continue?", lambda prompt: "")
    assert not cli.confirm("Continue?", eof)


def test_interrupt_cancels_then_escalates():
    token = CancellationToken()
    previous = signal.getsignal(signal.SIGINT)

    with cli.interrupt_cancels(token):
        handler = signal.getsignal(signal.SIGINT)
        handler(signal.SIGINT, None)
        assert token.cancelled
        with pytest.raises(KeyboardInterrupt):
            handler(signal.SIGINT, None)

    assert signal.getsignal(signal.SIGINT) is previous


def test_second_interrupt_exits_without_traceback(monkeypatch, tmp_path):
    def interrupted(config, tools):
        raise KeyboardInterrupt

    monkeypatch.setenv("KAPPSUL_PROJECT_ROOT", str(tmp_path))
    monkeypatch.setenv("KUBECONFIG", str(tmp_path / "kubeconfig"))
    monkeypatch.setattr(cli, "cmd_status", interrupted)

    with pytest.raises(SystemExit) as exited:
        cli.main(["status"])

    assert exited.value.code == cli.EXIT_INTERRUPTED


def test_clean_declined_does_nothing(config, tools, runner, capsys):
    runner.script("kind", "get", "clusters", stdout="dev-local\n")

    assert cli.cmd_clean(clean_args(), config, tools, ask=lambda prompt: "n") == 0
    assert "Cleanup cancelled by user" in capsys.readouterr().out
    assert not runner.ran("kind", "delete")


def test_clean_config_only_needs_no_confirmation(config, tools, capsys):
    def ask(prompt):
        raise AssertionError("should not prompt")

    assert cli.cmd_clean(clean_args("config-only"), config, tools, ask=ask) == 0
    out = capsys.readouterr().out
    assert "teardown (config-only): completed" in out


def test_clean_status_only_reports(config, tools, runner, capsys):
    assert cli.cmd_clean(clean_args("status"), config, tools) == 0

    assert "Kind cluster 'dev-local' removed" in capsys.readouterr().out
    assert not runner.ran("kind", "delete")


def test_clean_status_with_unreadable_kubeconfig(config, tools, runner, capsys):
    config.kubeconfig.write_bytes(b"contexts: [\xff\xfe]")

    assert cli.cmd_clean(clean_args("status"), config, tools) == 0

    assert "Kubeconfig cleaned" in capsys.readouterr().out


def test_check_prerequisites_exit_code(config, tools, runner, capsys):
    assert cli.cmd_check_prerequisites(config, tools) == 0
    runner.installed.discard("kind")
    assert cli.cmd_check_prerequisites(config, tools) == 1
    assert "kind is not installed" in capsys.readouterr().out


def test_help(capsys):
    cli.main(["help"])

    assert "usage: kappsul-devenv" in capsys.readouterr().out
