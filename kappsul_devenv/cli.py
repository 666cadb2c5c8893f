"""Command line entry point for bringing the local Kind environment up and down."""

from __future__ import annotations

import argparse
import signal
import subprocess
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.clients import Toolbox
from kappsul_devenv.commands import CommandRunner
from kappsul_devenv.config import DevEnvConfig
from kappsul_devenv.errors import BootstrapError
from kappsul_devenv.log import build_logger
from kappsul_devenv.outcome import RunState, SequenceReport
from kappsul_devenv.provision import STAGE_NAMES, Provisioner
from kappsul_devenv.status import StatusProbe, access_information, check_prerequisites
from kappsul_devenv.teardown import TeardownScope, Teardown

EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kappsul-devenv", description="Bootstrap or tear down the Kind-based local development environment.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every command that is run")
    subparsers = parser.add_subparsers(dest="command")

    start = subparsers.add_parser("start", help="Start the complete development environment")
    start.add_argument("--recreate", action="store_true", help="Delete and recreate the Kind cluster if it already exists")
    start.add_argument("--skip", action="append", default=[], choices=STAGE_NAMES, metavar="STAGE", help="Skip a stage (repeatable)")

    clean = subparsers.add_parser("clean", help="Clean up development environment resources")
    scope = clean.add_mutually_exclusive_group()
    scope.add_argument("--all", dest="scope", action="store_const", const="all", help="Clean up everything (default)")
    scope.add_argument("--cluster-only", dest="scope", action="store_const", const="cluster-only", help="Only remove the Kind cluster and its kubeconfig entries")
    scope.add_argument("--config-only", dest="scope", action="store_const", const="config-only", help="Only restore configuration backups and kubeconfig entries")
    scope.add_argument("--docker-only", dest="scope", action="store_const", const="docker-only", help="Only remove Docker volumes and containers")
    scope.add_argument("--status", dest="scope", action="store_const", const="status", help="Show cleanup status without cleaning up")
    clean.add_argument("--force", action="store_true", help="Skip confirmation prompts")
    clean.set_defaults(scope="all")

    subparsers.add_parser("status", help="Check the status of all services")
    subparsers.add_parser("check-prerequisites", help="Check if all required tools are installed")
    subparsers.add_parser("help", help="Show this help message")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


CLEAN_SCOPES = {
    "all": TeardownScope.ALL,
    "cluster-only": TeardownScope.CLUSTER_ONLY,
    "config-only": TeardownScope.CONFIG_ONLY,
    "docker-only": TeardownScope.RESOURCES_ONLY,
}


@contextmanager
def interrupt_cancels(token: CancellationToken) -> Iterator[None]:
    """First Ctrl-C cancels the run at its next checkpoint; a second one raises KeyboardInterrupt."""

    def handler(signum, frame) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        token.cancel("interrupted by user")

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def print_report(report: SequenceReport) -> None:
    print()
    for line in report.summary_lines():
        print(line)


def report_exit_code(report: SequenceReport) -> int:
    if report.state is not RunState.ABORTED:
        return 0
    if report.interrupted:
        return EXIT_INTERRUPTED
    return 1


def confirm(prompt: str, ask: Callable[[str], str] = input) -> bool:
    try:
        reply = ask(f"{prompt} (y/N): ")
    except EOFError:
        return False
    return reply.strip().lower() in ("y", "yes")


def cmd_start(args: argparse.Namespace, config: DevEnvConfig, tools: Toolbox) -> int:
    token = CancellationToken()
    with interrupt_cancels(token), Provisioner(config, tools, recreate=args.recreate, skip=args.skip, cancel=token) as provisioner:
        report = provisioner.run()
    print_report(report)
    if report.state is not RunState.ABORTED:
        print()
        print("\n".join(access_information()))
    print()
    print("Environment status:")
    for line in StatusProbe(config, tools).environment():
        print(line)
    return report_exit_code(report)


def cmd_clean(args: argparse.Namespace, config: DevEnvConfig, tools: Toolbox, ask: Callable[[str], str] = input) -> int:
    probe = StatusProbe(config, tools)
    if args.scope == "status":
        for line in probe.cleanup():
            print(line)
        return 0

    scope = CLEAN_SCOPES[args.scope]
    if not args.force and scope in (TeardownScope.ALL, TeardownScope.CLUSTER_ONLY):
        if scope is TeardownScope.ALL:
            prompt = f"This will remove the Kind cluster '{config.cluster_name}', its Docker containers and volumes, and kubeconfig entries. Continue?"
        else:
            prompt = f"This will remove the Kind cluster '{config.cluster_name}'. Are you sure?"
        if not confirm(prompt, ask):
            print("Cleanup cancelled by user")
            return 0

    token = CancellationToken()
    with interrupt_cancels(token):
        report = Teardown(config, tools, cancel=token).run(scope)
    print_report(report)
    if scope is TeardownScope.ALL:
        print()
        print("Cleanup status:")
        for line in probe.cleanup():
            print(line)
    return report_exit_code(report)


def cmd_status(config: DevEnvConfig, tools: Toolbox) -> int:
    for line in StatusProbe(config, tools).environment():
        print(line)
    print()
    print("\n".join(access_information()))
    return 0


def cmd_check_prerequisites(config: DevEnvConfig, tools: Toolbox) -> int:
    lines = check_prerequisites(config, tools)
    for line in lines:
        print(line)
    return 0 if all(line.ok for line in lines) else 1


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = build_logger(verbose=args.verbose)

    if args.command in (None, "help"):
        parser.print_help()
        return

    try:
        config = DevEnvConfig.from_environment()
        tools = Toolbox.create(CommandRunner(logger=logger), context=config.kube_context)
        if args.command == "start":
            code = cmd_start(args, config, tools)
        elif args.command == "clean":
            code = cmd_clean(args, config, tools)
        elif args.command == "status":
            code = cmd_status(config, tools)
        else:
            code = cmd_check_prerequisites(config, tools)
    except (BootstrapError, subprocess.CalledProcessError) as exc:
        message = str(exc)
        if isinstance(exc, subprocess.CalledProcessError) and exc.stderr:
            message = f"{message}\n{exc.stderr.strip()}"
        logger.exception(message)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        logger.error("[Interrupt] Aborted by second interrupt; cluster state may be partial")
        raise SystemExit(EXIT_INTERRUPTED)

    if code:
        raise SystemExit(code)


if __name__ == "__main__":  # pragma: no cover
    main()
