import math

import pytest

from kappsul_devenv.cancellation import CancellationToken
from kappsul_devenv.errors import RunInterrupted
from kappsul_devenv.outcome import OutcomeStatus
from kappsul_devenv.readiness import CompoundReadinessCheck, Condition, OnTimeout, ReadinessCheck, await_condition


class Counter:
    def __init__(self, predicate):
        self.predicate = predicate
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return self.predicate()


def test_ready_immediately(clock):
    predicate = Counter(lambda: True)

    assert await_condition(predicate, 5, 60, clock=clock, sleep=clock.sleep)
    assert predicate.calls == 1
    assert clock.sleeps == []


def test_timeout_polls_at_least_timeout_over_interval(clock):
    predicate = Counter(lambda: False)
    diagnostics = []

    ready = await_condition(predicate, 5, 20, on_timeout=lambda: diagnostics.append(clock.now), clock=clock, sleep=clock.sleep)

    assert ready is False
    assert predicate.calls >= math.floor(20 / 5)
    assert diagnostics == [20.0]


def test_becomes_ready_after_polls(clock):
    predicate = Counter(lambda: clock.now >= 10)

    assert await_condition(predicate, 5, 60, clock=clock, sleep=clock.sleep)
    assert clock.sleeps == [5, 5]


def test_predicate_errors_count_as_not_ready(clock):
    def predicate():
        if clock.now < 5:
            raise RuntimeError("connection refused")
        return True

    assert await_condition(predicate, 5, 60, clock=clock, sleep=clock.sleep)


def test_failing_diagnostics_do_not_change_result(clock):
    def diagnostics():
        raise RuntimeError("kubectl unavailable")

    assert await_condition(lambda: False, 5, 10, on_timeout=diagnostics, clock=clock, sleep=clock.sleep) is False


def test_cancellation_interrupts_wait(clock):
    token = CancellationToken()

    def predicate():
        token.cancel("interrupted by user")
        return False

    with pytest.raises(RunInterrupted):
        await_condition(predicate, 5, 60, clock=clock, sleep=clock.sleep, cancel=token)


def test_readiness_check_warns_on_timeout_by_default(clock):
    check = ReadinessCheck(lambda: False, poll_interval=5, timeout=10, description="Grafana")

    outcome = check.wait(clock=clock, sleep=clock.sleep)

    assert outcome.status is OutcomeStatus.DEGRADED
    assert outcome.reason == "Grafana not ready after 10s"


def test_readiness_check_can_fail_on_timeout(clock):
    check = ReadinessCheck(lambda: False, poll_interval=5, timeout=10, on_timeout=OnTimeout.FAIL, description="Dex deployment")

    assert check.wait(clock=clock, sleep=clock.sleep).status is OutcomeStatus.FAILURE


def test_readiness_check_success(clock):
    check = ReadinessCheck(lambda: True, poll_interval=5, timeout=10)

    assert check.wait(clock=clock, sleep=clock.sleep).status is OutcomeStatus.SUCCESS


def compound(clock, conditions, probe, diagnostics=None, **kwargs):
    options = dict(timeout=60, poll_interval=5, condition_timeout=15, probe_interval=10, settle=15)
    options.update(kwargs)
    return CompoundReadinessCheck(conditions, probe, on_timeout=diagnostics, clock=clock, sleep=clock.sleep, **options)


def test_compound_times_out_when_probe_never_connects(clock):
    probe = Counter(lambda: False)
    diagnostics = []
    check = compound(clock, [Condition("service", lambda: True), Condition("endpoints", lambda: True)], probe, lambda: diagnostics.append(1))

    assert check.wait() is False
    assert diagnostics == [1]
    assert probe.calls >= 60 // 10
    assert 15 not in clock.sleeps


def test_compound_settles_after_successful_probe(clock):
    probe = Counter(lambda: probe.calls > 1)
    check = compound(clock, [Condition("service", lambda: True)], probe)

    assert check.wait() is True
    assert probe.calls == 2
    assert clock.sleeps == [10, 15]


def test_compound_waits_for_conditions_before_probing(clock):
    probe = Counter(lambda: True)
    check = compound(clock, [Condition("endpoints", lambda: clock.now >= 30)], probe, timeout=120)

    assert check.wait() is True
    assert probe.calls == 1


def test_compound_reports_first_pending_condition(clock):
    later = Counter(lambda: True)
    check = compound(clock, [Condition("webhook", lambda: False), Condition("service", later)], lambda: True)

    assert check.pending_condition().name == "webhook"
    assert later.calls == 0


def test_compound_never_probes_when_conditions_pending(clock):
    probe = Counter(lambda: True)
    diagnostics = []
    check = compound(clock, [Condition("endpoints", lambda: False)], probe, lambda: diagnostics.append(1))

    assert check.wait() is False
    assert probe.calls == 0
    assert diagnostics == [1]
