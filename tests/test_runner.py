import threading

import pytest

from conftest import FakeProvider, ScriptedExecutor
from matrixci.dsl import job, matrix, pipeline, service, sh
from matrixci.model import JobState, JobStatus, SkipReason, StepStatus
from matrixci.runner import JobRunner
from matrixci.scheduler import expand
from matrixci.services import ServiceManager


def single_job(*steps, services=(), env=None):
    definition = pipeline(
        "p",
        job("build", *steps, services=list(services), env=env),
        matrix=matrix(os=["ubuntu"], rust=["stable"]),
    )
    return expand(definition)[0]


def fails_on(*names, code=1):
    return lambda step, binding: code if step.name in names else 0


def test_all_steps_succeed(manager):
    instance = single_job(sh("a", "true"), sh("b", "true"))
    runner = JobRunner(manager, ScriptedExecutor(), inherit_env=False)

    result = runner.run(instance)

    assert result.status is JobStatus.SUCCEEDED
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
    assert runner.transitions == [JobState.PENDING, JobState.RUNNING, JobState.COMPLETED]


def test_first_failure_skips_the_rest_but_always_run_still_executes(manager):
    instance = single_job(
        sh("check", "x"),
        sh("test", "x"),
        sh("bench", "x"),
        sh("cleanup", "x", always=True),
    )
    executor = ScriptedExecutor(fails_on("check"))

    result = JobRunner(manager, executor, inherit_env=False).run(instance)

    assert result.status is JobStatus.FAILED
    assert [(s.name, s.status, s.skip_reason) for s in result.steps] == [
        ("check", StepStatus.FAILED, None),
        ("test", StepStatus.SKIPPED, SkipReason.PRIOR_FAILURE),
        ("bench", StepStatus.SKIPPED, SkipReason.PRIOR_FAILURE),
        ("cleanup", StepStatus.SUCCEEDED, None),
    ]
    assert executor.steps_for(os="ubuntu", rust="stable") == ["check", "cleanup"]
    assert result.first_failure.name == "check"


def test_condition_skip_is_not_a_failure(manager):
    instance = single_job(sh("a", "x"), sh("nightly only", "x", when="matrix.rust == 'nightly'"))

    result = JobRunner(manager, ScriptedExecutor(), inherit_env=False).run(instance)

    assert result.status is JobStatus.SUCCEEDED
    assert result.steps[1].skip_reason is SkipReason.CONDITION


def test_zero_services_skips_provisioning(manager, service_log):
    runner = JobRunner(manager, ScriptedExecutor(), inherit_env=False)
    runner.run(single_job(sh("a", "x")))

    assert JobState.PROVISIONING not in runner.transitions
    assert service_log == []


def test_services_released_once_in_reverse_order_after_completion(manager, fake_provider, service_log):
    instance = single_job(
        sh("a", "x"),
        services=[service("first", "fake"), service("second", "fake")],
    )
    runner = JobRunner(manager, ScriptedExecutor(fails_on("a")), inherit_env=False)

    result = runner.run(instance)

    assert result.status is JobStatus.FAILED
    assert [(e[0], e[1]) for e in service_log] == [
        ("start", "first"), ("start", "second"), ("stop", "second"), ("stop", "first"),
    ]
    assert sorted(fake_provider.stops.values()) == [1, 1]
    assert manager.active == []
    assert runner.transitions == [
        JobState.PENDING, JobState.PROVISIONING, JobState.RUNNING, JobState.COMPLETED,
    ]


def test_service_env_reaches_steps(manager):
    instance = single_job(sh("a", "x"), services=[service("broker", "fake")], env={"JOB_LEVEL": "1"})
    executor = ScriptedExecutor()

    JobRunner(manager, executor, inherit_env=False).run(instance)

    env = executor.calls[0][2]
    assert env["BROKER_URL"].startswith("fake://127.0.0.1:")
    assert env["MATRIX_RUST"] == "stable"
    assert env["JOB_LEVEL"] == "1"


def test_acquisition_failure_errors_the_job_and_releases_earlier_services(service_log):
    good = FakeProvider(service_log)
    broken = FakeProvider(service_log, fail_start=True)
    manager = ServiceManager({"fake": good, "broken": broken}, startup_timeout=0.2, probe_interval=0.01)
    instance = single_job(
        sh("a", "x"),
        sh("b", "x", always=True),
        services=[service("first", "fake"), service("second", "broken")],
    )
    executor = ScriptedExecutor()
    runner = JobRunner(manager, executor, inherit_env=False)

    result = runner.run(instance)

    assert result.status is JobStatus.ERRORED
    assert result.error_kind == "service_acquisition_failure"
    assert executor.calls == []
    assert all(s.skip_reason is SkipReason.ABORTED for s in result.steps)
    assert [(e[0], e[1]) for e in service_log] == [("start", "first"), ("stop", "first")]
    assert manager.active == []
    assert runner.transitions[-1] is JobState.ERRORED


def test_executor_fault_mid_job_is_errored_and_releases(manager, fake_provider):
    def script(step, binding):
        if step.name == "b":
            raise OSError("pipe exploded")
        return 0

    instance = single_job(sh("a", "x"), sh("b", "x"), sh("c", "x"), services=[service("broker", "fake")])

    result = JobRunner(manager, ScriptedExecutor(script), inherit_env=False).run(instance)

    assert result.status is JobStatus.ERRORED
    assert result.error_kind == "infrastructure"
    assert "pipe exploded" in result.error
    assert [s.name for s in result.steps] == ["a", "b", "c"]
    assert result.steps[0].status is StepStatus.SUCCEEDED
    assert result.steps[1].skip_reason is SkipReason.ABORTED
    assert list(fake_provider.stops.values()) == [1]
    assert manager.active == []


def test_cancellation_is_errored_and_releases(manager, fake_provider):
    cancel = threading.Event()

    def script(step, binding):
        if step.name == "a":
            cancel.set()
        return 0

    instance = single_job(sh("a", "x"), sh("b", "x"), sh("cleanup", "x", always=True), services=[service("broker", "fake")])
    runner = JobRunner(manager, ScriptedExecutor(script), cancel=cancel, inherit_env=False)

    result = runner.run(instance)

    assert result.status is JobStatus.ERRORED
    assert result.error_kind == "cancelled"
    assert [s.skip_reason for s in result.steps[1:]] == [SkipReason.ABORTED, SkipReason.ABORTED]
    assert list(fake_provider.stops.values()) == [1]
    assert manager.active == []


def test_teardown_failure_marks_job_errored(service_log):
    class StickyProvider(FakeProvider):
        def stop(self, instance):
            super().stop(instance)
            raise RuntimeError("container refused to die")

    manager = ServiceManager({"fake": StickyProvider(service_log)}, startup_timeout=0.2, probe_interval=0.01)
    instance = single_job(sh("a", "x"), services=[service("broker", "fake")])

    result = JobRunner(manager, ScriptedExecutor(), inherit_env=False).run(instance)

    assert result.status is JobStatus.ERRORED
    assert "container refused to die" in result.error
    assert result.steps[0].status is StepStatus.SUCCEEDED
    assert manager.ports.leased == set()
