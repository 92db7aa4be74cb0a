import json

from matrixci.aggregate import PipelineStatus, aggregate
from matrixci.model import (
    FailureKind,
    JobResult,
    JobStatus,
    MatrixBinding,
    SkipReason,
    StepResult,
    StepStatus,
)


def binding(os, rust):
    return MatrixBinding((("os", os), ("rust", rust)))


def job_result(index, os, rust, status, steps=()):
    return JobResult(index=index, name=f"build ({os}, {rust})", binding=binding(os, rust), status=status, steps=list(steps))


def test_results_are_resorted_into_canonical_order():
    results = [
        job_result(2, "ubuntu", "stable", JobStatus.SUCCEEDED),
        job_result(0, "ubuntu", "nightly", JobStatus.SUCCEEDED),
        job_result(1, "ubuntu", "beta", JobStatus.SUCCEEDED),
    ]

    pipeline = aggregate(results)

    assert [j.index for j in pipeline.jobs] == [0, 1, 2]
    assert pipeline.status is PipelineStatus.SUCCEEDED
    assert pipeline.exit_code == 0


def test_any_failed_or_errored_job_fails_the_pipeline():
    for bad in (JobStatus.FAILED, JobStatus.ERRORED, JobStatus.NOT_RUN):
        pipeline = aggregate([
            job_result(0, "ubuntu", "nightly", JobStatus.SUCCEEDED),
            job_result(1, "ubuntu", "beta", bad),
        ])
        assert pipeline.status is PipelineStatus.FAILED
        assert pipeline.exit_code == 1


def test_empty_run_succeeds():
    assert aggregate([]).succeeded


def test_by_dimension_index():
    pipeline = aggregate([
        job_result(0, "ubuntu", "nightly", JobStatus.FAILED),
        job_result(1, "ubuntu", "stable", JobStatus.SUCCEEDED),
        job_result(2, "macos", "nightly", JobStatus.ERRORED),
        job_result(3, "macos", "stable", JobStatus.SUCCEEDED),
    ])

    assert [j.index for j in pipeline.by_dimension["rust"]["nightly"]] == [0, 2]
    assert [j.index for j in pipeline.by_dimension["os"]["macos"]] == [2, 3]
    assert pipeline.failed_cells() == [binding("ubuntu", "nightly"), binding("macos", "nightly")]
    assert pipeline.to_dict()["by_dimension"]["rust"]["nightly"]["failed"] == [0, 2]
    assert pipeline.to_dict()["by_dimension"]["rust"]["stable"]["failed"] == []


def test_report_attributes_the_first_failing_step():
    steps = [
        StepResult(name="check", status=StepStatus.SUCCEEDED, exit_code=0),
        StepResult(
            name="test",
            status=StepStatus.FAILED,
            exit_code=101,
            output="thread 'main' panicked\n",
            failure_kind=FailureKind.NON_ZERO_EXIT,
        ),
        StepResult.skipped("bench", SkipReason.PRIOR_FAILURE),
    ]
    pipeline = aggregate([job_result(0, "ubuntu", "nightly", JobStatus.FAILED, steps)])

    report = json.loads(json.dumps(pipeline.to_dict()))

    job = report["jobs"][0]
    assert report["status"] == "failed"
    assert report["counts"]["failed"] == 1
    assert job["matrix"] == {"os": "ubuntu", "rust": "nightly"}
    assert job["first_failure"] == {
        "step": "test",
        "failure_kind": "non_zero_exit",
        "exit_code": 101,
        "output": "thread 'main' panicked\n",
    }
    assert job["steps"][1]["retryable"] is False
    assert job["steps"][2]["skip_reason"] == "prior_failure"


def test_lookup_by_binding():
    pipeline = aggregate([job_result(0, "ubuntu", "nightly", JobStatus.SUCCEEDED)])
    assert pipeline.job(binding("ubuntu", "nightly")).index == 0
    assert pipeline.job({"os": "ubuntu", "rust": "nightly"}).index == 0
