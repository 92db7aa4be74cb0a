import json
import textwrap

import pytest
from click.testing import CliRunner

from conftest import PY, ROOT
from matrixci.cli import cli
from matrixci.dsl import build, job, rabbitmq, sh
from matrixci.errors import DefinitionError
from matrixci.expr import StartsWith, evaluate
from matrixci.model import TriggerEvent
from matrixci.scheduler import expand
from matrixci.workflow import find_workflow_files, load_pipeline


def write_workflow(tmp_path, body, name="ci_workflow.py"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


def test_project_workflow_expands_one_job_per_toolchain():
    definition = load_pipeline(ROOT / "matrixci_workflow.py")

    jobs = expand(definition)

    assert [j.binding["rust"] for j in jobs] == ["nightly", "beta", "stable", "1.74.0"]
    assert definition.fail_fast is False
    assert {t.event for t in definition.triggers} == {
        TriggerEvent.PUSH, TriggerEvent.PULL_REQUEST, TriggerEvent.SCHEDULE,
    }
    nightly, beta = jobs[0], jobs[1]
    gated = nightly.steps[3]
    assert gated.condition == StartsWith("rust", "nightly")
    assert evaluate(gated.condition, nightly.binding) is True
    assert evaluate(beta.steps[3].condition, beta.binding) is False
    assert nightly.steps[0].name == "Install latest nightly"
    assert nightly.steps[-1].always_run is True
    assert nightly.services[0].kind == "rabbitmq"
    assert nightly.runs_on == "ubuntu-latest"


def test_load_pipeline_accepts_module_constant(tmp_path):
    path = write_workflow(tmp_path, """
        from matrixci import pipeline, job, sh
        PIPELINE = pipeline("const", job("j", sh("a", "true")))
    """)
    assert load_pipeline(path).name == "const"


def test_load_pipeline_calls_workflow_function(tmp_path):
    path = write_workflow(tmp_path, """
        from matrixci import pipeline, job, sh

        def workflow():
            return pipeline("func", job("j", sh("a", "true")))
    """)
    assert load_pipeline(path).name == "func"


def test_load_pipeline_rejects_other_objects(tmp_path):
    path = write_workflow(tmp_path, "PIPELINE = [1, 2, 3]\n")
    with pytest.raises(DefinitionError):
        load_pipeline(path)


def test_find_workflow_files_prefers_default(tmp_path):
    (tmp_path / "other_workflow.py").write_text("")
    (tmp_path / "matrixci_workflow.py").write_text("")
    assert [p.name for p in find_workflow_files(tmp_path)] == ["matrixci_workflow.py", "other_workflow.py"]


def test_always_spelling_and_builder():
    template = (
        build("j")
        .define_step("a", "true")
        .define_step("cleanup", "true", when="${{ always() }}")
        .define_service(rabbitmq())
        .with_env(LEVEL=1)
        .build()
    )
    assert template.steps[1].always_run is True
    assert template.steps[1].condition is None
    assert template.env == (("LEVEL", "1"),)
    assert template.services[0].credentials.password == "guest"


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_job_default_cwd_applies_to_steps_without_one():
    template = job("j", sh("a", "x"), sh("b", "x", cwd="sub"), cwd="crate")
    assert [s.cwd for s in template.steps] == ["crate", "sub"]


def test_cli_run_writes_report_and_exits_nonzero_on_failure(tmp_path):
    path = write_workflow(tmp_path, f"""
        from matrixci import cmd, job, matrix, pipeline

        def workflow():
            return pipeline(
                "demo",
                job(
                    "build",
                    cmd("check", {PY!r}, "-c", "import os, sys; sys.exit(1 if os.environ['MATRIX_RUST'] == 'beta' else 0)"),
                    cmd("nightly only", {PY!r}, "-c", "print('nightly')", when="startsWith(matrix.rust, 'nightly')"),
                ),
                matrix=matrix(rust=["nightly", "beta"]),
                fail_fast=False,
            )
    """)
    report = tmp_path / "report.json"

    result = CliRunner().invoke(cli, [
        "run", "--workflow", str(path), "--report", str(report), "--repo-root", str(tmp_path), "--workers", "2",
    ])

    assert result.exit_code == 1, result.output
    assert "RESULTS" in result.output
    assert "First failing step: check" in result.output
    data = json.loads(report.read_text())
    assert [j["status"] for j in data["jobs"]] == ["succeeded", "failed"]
    assert data["jobs"][1]["first_failure"]["step"] == "check"
    assert data["jobs"][1]["steps"][1]["skip_reason"] == "prior_failure"


def test_cli_run_succeeds(tmp_path):
    path = write_workflow(tmp_path, f"""
        from matrixci import cmd, job, pipeline
        PIPELINE = pipeline("ok", job("build", cmd("check", {PY!r}, "-c", "pass")))
    """)

    result = CliRunner().invoke(cli, ["run", "--workflow", str(path), "--repo-root", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "PIPELINE SUCCEEDED" in result.output


def test_cli_definition_error_exit_code(tmp_path):
    path = write_workflow(tmp_path, """
        from matrixci import job, matrix, pipeline, sh
        PIPELINE = pipeline(
            "bad",
            job("build", sh("a", "true", when="matrix.toolchain == 'nightly'")),
            matrix=matrix(rust=["stable"]),
        )
    """)

    result = CliRunner().invoke(cli, ["run", "--workflow", str(path)])

    assert result.exit_code == 2


def test_cli_plan_prints_gating(monkeypatch):
    monkeypatch.chdir(ROOT)

    result = CliRunner().invoke(cli, ["plan", "--workflow", "matrixci_workflow.py"])

    assert result.exit_code == 0, result.output
    assert "PLAN (4 job(s))" in result.output
    assert "if startsWith(matrix.rust, 'nightly')" in result.output
    assert "schedule (0 12 * * 1)" in result.output
