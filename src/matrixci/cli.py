# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from matrixci.config import RunConfig
from matrixci.errors import DefinitionError
from matrixci.model import TriggerEvent
from matrixci.scheduler import Scheduler
from matrixci.ui.console import Console, get_console, set_console
from matrixci.workflow import DEFAULT_WORKFLOW, find_workflow_files, load_pipeline

EXIT_DEFINITION_ERROR = 2
EXIT_INTERRUPTED = 130


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {DEFAULT_WORKFLOW}", "  *_workflow.py"],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  matrixci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  matrixci run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _definition_error(e: DefinitionError) -> None:
    lines = [f"{k}: {v}" for k, v in e.details.items()]
    if e.step:
        lines.insert(0, f"step: {e.step}")
    get_console().print_error("Invalid pipeline definition", e.message, details=lines or None)
    sys.exit(EXIT_DEFINITION_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """matrixci: run a matrix build/test pipeline on this host."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--workers", default=None, type=int, help="Maximum number of jobs running at once")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Override the pipeline's fail-fast flag")
@click.option(
    "--event",
    type=click.Choice([e.value for e in TriggerEvent]),
    default=None,
    help="Triggering event; the run is skipped if the pipeline does not declare it",
)
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write a JSON report here")
@click.option("--output-limit", default=None, type=int, help="Bytes of output kept per step")
@click.option("--startup-timeout", default=None, type=float, help="Seconds to wait for each service")
@click.option("--step-timeout", default=None, type=float, help="Default per-step timeout in seconds")
@click.option("--repo-root", default=None, help="Directory steps run in (relative cwd is resolved from here)")
@click.pass_context
def run(ctx, workflow, workers, fail_fast, event, report_path, output_limit, startup_timeout, step_timeout, repo_root):
    """Run a matrixci pipeline."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        config = RunConfig.from_env().override(
            max_workers=workers,
            fail_fast=fail_fast,
            output_limit=output_limit,
            startup_timeout=startup_timeout,
            step_timeout=step_timeout,
            repo_root=repo_root,
        )
        definition = load_pipeline(workflow_path)
        scheduler = Scheduler(config)
        jobs = scheduler.plan(definition)

        console.print_run_started(
            pipeline=definition.name,
            workflow=workflow_path.name,
            job_count=len(jobs),
            workers=config.max_workers,
            fail_fast=definition.fail_fast if config.fail_fast is None else config.fail_fast,
        )

        result = scheduler.run(definition, event=event)
        console.print_results(result)

        if report_path:
            Path(report_path).write_text(json.dumps(result.to_dict(), indent=2))
            console.print_info(f"Report written to {report_path}")

        if result.cancelled:
            sys.exit(EXIT_INTERRUPTED)
        sys.exit(result.exit_code)

    except DefinitionError as e:
        _definition_error(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.pass_context
def plan(ctx, workflow):
    """Validate a pipeline and print its expanded matrix without running it."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        definition = load_pipeline(workflow_path)
        jobs = Scheduler().plan(definition)
    except DefinitionError as e:
        _definition_error(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    triggers = ", ".join(t.event.value + (f" ({t.cron})" if t.cron else "") for t in definition.triggers)
    console.print_info(f"Pipeline: {definition.name}")
    console.print_info(f"Triggers: {triggers or 'manual only'}")
    console.print_info(f"Fail-fast: {'on' if definition.fail_fast else 'off'}")
    console.print_plan(jobs)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
