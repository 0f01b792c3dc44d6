# cli.py
from __future__ import annotations

import os
import sys
import threading
from pathlib import Path

import click

from relayci import settings
from relayci.context import INTERRUPTED, CancelToken, ProvisioningPool, RunContext
from relayci.errors import ValidationError
from relayci.executors.provisioner import Provisioner
from relayci.git_facts.git import UNKNOWN_REVISION, is_dirty, source_facts
from relayci.loader import load_file
from relayci.model import ExecutorKind, PipelineDefinition
from relayci.reporting import ReportDestination
from relayci.scheduler import execute
from relayci.ui.console import Console, get_console, set_console


EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_INTERRUPTED = 130


def find_definition_files() -> list[Path]:
    """
    Find pipeline definition files in the current directory.

    Returns:
        List of Path objects for definition files, in lookup order
    """
    return [Path(name) for name in settings.DEFINITION_FILES if Path(name).is_file()]


def discover_definition(file_arg: str | None) -> Path:
    """
    Discover the definition file from argument or defaults.

    Raises:
        SystemExit: If no definition can be found or several candidates exist
    """
    console = get_console()

    if file_arg:
        path = Path(file_arg)
        if not path.is_file():
            console.print_error(
                "Definition file not found",
                f"Could not find pipeline definition: {file_arg}",
                suggestion="Specify an existing file:\n  relayci run --file relayci.yml",
            )
            sys.exit(EXIT_INVALID)
        return path

    candidates = find_definition_files()

    if not candidates:
        console.print_error(
            "No definition file found",
            "Could not find a pipeline definition.",
            details=["Looked for:", *(f"  {name}" for name in settings.DEFINITION_FILES)],
            suggestion="Create relayci.yml or pass one explicitly:\n  relayci run --file path/to/pipeline.yml",
        )
        sys.exit(EXIT_INVALID)

    if len(candidates) > 1:
        console.print_error(
            "Multiple definition files found",
            "Found several pipeline definitions. Please specify which one to use:",
            details=[str(c) for c in candidates],
            suggestion=f"relayci run --file {candidates[0]}",
        )
        sys.exit(EXIT_INVALID)

    return candidates[0]


def load_definition(path: Path) -> PipelineDefinition:
    console = get_console()
    try:
        return load_file(path)
    except ValidationError as e:
        console.print_validation_error(e)
        sys.exit(EXIT_INVALID)


def resolve_destination(
    definition: PipelineDefinition,
    report_url: str | None,
    report_slug: str | None,
    report_token: str | None = None,
) -> ReportDestination | None:
    """CLI flags > definition `reporting` block > environment. The token never comes from the definition."""
    url = report_url or definition.reporting.url or settings.REPORT_URL
    slug = report_slug or definition.reporting.slug
    if not url or not slug:
        return None
    return ReportDestination(url=url, slug=slug, token=report_token or settings.REPORT_TOKEN)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and full step output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: declarative pipeline runner for container and machine executors."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--file", "file_", default=None, help="Pipeline definition (defaults to relayci.yml if present)")
@click.option("--workflow", "workflows", multiple=True, help="Workflow to run (repeatable; default: all)")
@click.option("--workers", default=None, type=int, help="Max concurrent jobs (default: provisioning capacity)")
@click.option("--timeout", default=None, type=float, help="Cancel everything still running after N seconds")
@click.option("--revision", default=None, help="Commit to check out (default: git HEAD)")
@click.option("--repo", default=None, help="Source repository for checkout (default: git remote origin)")
@click.option("--workspace", default=settings.WORKSPACE_ROOT, show_default=True, help="Root for job workspaces")
@click.option("--container-slots", default=settings.CONTAINER_SLOTS, show_default=True, type=int)
@click.option("--machine-slots", default=settings.MACHINE_SLOTS, show_default=True, type=int)
@click.option("--report-url", default=None, help="Reporting endpoint for artifacts")
@click.option("--report-slug", default=None, help="Project slug at the reporting endpoint")
@click.option("--report-token", default=None, help="Upload token (default: RELAYCI_REPORT_TOKEN)")
@click.pass_context
def run(
    ctx,
    file_,
    workflows,
    workers,
    timeout,
    revision,
    repo,
    workspace,
    container_slots,
    machine_slots,
    report_url,
    report_slug,
    report_token,
):
    """Run one or more workflows of a pipeline definition."""
    console = get_console()

    definition_path = discover_definition(file_)
    definition = load_definition(definition_path)

    selected = list(workflows) or list(definition.workflows)
    if not selected:
        console.print_error("Nothing to run", f"{definition_path} declares no workflows.")
        sys.exit(EXIT_INVALID)
    unknown = [name for name in selected if name not in definition.workflows]
    if unknown:
        console.print_error(
            "Unknown workflow",
            f"Not declared in {definition_path}: {', '.join(unknown)}",
            details=[f"available: {', '.join(definition.workflows) or '(none)'}"],
        )
        sys.exit(EXIT_INVALID)

    if revision is None or repo is None:
        git_revision, git_repo = source_facts()
        revision = revision or git_revision
        repo = repo or git_repo
        if git_revision != UNKNOWN_REVISION and is_dirty():
            console.print_warning("working tree has uncommitted changes; checkout uses the committed revision")

    run_ctx = RunContext(
        workspace_root=Path(workspace).resolve(),
        pool=ProvisioningPool({
            ExecutorKind.CONTAINER: container_slots,
            ExecutorKind.VIRTUAL_MACHINE: machine_slots,
        }),
        provisioner=Provisioner(docker_bin=settings.DOCKER_BIN),
        revision=revision,
        repository=repo,
        secrets=dict(os.environ),
        cancel=CancelToken(),
        console=console,
        destination=resolve_destination(definition, report_url, report_slug, report_token),
        max_workers=workers,
        allocation_timeout=settings.ALLOCATION_TIMEOUT,
    )

    timer = None
    if timeout is not None:
        timer = threading.Timer(timeout, run_ctx.cancel.cancel, kwargs={"reason": f"timed out after {timeout:g}s"})
        timer.daemon = True
        timer.start()

    results = []
    try:
        for index, name in enumerate(selected):
            if run_ctx.cancel.cancelled:
                skipped = ", ".join(selected[index:])
                console.print_warning(f"Not started ({run_ctx.cancel.reason}): {skipped}")
                break
            wf = definition.workflows[name]
            console.print_run_started(
                definition=str(definition_path),
                workflow=name,
                job_count=len(wf.jobs),
                revision=revision,
            )
            result = execute(wf, definition, run_ctx)
            console.print_summary(result)
            results.append(result)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)
    finally:
        if timer is not None:
            timer.cancel()

    if run_ctx.cancel.reason == INTERRUPTED:
        sys.exit(EXIT_INTERRUPTED)
    if not all(r.succeeded for r in results):
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--file", "file_", default=None, help="Pipeline definition (defaults to relayci.yml if present)")
def validate(file_):
    """Check a pipeline definition and report every problem at once."""
    console = get_console()
    path = discover_definition(file_)
    definition = load_definition(path)
    console.print_definition(str(path), definition)


if __name__ == "__main__":
    cli()
