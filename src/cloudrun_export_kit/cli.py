from __future__ import annotations

import signal
import sys
import threading
from pathlib import Path
from types import FrameType
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn

from cloudrun_export_kit.exporter import CloudRunExporter
from cloudrun_export_kit.gcloud import GcloudRunner
from cloudrun_export_kit.logging import setup_logging
from cloudrun_export_kit.models import ExportConfig, ExportResult, ManifestDiff
from cloudrun_export_kit.version import __version__
from cloudrun_export_kit.writer import ExportWriter, WriteError, load_manifest_file

DEFAULT_REGION = "us-central1"

app = typer.Typer(
    name="cloudrun-export-kit",
    help="Export Cloud Run services to a canonical manifest and Terraform code",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"cloudrun-export-kit version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = False,
) -> None:
    pass


def resolve_project(project: str | None, runner: GcloudRunner) -> str | None:
    return project or runner.get_config_value("project")


def resolve_region(region: str | None, runner: GcloudRunner) -> str:
    return (
        region
        or runner.get_config_value("run/region")
        or runner.get_config_value("compute/region")
        or DEFAULT_REGION
    )


@app.command()
def export(
    project: Annotated[
        str | None,
        typer.Option(
            "--project",
            "-p",
            envvar=["PROJECT_ID", "GOOGLE_CLOUD_PROJECT"],
            help="GCP project ID (defaults to the gcloud configuration)",
        ),
    ] = None,
    region: Annotated[
        str | None,
        typer.Option(
            "--region",
            "-r",
            envvar="REGION",
            help="Default region for the provider block and for services without one",
        ),
    ] = None,
    output_dir: Annotated[
        Path,
        typer.Option("--out", "-o", help="Output directory for the export"),
    ] = Path("./terraform_export"),
    workers: Annotated[
        int,
        typer.Option("--workers", min=1, help="Concurrent describe requests"),
    ] = 8,
    timeout: Annotated[
        float,
        typer.Option("--timeout", min=1.0, help="Timeout in seconds for each gcloud call"),
    ] = 60.0,
    no_snapshots: Annotated[
        bool,
        typer.Option("--no-snapshots", help="Skip the raw per-service YAML snapshots"),
    ] = False,
    no_inventory: Annotated[
        bool,
        typer.Option("--no-inventory", help="Skip VPC connector and secret listings"),
    ] = False,
    strict_references: Annotated[
        bool,
        typer.Option(
            "--strict-references",
            help="Fail when a service account reference cannot be resolved in the export",
        ),
    ] = False,
    provider_version: Annotated[
        str,
        typer.Option("--google-version", help="Required Google provider version"),
    ] = "~> 5.0",
    terraform_version: Annotated[
        str,
        typer.Option("--tf-version", help="Required Terraform version constraint"),
    ] = ">= 1.5.0",
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Enable debug logging on stderr"),
    ] = False,
    json_logs: Annotated[
        bool,
        typer.Option("--json-logs", help="Write stderr logs as JSON lines"),
    ] = False,
) -> None:
    """Export every Cloud Run service of a project to Terraform."""
    setup_logging(verbose=verbose, json_logs=json_logs)

    runner = GcloudRunner(timeout=timeout)
    project_id = resolve_project(project, runner)
    if not project_id:
        console.print("[red]Error: no project given and none configured in gcloud[/]")
        sys.exit(2)
    resolved_region = resolve_region(region, runner)
    runner.project_id = project_id

    config = ExportConfig(
        project_id=project_id,
        output_dir=output_dir,
        region=resolved_region,
        max_workers=workers,
        timeout_seconds=timeout,
        write_snapshots=not no_snapshots,
        include_inventory=not no_inventory,
        fail_on_unresolved_references=strict_references,
        google_provider_version=provider_version,
        terraform_version=terraform_version,
    )

    console.print(
        Panel(
            f"[bold blue]Cloud Run Export Kit[/]\n"
            f"Project: {project_id}\n"
            f"Region: {resolved_region}\n"
            f"Output: {output_dir}",
            title="Export Configuration",
        )
    )

    exporter = CloudRunExporter(config, client=runner)
    cancel_event = threading.Event()

    def handle_interrupt(_signum: int, _frame: FrameType | None) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        cancel_event.set()
        console.print("\n[yellow]Interrupted: finishing in-flight requests, then writing.[/]")

    previous_handler = signal.signal(signal.SIGINT, handle_interrupt)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Exporting Cloud Run services...", total=None)
            result = exporter.run(cancel_event)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print_summary(result)
    sys.exit(result.exit_code)


def print_summary(result: ExportResult) -> None:
    if result.errors:
        console.print("\n[red]✗ Export failed[/]")
        for error in result.errors:
            console.print(f"  [red]•[/] {error}")
    else:
        console.print(f"\n[green]✓[/] Exported {result.resources_exported} services")
        console.print(f"[green]✓[/] Output written to: {result.output_path}")
        if result.diff is not None:
            print_diff(result.diff)

    if result.skipped:
        console.print(f"\n[red]Skipped {len(result.skipped)} services:[/]")
        for skipped in result.skipped:
            console.print(f"  [red]•[/] {skipped.ref} ({skipped.kind.value}): {skipped.reason}")

    if result.cancelled:
        console.print(f"\n[yellow]Not exported (cancelled): {len(result.cancelled)}[/]")
        for key in result.cancelled:
            console.print(f"  • {key}")

    if result.warnings:
        console.print("\n[yellow]Warnings:[/]")
        for warning in result.warnings:
            console.print(f"  • {warning}")


def print_diff(diff: ManifestDiff) -> None:
    if not diff.has_changes:
        console.print("[green]✓[/] No changes since the previous export")
        return
    for label, keys, color in (
        ("Added", diff.added, "green"),
        ("Changed", diff.changed, "yellow"),
        ("Removed", diff.removed, "red"),
    ):
        if keys:
            console.print(f"[{color}]{label}:[/] {', '.join(keys)}")


@app.command()
def validate() -> None:
    """Validate that gcloud is installed and configured."""
    runner = GcloudRunner()

    console.print("[bold]Checking prerequisites...[/]\n")

    if not runner.check_gcloud_installed():
        console.print("[red]✗[/] gcloud: not found")
        console.print("  Install: https://cloud.google.com/sdk/docs/install")
        sys.exit(1)

    version = runner.get_gcloud_version()
    console.print(f"[green]✓[/] gcloud: {version or 'installed'}")

    project_id = runner.get_config_value("project")
    if project_id:
        console.print(f"[green]✓[/] project: {project_id}")
    else:
        console.print("[yellow]![/] project: not configured (pass --project or set PROJECT_ID)")

    region = runner.get_config_value("run/region") or runner.get_config_value("compute/region")
    console.print(f"[green]✓[/] region: {region or f'{DEFAULT_REGION} (default)'}")

    console.print("\n[green]All prerequisites satisfied![/]")


@app.command()
def diff(
    previous: Annotated[
        Path,
        typer.Argument(help="Previous export directory or manifest.json"),
    ],
    current: Annotated[
        Path,
        typer.Argument(help="Current export directory or manifest.json"),
    ],
) -> None:
    """Compare two exports without contacting the cloud."""
    try:
        old = load_manifest_file(previous)
        new = load_manifest_file(current)
    except WriteError as e:
        console.print(f"[red]Error: {e}[/]")
        sys.exit(2)

    writer = ExportWriter(ExportConfig(project_id=new.project_id, output_dir=current))
    changes = writer.diff(old, new)
    print_diff(changes)
    sys.exit(1 if changes.has_changes else 0)


if __name__ == "__main__":
    app()
