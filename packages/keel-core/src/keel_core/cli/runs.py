"""Run lifecycle commands: run, resume, approve, cancel, status, history.

Example:
    $ keel run --branch refs/heads/dev --commit 3f2c1a9 --build-id 42
    $ keel approve prod 5e0c... --approver alice
    $ keel resume 5e0c...
    $ keel status 5e0c... --output json
"""

from __future__ import annotations

import getpass
from pathlib import Path

import click
import structlog

from keel_core.cli import _factory
from keel_core.cli.utils import ExitCode, error_exit, info, keel_error_exit, success, warn
from keel_core.config import load_config
from keel_core.errors import KeelError
from keel_core.schemas.config import PipelineConfig
from keel_core.schemas.deployment import DeploymentRecord
from keel_core.schemas.pipeline import RunRecord, RunState
from keel_core.schemas.stages import StageName

logger = structlog.get_logger(__name__)

_OUTPUT_CHOICE = click.Choice(["table", "json"])


def pipeline_config(ctx: click.Context) -> PipelineConfig:
    obj = ctx.ensure_object(dict)
    if "config" not in obj:
        try:
            obj["config"] = load_config(obj.get("config_path", Path("keel.yaml")))
        except KeelError as e:
            keel_error_exit(e)
    config: PipelineConfig = obj["config"]
    return config


def format_run(record: RunRecord, output_format: str = "table") -> str:
    """Render a run snapshot for CLI output."""
    if output_format == "json":
        return record.model_dump_json(indent=2)

    context = record.context
    lines = [
        f"Run ID:    {record.run_id}",
        f"State:     {record.state.value}",
        f"Branch:    {context.branch}",
        f"Commit:    {context.commit_id}",
        f"Build ID:  {context.build_id}",
    ]
    if record.image is not None:
        lines.append(f"Image:     {record.image.pinned_reference}")
    if record.pending_gate is not None:
        lines.append(f"Waiting:   approval for {record.pending_gate.value}")
    if record.stage_results:
        lines.append("Stages:")
        for result in record.stage_results:
            duration = f" ({result.duration_ms} ms)" if result.duration_ms is not None else ""
            lines.append(f"  {result.stage.value:<8} {result.status.value}{duration}")
    for scan in record.scan_results:
        verdict = "passed" if scan.passed else "FAILED"
        counts = ", ".join(f"{k}={v}" for k, v in scan.counts_by_severity().items() if v)
        lines.append(f"Scan:      {scan.target} {verdict}" + (f" [{counts}]" if counts else ""))
    if record.error:
        lines.append(f"Error:     {record.error_type}: {record.error}")
    return "\n".join(lines)


def _report(record: RunRecord, output_format: str) -> None:
    success(format_run(record, output_format))
    if record.state is RunState.FAILED:
        raise SystemExit(record.exit_code or ExitCode.GENERAL_ERROR)
    if record.pending_gate is not None:
        warn(
            "Run is waiting for approval",
            stage=record.pending_gate.value,
            approve=f"keel approve {record.pending_gate.value} {record.run_id}",
        )


@click.command(name="run", help="Run the pipeline for a branch push.")
@click.option("--branch", required=True, help="Pushed branch (refs/heads/ prefix accepted).")
@click.option("--commit", "commit_id", required=True, help="Source commit id.")
@click.option("--build-id", required=True, help="Build id; also the image tag.")
@click.option(
    "--source-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Source tree to build.",
)
@click.option("--dry-run", is_flag=True, help="Use in-memory registry and cluster.")
@click.option("--output", "output_format", type=_OUTPUT_CHOICE, default="table", show_default=True)
@click.pass_context
def run_command(
    ctx: click.Context,
    branch: str,
    commit_id: str,
    build_id: str,
    source_dir: Path,
    dry_run: bool,
    output_format: str,
) -> None:
    config = pipeline_config(ctx)
    pipeline = _factory.build_pipeline(config, dry_run=dry_run)
    try:
        record = pipeline.trigger(branch, commit_id, build_id, source_dir=source_dir)
    except KeelError as e:
        keel_error_exit(e)
    _report(record, output_format)


@click.command(name="resume", help="Re-evaluate a run waiting at an approval gate.")
@click.argument("run_id")
@click.option("--output", "output_format", type=_OUTPUT_CHOICE, default="table", show_default=True)
@click.pass_context
def resume_command(ctx: click.Context, run_id: str, output_format: str) -> None:
    config = pipeline_config(ctx)
    pipeline = _factory.build_pipeline(config)
    try:
        record = pipeline.resume(run_id)
    except KeelError as e:
        keel_error_exit(e)
    _report(record, output_format)


@click.command(name="approve", help="Approve a deploy stage of a run.")
@click.argument("stage", type=click.Choice([s.value for s in StageName if s.is_deploy]))
@click.argument("run_id")
@click.option("--approver", default=None, help="Approver identity (default: current user).")
@click.option("--comment", default=None, help="Optional approval comment.")
@click.pass_context
def approve_command(
    ctx: click.Context,
    stage: str,
    run_id: str,
    approver: str | None,
    comment: str | None,
) -> None:
    config = pipeline_config(ctx)
    record = _factory.provenance_store(config).load_run(run_id)
    if record is None:
        error_exit("Run not found", exit_code=ExitCode.INVALID_STATE, run_id=run_id)
    if record.is_terminal:
        error_exit(
            "Run has already finished",
            exit_code=ExitCode.INVALID_STATE,
            run_id=run_id,
            state=record.state.value,
        )
    approval = _factory.approval_store(config).record(
        StageName(stage),
        run_id,
        approver=approver or getpass.getuser(),
        comment=comment,
    )
    success(f"Approved {approval.stage.value} for run {run_id} by {approval.approver}")
    if record.pending_gate is not None and record.pending_gate.value == stage:
        info(f"Continue the run with: keel resume {run_id}")


@click.command(name="cancel", help="Cancel a run at its next stage boundary.")
@click.argument("run_id")
@click.pass_context
def cancel_command(ctx: click.Context, run_id: str) -> None:
    config = pipeline_config(ctx)
    pipeline = _factory.build_pipeline(config)
    try:
        record = pipeline.cancel(run_id)
    except KeelError as e:
        keel_error_exit(e)
    if record.state is RunState.CANCELLED:
        success(f"Run {run_id} cancelled")
    else:
        success(f"Cancellation requested for run {run_id} (state: {record.state.value})")


@click.command(name="status", help="Show a run, or list recent runs.")
@click.argument("run_id", required=False)
@click.option("--output", "output_format", type=_OUTPUT_CHOICE, default="table", show_default=True)
@click.option("--limit", type=int, default=20, show_default=True, help="Runs to list.")
@click.pass_context
def status_command(ctx: click.Context, run_id: str | None, output_format: str, limit: int) -> None:
    config = pipeline_config(ctx)
    store = _factory.provenance_store(config)
    try:
        if run_id is not None:
            record = store.load_run(run_id)
            if record is None:
                error_exit("Run not found", exit_code=ExitCode.INVALID_STATE, run_id=run_id)
            success(format_run(record, output_format))
            return

        records = store.list_runs()[:limit]
    except KeelError as e:
        keel_error_exit(e)
    if output_format == "json":
        success("[" + ",".join(r.model_dump_json() for r in records) + "]")
        return
    if not records:
        info("No runs recorded")
        return
    for r in records:
        success(
            f"{r.run_id}  {r.state.value:<15} {r.context.branch:<10} "
            f"build={r.context.build_id} updated={r.updated_at.isoformat()}"
        )


def _format_deployment(record: DeploymentRecord) -> str:
    action = record.action.value if record.action is not None else "-"
    line = (
        f"{record.recorded_at.isoformat()}  {record.stage.value:<8} {record.namespace:<10} "
        f"{record.outcome.value:<9} {action:<9} {record.image.reference}"
    )
    if record.error:
        line += f"  error={record.error}"
    return line


@click.command(name="history", help="Show the deployment log.")
@click.option("--namespace", default=None, help="Only this namespace.")
@click.option("--stage", type=click.Choice([s.value for s in StageName if s.is_deploy]), default=None)
@click.option("--output", "output_format", type=_OUTPUT_CHOICE, default="table", show_default=True)
@click.pass_context
def history_command(
    ctx: click.Context,
    namespace: str | None,
    stage: str | None,
    output_format: str,
) -> None:
    config = pipeline_config(ctx)
    records = _factory.deployment_log(config).records(
        namespace=namespace,
        stage=StageName(stage) if stage else None,
    )
    if output_format == "json":
        success("[" + ",".join(r.model_dump_json() for r in records) + "]")
        return
    if not records:
        info("No deployments recorded")
        return
    for record in records:
        success(_format_deployment(record))


__all__ = [
    "approve_command",
    "cancel_command",
    "format_run",
    "history_command",
    "resume_command",
    "run_command",
    "status_command",
]
