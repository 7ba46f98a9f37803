"""Promotion pipeline state machine.

Sequences a run through Build (build, scan, push, sign) and the deploy
chain Dev → Staging → Prod:

    pending → building → scanning → signing → pushed
            → {dev_deploy | staging_deploy | prod_deploy}
            → succeeded | failed

plus ``cancelled``. Each transition produces a new immutable ``RunRecord``
snapshot that is persisted before the next step starts, so ``status`` and
``resume`` work from any process.

Gates:
    - The scan gate must pass before anything is pushed or signed.
    - A deploy stage runs only when its branch is routed to it, its upstream
      stage succeeded or was skipped in this run, its approval is recorded
      (when required), and the image signature re-verifies.
    - A missing approval parks the run as ``pending``; it is picked up
      again by ``resume`` or ended by ``cancel``.

Every other gate or step failure ends the run ``failed``. Nothing is rolled
back.

Example:
    >>> pipeline = PromotionPipeline(config=config, builder=..., ...)
    >>> record = pipeline.trigger("refs/heads/dev", commit_id="3f2c1a9", build_id="42")
    >>> record.state
    <RunState.SUCCEEDED: 'succeeded'>
"""

from __future__ import annotations

import contextvars
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

import structlog

from keel_core.approvals import ApprovalGate, wait_for_approval
from keel_core.builder import Builder
from keel_core.deploy.executor import DeploymentExecutor, build_release_spec
from keel_core.errors import (
    ApprovalTimeoutError,
    InvalidRunStateError,
    KeelError,
    PromotionGateError,
    RegistryError,
    StageTimeoutError,
)
from keel_core.image import ImageBuilder
from keel_core.pipeline.cancellation import CancellationSource, CancellationToken
from keel_core.pipeline.routing import RoutingTable
from keel_core.provenance import ProvenanceStore
from keel_core.registry import Registry
from keel_core.resilience import RetryPolicy
from keel_core.scanning.gate import ScanGate
from keel_core.schemas.config import PipelineConfig, StageConfig
from keel_core.schemas.pipeline import (
    DEPLOY_STATES,
    RunContext,
    RunRecord,
    RunState,
    StageResult,
    StageStatus,
)
from keel_core.schemas.scan import ScanResult, ScanTargetKind
from keel_core.schemas.stages import StageName
from keel_core.signing import SigningService
from keel_core.telemetry.sanitization import sanitize_error_message
from keel_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_GATE_SATISFIED = (StageStatus.SUCCEEDED, StageStatus.SKIPPED)


class _RunCancelled(Exception):
    """Internal signal: the run was cancelled at a stage boundary."""


@dataclass
class _Progress:
    """Stage currently executing within one ``_drive`` call."""

    stage: StageName | None = None
    started_at: datetime | None = None

    def begin(self, stage: StageName) -> None:
        self.stage = stage
        self.started_at = datetime.now(timezone.utc)

    def end(self) -> None:
        self.stage = None
        self.started_at = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def run_step(step: str, timeout_seconds: float, func: Callable[..., T], *args: object) -> T:
    """Run ``func`` as one blocking step bounded by ``timeout_seconds``.

    The call runs on a worker thread; on timeout the run moves on and the
    worker is abandoned.

    Raises:
        StageTimeoutError: If the step does not finish in time.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"keel-{step}")
    future = pool.submit(contextvars.copy_context().run, func, *args)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        raise StageTimeoutError(step, timeout_seconds) from None
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


class PromotionPipeline:
    """Runs pipeline runs through the promotion state machine.

    All collaborators are capability interfaces, so the same engine drives
    real tools or in-memory stand-ins.
    """

    def __init__(
        self,
        *,
        config: PipelineConfig,
        builder: Builder,
        image_builder: ImageBuilder,
        scan_gate: ScanGate,
        registry: Registry,
        signing: SigningService,
        executor: DeploymentExecutor,
        approvals: ApprovalGate,
        store: ProvenanceStore,
        cancellation: CancellationSource | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.routing = RoutingTable(config)
        self.builder = builder
        self.image_builder = image_builder
        self.scan_gate = scan_gate
        self.registry = registry
        self.signing = signing
        self.executor = executor
        self.approvals = approvals
        self.store = store
        self.cancellation = cancellation or CancellationToken()
        self._sleep = sleep
        self._clock = clock
        self._registry_retry = RetryPolicy(
            config.registry.retry,
            retryable_exceptions=(RegistryError,),
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def trigger(
        self,
        branch: str,
        commit_id: str,
        build_id: str,
        source_dir: Path | None = None,
    ) -> RunRecord:
        """Start a run for a push to ``branch``.

        Raises:
            UnwatchedBranchError: If the branch does not trigger the pipeline.
        """
        normalized = self.routing.require_watched(branch)
        context = RunContext(
            branch=normalized,
            commit_id=commit_id,
            build_id=build_id,
            repository=self.config.registry.repository,
            source_dir=source_dir if source_dir is not None else Path("."),
        )
        return self.start(context)

    def start(self, context: RunContext) -> RunRecord:
        """Run the pipeline for ``context`` until it finishes or parks."""
        record = RunRecord(context=context)
        self.store.save_run(record)
        logger.info(
            "run_started",
            run_id=context.run_id,
            branch=context.branch,
            commit_id=context.commit_id,
            build_id=context.build_id,
        )
        return self._drive(record)

    def resume(self, run_id: str) -> RunRecord:
        """Re-evaluate the gate a parked run is waiting on.

        Raises:
            InvalidRunStateError: If the run is unknown, finished, or not parked.
        """
        record = self._load(run_id, "resume")
        if record.is_terminal or record.pending_gate is None:
            raise InvalidRunStateError(run_id, record.state.value, "resume")
        logger.info("run_resumed", run_id=run_id, pending_gate=record.pending_gate.value)
        return self._drive(record)

    def cancel(self, run_id: str) -> RunRecord:
        """Request cancellation of a run.

        A run parked at an approval gate is cancelled immediately. A run in
        progress stops at its next stage boundary.

        Raises:
            InvalidRunStateError: If the run is unknown or already finished.
        """
        record = self._load(run_id, "cancel")
        if record.is_terminal:
            raise InvalidRunStateError(run_id, record.state.value, "cancel")
        self.cancellation.cancel(run_id)
        if record.pending_gate is not None:
            progress = _Progress()
            progress.begin(record.pending_gate)
            return self._finish_cancelled(record, progress)
        return record

    def status(self, run_id: str) -> RunRecord | None:
        """Latest persisted snapshot of a run."""
        return self.store.load_run(run_id)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _drive(self, record: RunRecord) -> RunRecord:
        progress = _Progress()
        with create_span(
            "keel.pipeline.run",
            attributes={
                "keel.run_id": record.run_id,
                "keel.branch": record.context.branch,
                "keel.build_id": record.context.build_id,
            },
        ) as span:
            try:
                build = record.stage_result(StageName.BUILD)
                if build is None or build.status is not StageStatus.SUCCEEDED:
                    record = self._build_stage(record, progress)
                record = self._deploy_stages(record, progress)
            except _RunCancelled:
                record = self._finish_cancelled(self._latest(record), progress)
            except KeelError as e:
                record = self._fail(self._latest(record), progress, e)
            span.set_attribute("keel.run.state", record.state.value)
        return record

    def _build_stage(self, record: RunRecord, progress: _Progress) -> RunRecord:
        """Build → scan → push → sign. Always runs, whatever the branch."""
        context = record.context
        timeouts = self.config.timeouts
        self._check_cancelled(record)
        progress.begin(StageName.BUILD)

        with create_span("keel.pipeline.stage", attributes={"keel.stage": StageName.BUILD.value}):
            record = self._transition(record, RunState.BUILDING)
            artifact = run_step(
                "build",
                timeouts.build_seconds,
                self.builder.build,
                context,
                timeouts.build_seconds,
            )
            image = run_step(
                "image",
                timeouts.build_seconds,
                self.image_builder.assemble,
                context,
                artifact,
                timeouts.build_seconds,
            )
            self._check_cancelled(record)
            record = self._transition(record, RunState.SCANNING, artifact=artifact, image=image)

            scan_results: list[ScanResult] = []
            targets = (
                (str(context.source_dir), ScanTargetKind.SOURCE),
                (image.reference, ScanTargetKind.IMAGE),
            )
            for target, kind in targets:
                if not self.scan_gate.scanners_for(kind):
                    continue
                result = run_step(
                    f"scan-{kind.value}",
                    timeouts.scan_seconds,
                    self.scan_gate.evaluate,
                    target,
                    kind,
                    timeouts.scan_seconds,
                )
                scan_results.append(result)
                record = record.advance(scan_results=list(scan_results))
                self.store.save_run(record)
                self.scan_gate.require_passed(result)
            self._check_cancelled(record)
            record = self._transition(record, RunState.SIGNING, scan_results=scan_results)

            pushed = run_step(
                "push",
                timeouts.push_seconds,
                self._registry_retry.call,
                self.registry.push,
                image,
            )
            if pushed.digest is None:
                raise RegistryError(pushed.repository, f"push of {pushed.reference} returned no digest")
            signature = run_step(
                "sign",
                timeouts.sign_seconds,
                self._registry_retry.call,
                self.signing.sign,
                pushed,
            )
            self.store.save_scan_results(pushed.digest, scan_results)
            self.store.save_signature(signature)
            self._check_cancelled(record)

        record = self._transition(
            record,
            RunState.PUSHED,
            image=pushed,
            signature=signature,
            stage_results=record.with_stage_result(self._stage_result(progress, StageStatus.SUCCEEDED)),
        )
        progress.end()
        return record

    def _deploy_stages(self, record: RunRecord, progress: _Progress) -> RunRecord:
        target = self.routing.select(record.context.branch)
        for stage in self.routing.stages:
            existing = record.stage_result(stage.name)
            if existing is not None and existing.status in _GATE_SATISFIED:
                continue
            if stage.name is not target:
                record = record.advance(
                    stage_results=record.with_stage_result(
                        StageResult(stage=stage.name, status=StageStatus.SKIPPED)
                    )
                )
                self.store.save_run(record)
                logger.debug("stage_skipped", run_id=record.run_id, stage=stage.name.value)
                continue

            self._check_cancelled(record)
            progress.begin(stage.name)
            with create_span("keel.pipeline.stage", attributes={"keel.stage": stage.name.value}):
                self._check_upstream(record, stage)
                if stage.approval_required and not self._approved(record, stage):
                    return self._park(record, progress, stage.name)
                record = self._deploy(record, stage, progress)
            progress.end()

        return self._transition(record, RunState.SUCCEEDED, pending_gate=None)

    def _check_upstream(self, record: RunRecord, stage: StageConfig) -> None:
        build = record.stage_result(StageName.BUILD)
        if build is None or build.status is not StageStatus.SUCCEEDED:
            raise PromotionGateError(stage.name.value, "build stage has not succeeded")

        upstream = stage.depends_on
        result = record.stage_result(upstream)
        if result is None or result.status not in _GATE_SATISFIED:
            status = result.status.value if result is not None else "not run"
            raise PromotionGateError(stage.name.value, f"upstream stage {upstream.value} is {status}")

        if stage.require_upstream_deployment and upstream.is_deploy:
            commit = record.context.commit_id
            if not self.executor.log.has_succeeded(upstream, commit):
                raise PromotionGateError(
                    stage.name.value,
                    f"commit {commit} has no successful deployment to {upstream.value}",
                )

    def _approved(self, record: RunRecord, stage: StageConfig) -> bool:
        try:
            wait_for_approval(
                self.approvals,
                stage.name,
                record.run_id,
                timeout_seconds=self.config.approval_wait_seconds,
                poll_interval=self.config.approval_poll_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )
        except ApprovalTimeoutError as e:
            logger.info(
                "approval_pending",
                run_id=record.run_id,
                stage=stage.name.value,
                waited_seconds=e.waited_seconds,
            )
            return False
        return True

    def _deploy(self, record: RunRecord, stage: StageConfig, progress: _Progress) -> RunRecord:
        image = record.image
        if image is None:
            raise PromotionGateError(stage.name.value, "run has no pushed image")
        self.signing.verify_or_raise(image, record.signature)

        record = self._transition(record, DEPLOY_STATES[stage.name], pending_gate=None)
        release = build_release_spec(stage, image, self.config.deploy)
        # Runs on this thread: the namespace lock and the deployment log entry
        # must settle before the run records the stage outcome.
        deployment = self.executor.deploy(
            record.run_id,
            stage.name,
            release,
            image,
            record.context.commit_id,
            stage.cluster,
            timeout_seconds=self.config.timeouts.deploy_seconds,
        )
        self._check_cancelled(record)
        return self._transition(
            record,
            record.state,
            deployments=[*record.deployments, deployment],
            stage_results=record.with_stage_result(self._stage_result(progress, StageStatus.SUCCEEDED)),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, run_id: str, operation: str) -> RunRecord:
        record = self.store.load_run(run_id)
        if record is None:
            raise InvalidRunStateError(run_id, "unknown", operation)
        return record

    def _latest(self, record: RunRecord) -> RunRecord:
        """Most recent persisted snapshot of the run ``record`` belongs to."""
        return self.store.load_run(record.run_id) or record

    def _check_cancelled(self, record: RunRecord) -> None:
        if self.cancellation.is_cancelled(record.run_id):
            raise _RunCancelled

    def _transition(self, record: RunRecord, state: RunState, **updates: object) -> RunRecord:
        previous = record.state
        record = record.advance(state=state, **updates)
        self.store.save_run(record)
        if record.is_terminal:
            self.cancellation.clear(record.run_id)
        if state is not previous:
            logger.info(
                "run_state_changed",
                run_id=record.run_id,
                from_state=previous.value,
                to_state=state.value,
            )
        return record

    @staticmethod
    def _stage_result(
        progress: _Progress,
        status: StageStatus,
        error: str | None = None,
    ) -> StageResult:
        assert progress.stage is not None
        return StageResult(
            stage=progress.stage,
            status=status,
            started_at=progress.started_at,
            finished_at=_now(),
            error=error,
        )

    def _park(self, record: RunRecord, progress: _Progress, stage: StageName) -> RunRecord:
        record = self._transition(
            record,
            RunState.PENDING,
            pending_gate=stage,
            stage_results=record.with_stage_result(
                self._stage_result(progress, StageStatus.AWAITING_APPROVAL)
            ),
        )
        logger.warning(
            "run_awaiting_approval",
            run_id=record.run_id,
            stage=stage.value,
            hint=f"keel approve {stage.value} {record.run_id}",
        )
        return record

    def _fail(self, record: RunRecord, progress: _Progress, error: KeelError) -> RunRecord:
        message = sanitize_error_message(str(error), max_length=2000)
        updates: dict[str, object] = {
            "error": message,
            "error_type": type(error).__name__,
            "exit_code": error.exit_code,
            "pending_gate": None,
        }
        if progress.stage is not None:
            updates["stage_results"] = record.with_stage_result(
                self._stage_result(progress, StageStatus.FAILED, error=message)
            )
        record = self._transition(record, RunState.FAILED, **updates)
        logger.error(
            "run_failed",
            run_id=record.run_id,
            stage=progress.stage.value if progress.stage else None,
            error_type=type(error).__name__,
            exit_code=error.exit_code,
            error=message,
        )
        return record

    def _finish_cancelled(self, record: RunRecord, progress: _Progress) -> RunRecord:
        updates: dict[str, object] = {"pending_gate": None}
        if progress.stage is not None:
            updates["stage_results"] = record.with_stage_result(
                self._stage_result(progress, StageStatus.CANCELLED)
            )
        record = self._transition(record, RunState.CANCELLED, **updates)
        logger.info("run_cancelled", run_id=record.run_id)
        return record


__all__ = ["PromotionPipeline", "run_step"]
