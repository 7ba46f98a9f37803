"""Manual approval gate for deploy stages.

An approval is a record ``(stage, run_id, approver)``. Stages configured
with ``approval_required`` only deploy once such a record exists. The
file-backed store is what ``keel approve`` writes to, so an approval given
from one shell is seen by a pipeline resumed from another.

Example:
    >>> store = FileApprovalStore(Path(".keel/approvals.jsonl"))
    >>> store.record(StageName.PROD, run_id, approver="alice")
    >>> store.is_approved(StageName.PROD, run_id)
    True
"""

from __future__ import annotations

import fcntl
import threading
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from keel_core.errors import ApprovalTimeoutError
from keel_core.schemas.stages import StageName

logger = structlog.get_logger(__name__)


class Approval(BaseModel):
    """Approval of one stage of one run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    stage: StageName
    run_id: str = Field(..., min_length=1)
    approver: str = Field(..., min_length=1)
    comment: str | None = Field(default=None)
    approved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@runtime_checkable
class ApprovalGate(Protocol):
    """Answers whether a stage of a run has been approved."""

    def is_approved(self, stage: StageName, run_id: str) -> bool: ...


class InMemoryApprovalStore:
    """Approvals held in process memory."""

    def __init__(self) -> None:
        self._approvals: dict[tuple[StageName, str], Approval] = {}
        self._lock = threading.Lock()

    def record(
        self,
        stage: StageName,
        run_id: str,
        approver: str,
        comment: str | None = None,
    ) -> Approval:
        approval = Approval(stage=stage, run_id=run_id, approver=approver, comment=comment)
        with self._lock:
            self._approvals[(stage, run_id)] = approval
        logger.info("approval_recorded", stage=stage.value, run_id=run_id, approver=approver)
        return approval

    def is_approved(self, stage: StageName, run_id: str) -> bool:
        with self._lock:
            return (stage, run_id) in self._approvals


class FileApprovalStore:
    """Approvals appended as JSON lines to a file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def record(
        self,
        stage: StageName,
        run_id: str,
        approver: str,
        comment: str | None = None,
    ) -> Approval:
        approval = Approval(stage=stage, run_id=run_id, approver=approver, comment=comment)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                f.write(approval.model_dump_json() + "\n")
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        logger.info("approval_recorded", stage=stage.value, run_id=run_id, approver=approver)
        return approval

    def approvals(self) -> list[Approval]:
        """All recorded approvals, oldest first. Unreadable lines are skipped."""
        if not self.path.exists():
            return []
        records: list[Approval] = []
        for lineno, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                records.append(Approval.model_validate_json(line))
            except ValidationError:
                logger.warning("approval_line_invalid", path=str(self.path), line=lineno)
        return records

    def is_approved(self, stage: StageName, run_id: str) -> bool:
        return any(a.stage is stage and a.run_id == run_id for a in self.approvals())


def wait_for_approval(
    gate: ApprovalGate,
    stage: StageName,
    run_id: str,
    timeout_seconds: float,
    poll_interval: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """Poll ``gate`` until the stage is approved.

    A zero timeout checks once.

    Raises:
        ApprovalTimeoutError: If no approval is recorded within ``timeout_seconds``.
    """
    start = clock()
    while True:
        if gate.is_approved(stage, run_id):
            logger.info("approval_granted", stage=stage.value, run_id=run_id)
            return
        waited = clock() - start
        if waited >= timeout_seconds:
            raise ApprovalTimeoutError(stage.value, run_id, waited)
        logger.debug("approval_waiting", stage=stage.value, run_id=run_id, waited_seconds=waited)
        sleep(min(poll_interval, max(timeout_seconds - waited, 0.0)))


__all__ = [
    "Approval",
    "ApprovalGate",
    "FileApprovalStore",
    "InMemoryApprovalStore",
    "wait_for_approval",
]
