"""Provenance store for runs, scan results and signatures.

Scan results and signatures are cached against the image digest; run
records are stored by run id so ``keel status`` and ``keel resume`` can pick
a run up from another process. Everything is JSON on the local filesystem,
written atomically.

Layout::

    <root>/runs/<run_id>.json
    <root>/scans/<digest hex>.json
    <root>/signatures/<digest hex>.json
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path

import structlog
from pydantic import TypeAdapter, ValidationError

from keel_core.errors import KeelError
from keel_core.schemas.artifacts import DIGEST_PATTERN, Signature
from keel_core.schemas.pipeline import RunRecord
from keel_core.schemas.scan import ScanResult

logger = structlog.get_logger(__name__)

_SCAN_LIST = TypeAdapter(list[ScanResult])


class ProvenanceError(KeelError):
    """Raised when a stored record cannot be read back."""


def _digest_key(digest: str) -> str:
    if not DIGEST_PATTERN.match(digest):
        raise ValueError(f"Invalid digest: {digest}")
    return digest.split(":", 1)[1]


def _write_atomic(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class ProvenanceStore:
    """Filesystem-backed store of run records and per-digest evidence."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    @property
    def runs_dir(self) -> Path:
        return self.root / "runs"

    def save_run(self, record: RunRecord) -> None:
        """Persist a run snapshot, replacing the previous one."""
        path = self.runs_dir / f"{record.run_id}.json"
        with self._lock:
            _write_atomic(path, record.model_dump_json(indent=2).encode("utf-8"))
        logger.debug("run_saved", run_id=record.run_id, state=record.state.value)

    def load_run(self, run_id: str) -> RunRecord | None:
        """Latest snapshot of ``run_id``, or None if unknown.

        Raises:
            ProvenanceError: If the stored record is corrupt.
        """
        path = self.runs_dir / f"{run_id}.json"
        if not path.exists():
            return None
        try:
            return RunRecord.model_validate_json(path.read_bytes())
        except ValidationError as e:
            raise ProvenanceError(f"Corrupt run record {path}: {e.error_count()} errors") from e

    def list_runs(self) -> list[RunRecord]:
        """All stored runs, most recently updated first."""
        if not self.runs_dir.exists():
            return []
        records = []
        for path in self.runs_dir.glob("*.json"):
            record = self.load_run(path.stem)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.updated_at, reverse=True)

    def save_scan_results(self, digest: str, results: list[ScanResult]) -> None:
        path = self.root / "scans" / f"{_digest_key(digest)}.json"
        with self._lock:
            _write_atomic(path, _SCAN_LIST.dump_json(results, indent=2))
        logger.debug("scan_results_saved", digest=digest, count=len(results))

    def load_scan_results(self, digest: str) -> list[ScanResult]:
        path = self.root / "scans" / f"{_digest_key(digest)}.json"
        if not path.exists():
            return []
        try:
            return _SCAN_LIST.validate_json(path.read_bytes())
        except ValidationError as e:
            raise ProvenanceError(f"Corrupt scan results {path}") from e

    def save_signature(self, signature: Signature) -> None:
        path = self.root / "signatures" / f"{_digest_key(signature.image_digest)}.json"
        with self._lock:
            _write_atomic(path, signature.model_dump_json(indent=2).encode("utf-8"))
        logger.debug("signature_saved", digest=signature.image_digest, key_id=signature.signer_key_id)

    def load_signature(self, digest: str) -> Signature | None:
        path = self.root / "signatures" / f"{_digest_key(digest)}.json"
        if not path.exists():
            return None
        try:
            return Signature.model_validate_json(path.read_bytes())
        except ValidationError as e:
            raise ProvenanceError(f"Corrupt signature {path}") from e


__all__ = ["ProvenanceError", "ProvenanceStore"]
