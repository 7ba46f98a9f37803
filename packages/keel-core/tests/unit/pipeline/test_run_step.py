"""Unit tests for bounded pipeline steps."""

from __future__ import annotations

import threading

import pytest
import structlog

from keel_core.errors import BuildError, StageTimeoutError
from keel_core.pipeline import run_step


class TestRunStep:
    def test_returns_the_result(self) -> None:
        assert run_step("add", 1.0, lambda a, b: a + b, 2, 3) == 5

    def test_propagates_errors(self) -> None:
        def fail() -> None:
            raise BuildError("mvn package", "compilation failed", returncode=1)

        with pytest.raises(BuildError, match="compilation failed"):
            run_step("build", 1.0, fail)

    def test_raises_timeout_when_the_step_overruns(self) -> None:
        release = threading.Event()

        with pytest.raises(StageTimeoutError) as exc_info:
            run_step("scan-image", 0.05, release.wait, 5.0)
        release.set()

        assert exc_info.value.step == "scan-image"
        assert exc_info.value.exit_code == 12

    def test_bound_log_context_reaches_the_worker(self) -> None:
        structlog.contextvars.bind_contextvars(run_id="run-1")
        try:
            seen = run_step("ctx", 1.0, lambda: structlog.contextvars.get_contextvars().get("run_id"))
        finally:
            structlog.contextvars.clear_contextvars()

        assert seen == "run-1"
