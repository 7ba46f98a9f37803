"""Shared test helpers for keel.

Components:
    fakes: In-memory builders and scanners implementing the pipeline's
        capability interfaces

Usage:
    from testing.fakes import FakeBuilder, FakeScanner, finding

    def test_blocks_critical(make_harness) -> None:
        harness = make_harness(scanners=[FakeScanner(findings=[finding("CVE-1", Severity.CRITICAL)])])
        ...
"""

from __future__ import annotations
