"""Shared pytest fixtures for keel-core tests.

For unit-specific fixtures (fakes, stores, the pipeline harness), see
unit/conftest.py.

NOTE: Do NOT add __init__.py to test directories - pytest uses importlib mode
which can cause namespace collisions with __init__.py files.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


@pytest.fixture
def lock_dir(tmp_path: Path) -> Path:
    """Per-test directory for namespace and signing lock files."""
    path = tmp_path / "locks"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def isolated_lock_dir(lock_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Keep lock files of code paths without an explicit lock_dir out of the temp dir."""
    monkeypatch.setenv("KEEL_LOCK_DIR", str(lock_dir))
    yield
