"""Unit tests for the keel CLI.

Runs go through ``--dry-run`` (in-memory registry and cluster) with a shell
build command, no scanners and a stubbed ``docker`` binary, so the full
run → approve → resume → status → verify cycle executes in-process.
"""

from __future__ import annotations

import json
import stat
import subprocess
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import structlog
import yaml
from click.testing import CliRunner, Result

from keel_core.cli import cli
from keel_core.cli.utils import ExitCode
from keel_core.signing import KeyPair
from testing.fakes import KEY_PASSWORD, REPOSITORY, digest_of

_real_run = subprocess.run


def fake_docker(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
    if cmd[0] != "docker":
        return _real_run(cmd, **kwargs)
    if cmd[1] == "build":
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")
    return subprocess.CompletedProcess(cmd, 0, stdout=digest_of(" ".join(cmd)) + "\n", stderr="")


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    structlog.reset_defaults()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    source = tmp_path / "src"
    source.mkdir()
    (source / "Dockerfile").write_text("FROM eclipse-temurin:17-jre\n")
    return source


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "keel.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "registry": {"repository": REPOSITORY},
                "build": {"command": ["sh", "-c", "mkdir -p target && echo jar > target/app.jar"]},
                "scan": {"scanners": []},
                "deploy": {"applier": "memory"},
                "state_dir": str(tmp_path / ".keel"),
            }
        )
    )
    return path


@pytest.fixture
def signing_env(monkeypatch: pytest.MonkeyPatch, key_pair: KeyPair) -> None:
    monkeypatch.setenv("KEEL_SECRET_SIGNING_PRIVATE_KEY", key_pair.private_pem.decode())
    monkeypatch.setenv("KEEL_SECRET_SIGNING_KEY_PASSWORD", KEY_PASSWORD.decode())
    monkeypatch.setenv("KEEL_SECRET_SIGNING_PUBLIC_KEY", key_pair.public_pem.decode())


def keel(runner: CliRunner, config_file: Path, *args: str) -> Result:
    with patch("keel_core.image.subprocess.run", side_effect=fake_docker):
        return runner.invoke(cli, ["-c", str(config_file), "--log-level", "WARNING", *args])


def start_run(runner: CliRunner, config_file: Path, source_dir: Path, branch: str) -> dict[str, Any]:
    result = keel(
        runner,
        config_file,
        "run",
        "--branch",
        f"refs/heads/{branch}",
        "--commit",
        "3f2c1a9",
        "--build-id",
        "42",
        "--source-dir",
        str(source_dir),
        "--dry-run",
        "--output",
        "json",
    )
    assert result.exit_code == 0, result.output
    record: dict[str, Any] = json.loads(result.stdout)
    return record


@pytest.mark.usefixtures("signing_env")
class TestRunLifecycle:
    def test_dev_run_deploys(self, runner: CliRunner, config_file: Path, source_dir: Path) -> None:
        record = start_run(runner, config_file, source_dir, "dev")

        assert record["state"] == "succeeded"
        assert record["image"]["tag"] == "42"
        assert record["image"]["digest"].startswith("sha256:")
        assert [d["namespace"] for d in record["deployments"]] == ["dev"]

    def test_approval_cycle(self, runner: CliRunner, config_file: Path, source_dir: Path) -> None:
        record = start_run(runner, config_file, source_dir, "staging")
        run_id = record["context"]["run_id"]
        assert record["state"] == "pending"
        assert record["pending_gate"] == "staging"

        approved = keel(runner, config_file, "approve", "staging", run_id, "--approver", "alice")
        assert approved.exit_code == 0, approved.output
        assert "Approved staging" in approved.stdout
        assert f"keel resume {run_id}" in approved.stderr

        resumed = keel(runner, config_file, "resume", run_id)
        assert resumed.exit_code == 0, resumed.output
        assert "State:     succeeded" in resumed.stdout

        status = keel(runner, config_file, "status", run_id, "--output", "json")
        assert json.loads(status.stdout)["state"] == "succeeded"

        history = keel(runner, config_file, "history", "--stage", "staging")
        assert history.exit_code == 0
        assert "staging" in history.stdout
        assert f"{REPOSITORY}:42" in history.stdout

        verified = keel(runner, config_file, "verify", record["image"]["digest"])
        assert verified.exit_code == 0, verified.output
        assert "Verified" in verified.stdout

    def test_cancel_parked_run(self, runner: CliRunner, config_file: Path, source_dir: Path) -> None:
        run_id = start_run(runner, config_file, source_dir, "staging")["context"]["run_id"]

        cancelled = keel(runner, config_file, "cancel", run_id)
        assert cancelled.exit_code == 0, cancelled.output
        assert f"Run {run_id} cancelled" in cancelled.stdout

        again = keel(runner, config_file, "cancel", run_id)
        assert again.exit_code == ExitCode.INVALID_STATE

    def test_status_lists_runs(self, runner: CliRunner, config_file: Path, source_dir: Path) -> None:
        run_id = start_run(runner, config_file, source_dir, "dev")["context"]["run_id"]

        listing = keel(runner, config_file, "status")

        assert listing.exit_code == 0
        assert run_id in listing.stdout
        assert "succeeded" in listing.stdout

    def test_verify_rejects_other_key(
        self,
        runner: CliRunner,
        config_file: Path,
        source_dir: Path,
        tmp_path: Path,
    ) -> None:
        digest = start_run(runner, config_file, source_dir, "dev")["image"]["digest"]
        generated = keel(runner, config_file, "keys", "generate", "--output-dir", str(tmp_path / "other"), "--password", "")
        assert generated.exit_code == 0, generated.output

        result = keel(runner, config_file, "verify", digest, "--public-key", str(tmp_path / "other" / "keel.pub"))

        assert result.exit_code == ExitCode.SIGNATURE_ERROR
        assert "does not verify" in result.stderr


class TestErrors:
    def test_missing_config(self, runner: CliRunner, tmp_path: Path) -> None:
        result = keel(runner, tmp_path / "missing.yaml", "status")

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR
        assert "Configuration file not found" in result.stderr

    def test_unwatched_branch(self, runner: CliRunner, config_file: Path, source_dir: Path) -> None:
        result = keel(
            runner,
            config_file,
            "run",
            "--branch",
            "feature/login",
            "--commit",
            "3f2c1a9",
            "--build-id",
            "42",
            "--source-dir",
            str(source_dir),
            "--dry-run",
        )

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR

    def test_missing_signing_key_fails_the_run(
        self,
        runner: CliRunner,
        config_file: Path,
        source_dir: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.delenv("KEEL_SECRET_SIGNING_PRIVATE_KEY", raising=False)

        result = keel(
            runner,
            config_file,
            "run",
            "--branch",
            "dev",
            "--commit",
            "3f2c1a9",
            "--build-id",
            "42",
            "--source-dir",
            str(source_dir),
            "--dry-run",
        )

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR
        assert "State:     failed" in result.stdout

    def test_unknown_run(self, runner: CliRunner, config_file: Path) -> None:
        result = keel(runner, config_file, "status", "nope")

        assert result.exit_code == ExitCode.INVALID_STATE
        assert "Run not found" in result.stderr

    def test_approve_unknown_run(self, runner: CliRunner, config_file: Path) -> None:
        result = keel(runner, config_file, "approve", "prod", "nope")

        assert result.exit_code == ExitCode.INVALID_STATE

    def test_verify_rejects_malformed_digest(self, runner: CliRunner, config_file: Path) -> None:
        result = keel(runner, config_file, "verify", "latest")

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR

    def test_verify_without_signature(self, runner: CliRunner, config_file: Path) -> None:
        result = keel(runner, config_file, "verify", digest_of("unsigned"))

        assert result.exit_code == ExitCode.SIGNATURE_ERROR
        assert "No signature recorded" in result.stderr

    def test_history_empty(self, runner: CliRunner, config_file: Path) -> None:
        result = keel(runner, config_file, "history")

        assert result.exit_code == 0
        assert "No deployments recorded" in result.stderr


class TestKeys:
    def test_generate(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        out = tmp_path / "keys"

        result = keel(runner, config_file, "keys", "generate", "--output-dir", str(out), "--password", "s3cret")

        assert result.exit_code == 0, result.output
        assert "Key id:" in result.stdout
        private = out / "keel.key"
        assert b"ENCRYPTED PRIVATE KEY" in private.read_bytes()
        assert stat.S_IMODE(private.stat().st_mode) == 0o600
        assert (out / "keel.pub").read_bytes().startswith(b"-----BEGIN PUBLIC KEY-----")

    def test_generate_refuses_to_overwrite(self, runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
        out = tmp_path / "keys"
        out.mkdir()
        (out / "keel.key").write_text("existing")

        result = keel(runner, config_file, "keys", "generate", "--output-dir", str(out), "--password", "")

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR
        assert (out / "keel.key").read_text() == "existing"


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert result.stdout.startswith("keel ")
