"""Unit tests for approval stores and approval waiting."""

from __future__ import annotations

from pathlib import Path

import pytest

from keel_core.approvals import FileApprovalStore, InMemoryApprovalStore, wait_for_approval
from keel_core.errors import ApprovalTimeoutError
from keel_core.schemas.stages import StageName


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class TestStores:
    def test_in_memory_store(self) -> None:
        store = InMemoryApprovalStore()

        store.record(StageName.PROD, "run-1", approver="alice")

        assert store.is_approved(StageName.PROD, "run-1")
        assert not store.is_approved(StageName.STAGING, "run-1")
        assert not store.is_approved(StageName.PROD, "run-2")

    def test_file_store_is_visible_to_other_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "approvals.jsonl"
        FileApprovalStore(path).record(StageName.STAGING, "run-1", approver="bob", comment="LGTM")

        other = FileApprovalStore(path)

        assert other.is_approved(StageName.STAGING, "run-1")
        [approval] = other.approvals()
        assert approval.approver == "bob"
        assert approval.comment == "LGTM"

    def test_file_store_skips_corrupt_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "approvals.jsonl"
        store = FileApprovalStore(path)
        store.record(StageName.PROD, "run-1", approver="alice")
        with path.open("a", encoding="utf-8") as f:
            f.write("{not json\n")

        assert len(store.approvals()) == 1

    def test_missing_file_has_no_approvals(self, tmp_path: Path) -> None:
        assert FileApprovalStore(tmp_path / "none.jsonl").approvals() == []


class TestWaitForApproval:
    def test_returns_immediately_when_approved(self) -> None:
        store = InMemoryApprovalStore()
        store.record(StageName.PROD, "run-1", approver="alice")

        wait_for_approval(store, StageName.PROD, "run-1", timeout_seconds=0)

    def test_zero_timeout_checks_once(self) -> None:
        clock = FakeClock()

        with pytest.raises(ApprovalTimeoutError):
            wait_for_approval(
                InMemoryApprovalStore(),
                StageName.PROD,
                "run-1",
                timeout_seconds=0,
                sleep=clock.sleep,
                clock=clock,
            )
        assert clock.now == 0.0

    def test_polls_until_approved(self) -> None:
        clock = FakeClock()
        store = InMemoryApprovalStore()

        def sleep(seconds: float) -> None:
            clock.sleep(seconds)
            if clock.now >= 20:
                store.record(StageName.STAGING, "run-1", approver="carol")

        wait_for_approval(
            store,
            StageName.STAGING,
            "run-1",
            timeout_seconds=60,
            poll_interval=10,
            sleep=sleep,
            clock=clock,
        )
        assert clock.now == 20

    def test_times_out(self) -> None:
        clock = FakeClock()

        with pytest.raises(ApprovalTimeoutError) as exc_info:
            wait_for_approval(
                InMemoryApprovalStore(),
                StageName.PROD,
                "run-1",
                timeout_seconds=25,
                poll_interval=10,
                sleep=clock.sleep,
                clock=clock,
            )

        assert exc_info.value.waited_seconds == 25
        assert exc_info.value.stage == "prod"
