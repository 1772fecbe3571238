from __future__ import annotations

import pytest

from fleetsync.models import (
    DiffStats,
    FileChange,
    MergeStrategy,
    PrOptions,
    PullRequest,
    RepoDescriptor,
    SyncResult,
)
from fleetsync.pr_merge import PullRequestMergeHandler


_REPO = RepoDescriptor(
    platform="github",
    owner="acme",
    repo="widgets",
    host="github.com",
    clone_url="https://github.com/acme/widgets.git",
)
_CHANGES = (FileChange("a.yml", "x", "update"), FileChange("kept.txt", None, "skip"))


class FakeGateway:
    def __init__(
        self,
        *,
        create_error: Exception | None = None,
        merge_error: Exception | None = None,
    ) -> None:
        self.create_error = create_error
        self.merge_error = merge_error
        self.created: list[tuple[str, str, str, str]] = []
        self.auto_merged: list[tuple[int, MergeStrategy]] = []
        self.merged: list[dict[str, object]] = []

    def find_open_pull_request(self, *, head: str, base: str | None = None) -> PullRequest | None:
        _ = head, base
        return None

    def close_pull_request(self, pr: PullRequest) -> None:
        _ = pr

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        if self.create_error is not None:
            raise self.create_error
        self.created.append((title, head, base, body))
        return PullRequest(
            number=11, html_url="https://github.com/acme/widgets/pull/11", node_id="N"
        )

    def enable_auto_merge(self, pr: PullRequest, *, strategy: MergeStrategy) -> None:
        if self.merge_error is not None:
            raise self.merge_error
        self.auto_merged.append((pr.number, strategy))

    def merge_now(
        self,
        pr: PullRequest,
        *,
        strategy: MergeStrategy,
        head: str,
        delete_branch: bool,
        bypass_reason: str | None = None,
    ) -> None:
        if self.merge_error is not None:
            raise self.merge_error
        self.merged.append(
            {
                "number": pr.number,
                "strategy": strategy,
                "head": head,
                "delete_branch": delete_branch,
                "bypass_reason": bypass_reason,
            }
        )


def _run(
    handler: PullRequestMergeHandler, gateway: FakeGateway, options: PrOptions
) -> SyncResult:
    return handler.create_and_merge(
        _REPO,
        "chore/sync-config",
        "main",
        _CHANGES,
        options,
        gateway,
        diff_stats=DiffStats(modified_count=1),
    )


def test_auto_mode_creates_pr_and_enables_auto_merge() -> None:
    gateway = FakeGateway()

    result = _run(PullRequestMergeHandler(), gateway, PrOptions(merge="auto"))

    assert result.success is True
    assert result.stage == "merge_handled"
    assert result.pr_url == "https://github.com/acme/widgets/pull/11"
    assert result.merge_result.auto_merge_enabled is True
    assert result.file_changes == (FileChange("a.yml", "x", "update"),)
    title, head, base, body = gateway.created[0]
    assert title == "chore: sync a.yml"
    assert (head, base) == ("chore/sync-config", "main")
    assert "- Updated `a.yml`" in body
    assert gateway.auto_merged == [(11, "squash")]


def test_manual_mode_leaves_pr_open() -> None:
    gateway = FakeGateway()

    result = _run(PullRequestMergeHandler(), gateway, PrOptions(merge="manual"))

    assert result.merge_result is None
    assert gateway.auto_merged == []
    assert gateway.merged == []


def test_force_mode_merges_immediately() -> None:
    gateway = FakeGateway()
    options = PrOptions(
        merge="force",
        merge_strategy="rebase",
        bypass_reason="fleet rollout",
        delete_branch=False,
    )

    result = _run(PullRequestMergeHandler(), gateway, options)

    assert result.merge_result.merged is True
    assert gateway.merged == [
        {
            "number": 11,
            "strategy": "rebase",
            "head": "chore/sync-config",
            "delete_branch": False,
            "bypass_reason": "fleet rollout",
        }
    ]


def test_merge_failure_is_reported_but_sync_succeeds() -> None:
    gateway = FakeGateway(merge_error=RuntimeError("Auto merge is not allowed"))

    result = _run(PullRequestMergeHandler(), gateway, PrOptions(merge="auto"))

    assert result.success is True
    assert result.merge_result.success is False
    assert "Auto merge is not allowed" in result.merge_result.message


def test_create_failure_fails_the_sync() -> None:
    gateway = FakeGateway(create_error=RuntimeError("HTTP 422"))

    result = _run(PullRequestMergeHandler(), gateway, PrOptions())

    assert result.success is False
    assert result.stage == "failed"
    assert result.message == "Failed to create PR: HTTP 422"


def test_dry_run_never_calls_gateway() -> None:
    gateway = FakeGateway(create_error=AssertionError("should not be called"))

    result = _run(PullRequestMergeHandler(dry_run=True), gateway, PrOptions())

    assert result.success is True
    assert result.message == "Would create PR: chore: sync a.yml"


def test_pr_template_is_applied() -> None:
    gateway = FakeGateway()

    _run(PullRequestMergeHandler(pr_template="Files:\n{{FILE_CHANGES}}"), gateway, PrOptions())

    assert gateway.created[0][3] == "Files:\n- Updated `a.yml`"


@pytest.mark.parametrize("strategy", ["merge", "squash", "rebase"])
def test_configured_strategy_is_passed_through(strategy: MergeStrategy) -> None:
    gateway = FakeGateway()

    _run(PullRequestMergeHandler(), gateway, PrOptions(merge="auto", merge_strategy=strategy))

    assert gateway.auto_merged == [(11, strategy)]
