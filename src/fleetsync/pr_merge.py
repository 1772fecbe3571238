from __future__ import annotations

from collections.abc import Sequence
import logging

from fleetsync.gateways import PullRequestGateway
from fleetsync.messages import format_pr_body, format_pr_title
from fleetsync.models import (
    DiffStats,
    FileChange,
    MergeResult,
    MergeStrategy,
    PrOptions,
    PullRequest,
    RepoDescriptor,
    SyncResult,
)
from fleetsync.observability import log_event, log_warning


LOGGER = logging.getLogger("fleetsync.pr_merge")
DEFAULT_MERGE_STRATEGY: MergeStrategy = "squash"


class PullRequestMergeHandler:
    """Opens the sync pull request and applies the configured merge policy.

    A failed merge is reported on the result but never turns a created pull request
    into a failed sync.
    """

    def __init__(self, *, dry_run: bool = False, pr_template: str | None = None) -> None:
        self._dry_run = dry_run
        self._pr_template = pr_template

    def create_and_merge(
        self,
        repo: RepoDescriptor,
        branch_name: str,
        base_branch: str,
        changed_files: Sequence[FileChange],
        pr_options: PrOptions,
        gateway: PullRequestGateway,
        *,
        diff_stats: DiffStats | None = None,
    ) -> SyncResult:
        title = format_pr_title(changed_files)
        body = format_pr_body(changed_files, template=self._pr_template)
        file_changes = tuple(change for change in changed_files if change.action != "skip")

        if self._dry_run:
            return SyncResult(
                repo_name=repo.display_name,
                success=True,
                message=f"Would create PR: {title}",
                stage="pr_created",
                diff_stats=diff_stats,
                file_changes=file_changes,
            )

        try:
            pr = gateway.create_pull_request(title, branch_name, base_branch, body)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "pull_request_create_failed",
                repo=repo.display_name,
                branch=branch_name,
                error=str(exc),
            )
            return SyncResult(
                repo_name=repo.display_name,
                success=False,
                message=f"Failed to create PR: {exc}",
                stage="failed",
                diff_stats=diff_stats,
                file_changes=file_changes,
            )
        log_event(
            LOGGER,
            "pull_request_created",
            repo=repo.display_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
        )

        merge_result: MergeResult | None = None
        if pr_options.merge != "manual":
            merge_result = self._handle_merge(repo, pr, branch_name, pr_options, gateway)

        return SyncResult(
            repo_name=repo.display_name,
            success=True,
            message=f"PR created: {pr.html_url}",
            stage="merge_handled",
            pr_url=pr.html_url,
            merge_result=merge_result,
            diff_stats=diff_stats,
            file_changes=file_changes,
        )

    def _handle_merge(
        self,
        repo: RepoDescriptor,
        pr: PullRequest,
        branch_name: str,
        pr_options: PrOptions,
        gateway: PullRequestGateway,
    ) -> MergeResult:
        strategy = pr_options.merge_strategy or DEFAULT_MERGE_STRATEGY
        try:
            if pr_options.merge == "force":
                gateway.merge_now(
                    pr,
                    strategy=strategy,
                    head=branch_name,
                    delete_branch=pr_options.delete_branch,
                    bypass_reason=pr_options.bypass_reason,
                )
                result = MergeResult(
                    success=True,
                    message="PR merged with admin bypass",
                    merged=True,
                )
            else:
                gateway.enable_auto_merge(pr, strategy=strategy)
                result = MergeResult(
                    success=True,
                    message="Auto-merge enabled",
                    auto_merge_enabled=True,
                )
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "merge_failed",
                repo=repo.display_name,
                pr_number=pr.number,
                mode=pr_options.merge,
                error=str(exc),
            )
            return MergeResult(success=False, message=f"Merge failed: {exc}")

        log_event(
            LOGGER,
            "merge_handled",
            repo=repo.display_name,
            pr_number=pr.number,
            mode=pr_options.merge,
            strategy=strategy,
            merged=result.merged,
        )
        return result
