from __future__ import annotations

from typing import Protocol

from fleetsync.azure_gateway import AzureDevOpsGateway
from fleetsync.github_gateway import GitHubGateway
from fleetsync.gitlab_gateway import GitLabGateway
from fleetsync.models import MergeStrategy, PullRequest, RepoDescriptor


class PullRequestGateway(Protocol):
    def find_open_pull_request(
        self, *, head: str, base: str | None = None
    ) -> PullRequest | None: ...

    def close_pull_request(self, pr: PullRequest) -> None: ...

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest: ...

    def enable_auto_merge(self, pr: PullRequest, *, strategy: MergeStrategy) -> None: ...

    def merge_now(
        self,
        pr: PullRequest,
        *,
        strategy: MergeStrategy,
        head: str,
        delete_branch: bool,
        bypass_reason: str | None = None,
    ) -> None: ...


def gateway_for(repo: RepoDescriptor, token: str | None) -> PullRequestGateway:
    if repo.platform == "github":
        return GitHubGateway(owner=repo.owner, name=repo.repo, host=repo.host, token=token)
    if repo.platform == "gitlab":
        return GitLabGateway(owner=repo.owner, name=repo.repo, host=repo.host, token=token)
    if repo.project is None:
        raise ValueError(f"Azure DevOps repository {repo.display_name} requires a project")
    return AzureDevOpsGateway(
        owner=repo.owner,
        project=repo.project,
        name=repo.repo,
        host=repo.host,
        token=token,
    )
