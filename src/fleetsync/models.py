from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


Platform = Literal["github", "gitlab", "azure"]
FileAction = Literal["create", "update", "delete", "skip"]
MergeMode = Literal["manual", "auto", "force", "direct"]
MergeStrategy = Literal["merge", "squash", "rebase"]
SyncStage = Literal[
    "auth_resolved",
    "session_ready",
    "branch_ready",
    "change_set_computed",
    "skipped",
    "committed",
    "pr_created",
    "merge_handled",
    "done",
    "failed",
]
TokenSource = Literal["installation", "environment", "none"]


@dataclass(frozen=True)
class RepoDescriptor:
    platform: Platform
    owner: str
    repo: str
    host: str
    clone_url: str
    project: str | None = None

    @property
    def display_name(self) -> str:
        if self.platform == "azure" and self.project:
            return f"{self.owner}/{self.project}/{self.repo}"
        return f"{self.owner}/{self.repo}"

    @property
    def repo_path(self) -> str:
        """Path of the repository under its host, as it appears in clone URLs."""
        if self.platform == "azure":
            return f"{self.owner}/{self.project or self.repo}/_git/{self.repo}"
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class DeclaredFile:
    file_name: str
    content: str | None
    delete_orphaned: bool | None = None
    create_only: bool = False
    executable: bool | None = None
    template: bool = False
    vars: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class PrOptions:
    merge: MergeMode = "auto"
    merge_strategy: MergeStrategy | None = None
    bypass_reason: str | None = None
    delete_branch: bool = True


@dataclass(frozen=True)
class RepoTarget:
    repo_id: str
    descriptor: RepoDescriptor
    files: tuple[DeclaredFile, ...]
    pr_options: PrOptions = PrOptions()


@dataclass(frozen=True)
class FileChange:
    file_name: str
    content: str | None
    action: FileAction


@dataclass
class DiffStats:
    new_count: int = 0
    modified_count: int = 0
    deleted_count: int = 0
    unchanged_count: int = 0

    def record(self, action: FileAction | Literal["unchanged"]) -> None:
        if action == "create":
            self.new_count += 1
        elif action == "update":
            self.modified_count += 1
        elif action == "delete":
            self.deleted_count += 1
        elif action == "unchanged":
            self.unchanged_count += 1

    @property
    def changed_count(self) -> int:
        return self.new_count + self.modified_count + self.deleted_count


@dataclass(frozen=True)
class CommitResult:
    sha: str
    verified: bool
    pushed: bool


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str
    node_id: str = ""


@dataclass(frozen=True)
class MergeResult:
    success: bool
    message: str
    merged: bool = False
    auto_merge_enabled: bool = False


@dataclass(frozen=True)
class AuthContext:
    token: str | None
    source: TokenSource


@dataclass(frozen=True)
class ManifestUpdate:
    rulesets: tuple[str, ...]


@dataclass(frozen=True)
class SyncResult:
    repo_name: str
    success: bool
    message: str
    stage: SyncStage
    skipped: bool = False
    pr_url: str | None = None
    merge_result: MergeResult | None = None
    diff_stats: DiffStats | None = None
    file_changes: tuple[FileChange, ...] = field(default=())
