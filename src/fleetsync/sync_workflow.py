from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Final, Protocol

from fleetsync.branch_session import BranchSessionManager, SessionContext
from fleetsync.change_detector import ChangeDetector
from fleetsync.commit_protocols import CommitProtocol, select_commit_protocol
from fleetsync.gateways import PullRequestGateway, gateway_for
from fleetsync.git_ops import GitAuth
from fleetsync.manifest import (
    MANIFEST_FILENAME,
    load_manifest,
    manifest_changed,
    reconcile_rulesets,
    save_manifest,
    serialize_manifest,
)
from fleetsync.messages import format_commit_message
from fleetsync.models import (
    AuthContext,
    DiffStats,
    FileAction,
    FileChange,
    ManifestUpdate,
    Platform,
    RepoDescriptor,
    RepoTarget,
    SyncResult,
    SyncStage,
)
from fleetsync.observability import log_event, log_warning
from fleetsync.pr_merge import PullRequestMergeHandler
from fleetsync.tokens import NO_INSTALLATION, TokenProvider


LOGGER = logging.getLogger("fleetsync.sync_workflow")

MANIFEST_COMMIT_MESSAGE: Final[str] = "chore: update manifest with ruleset tracking"
ENV_TOKEN_VARIABLES: Final[dict[Platform, tuple[str, ...]]] = {
    "github": ("GH_TOKEN", "GITHUB_TOKEN"),
    "gitlab": ("GITLAB_TOKEN",),
    "azure": ("AZURE_DEVOPS_EXT_PAT",),
}
_PUSH_REJECTION_MARKERS: Final[tuple[str, ...]] = ("rejected", "protected", "protection", "denied")


@dataclass(frozen=True)
class AuthResolution:
    auth: AuthContext | None
    skip_result: SyncResult | None = None


class AuthResolver:
    """Chooses the credential for one repository.

    Installation tokens come from the provider (GitHub only). A provider miss or
    failure falls back to the platform's environment variables.
    """

    def __init__(
        self,
        token_provider: TokenProvider | None = None,
        *,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._environ = os.environ if environ is None else environ

    def resolve(self, repo: RepoDescriptor) -> AuthResolution:
        if self._token_provider is not None and repo.platform == "github":
            try:
                token = self._token_provider.get_token_for_repo(repo)
            except Exception as exc:  # noqa: BLE001
                log_warning(
                    LOGGER,
                    "token_provider_failed",
                    repo=repo.display_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                token = None

            if token is NO_INSTALLATION:
                log_event(LOGGER, "repo_skipped_no_installation", repo=repo.display_name)
                return AuthResolution(
                    auth=None,
                    skip_result=SyncResult(
                        repo_name=repo.display_name,
                        success=True,
                        message=f"No installation found for {repo.owner}",
                        stage="skipped",
                        skipped=True,
                    ),
                )
            if isinstance(token, str):
                return AuthResolution(auth=AuthContext(token=token, source="installation"))

        for variable in ENV_TOKEN_VARIABLES[repo.platform]:
            value = self._environ.get(variable, "").strip()
            if value:
                return AuthResolution(auth=AuthContext(token=value, source="environment"))
        return AuthResolution(auth=AuthContext(token=None, source="none"))


@dataclass(frozen=True)
class WorkResult:
    changes: tuple[FileChange, ...]
    commit_message: str
    diff_stats: DiffStats | None = None


class WorkStrategy(Protocol):
    def execute(self, target: RepoTarget, session: SessionContext) -> WorkResult | None: ...


class FileSyncStrategy:
    def __init__(self, detector: ChangeDetector) -> None:
        self._detector = detector

    def execute(self, target: RepoTarget, session: SessionContext) -> WorkResult | None:
        change_set = self._detector.compute(
            session.workspace,
            target.descriptor,
            target.files,
            base_branch=session.base_branch,
        )
        if not change_set.has_changes:
            return None
        return WorkResult(
            changes=change_set.changes,
            commit_message=format_commit_message(change_set.changes),
            diff_stats=change_set.stats,
        )


class ManifestUpdateStrategy:
    """Records ruleset tracking in the manifest without touching declared files."""

    def __init__(self, update: ManifestUpdate, *, config_id: str, dry_run: bool = False) -> None:
        self._update = update
        self._config_id = config_id
        self._dry_run = dry_run

    def execute(self, target: RepoTarget, session: SessionContext) -> WorkResult | None:
        workspace_path = session.workspace.path
        existing = load_manifest(workspace_path)
        reconciled = reconcile_rulesets(
            existing,
            self._config_id,
            {name: True for name in self._update.rulesets},
        )
        if not manifest_changed(existing, reconciled.manifest):
            return None

        exists = session.workspace.file_exists(MANIFEST_FILENAME)
        action: FileAction = "update" if exists else "create"
        if not self._dry_run:
            save_manifest(workspace_path, reconciled.manifest)
        return WorkResult(
            changes=(
                FileChange(MANIFEST_FILENAME, serialize_manifest(reconciled.manifest), action),
            ),
            commit_message=MANIFEST_COMMIT_MESSAGE,
        )


def is_push_rejection(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _PUSH_REJECTION_MARKERS)


def direct_push_rejected_message(branch: str) -> str:
    return (
        f"Push to '{branch}' was rejected (likely branch protection). "
        "To use 'direct' mode, the target branch must allow direct pushes. "
        "Use merge = \"force\" to create a PR and merge with admin privileges."
    )


class SyncWorkflow:
    """Runs one repository through auth, session, change set, commit, and PR/merge.

    Every failure is converted into a failed ``SyncResult``; nothing escapes
    ``execute`` so a batch keeps going. The workspace is removed on every exit path.
    """

    def __init__(
        self,
        *,
        auth_resolver: AuthResolver,
        session_manager: BranchSessionManager,
        pr_handler: PullRequestMergeHandler,
        work_dir: Path,
        branch_name: str,
        retries: int = 3,
        dry_run: bool = False,
        gateway_factory: Callable[[RepoDescriptor, str | None], PullRequestGateway] = gateway_for,
        protocol_selector: Callable[
            [RepoDescriptor, AuthContext], CommitProtocol
        ] = select_commit_protocol,
    ) -> None:
        self._auth_resolver = auth_resolver
        self._session_manager = session_manager
        self._pr_handler = pr_handler
        self._work_dir = work_dir
        self._branch_name = branch_name
        self._retries = retries
        self._dry_run = dry_run
        self._gateway_factory = gateway_factory
        self._protocol_selector = protocol_selector

    def execute(self, target: RepoTarget, strategy: WorkStrategy) -> SyncResult:
        repo = target.descriptor
        repo_name = repo.display_name
        log_event(LOGGER, "repo_sync_started", repo=repo_name, repo_id=target.repo_id)
        try:
            result = self._run(target, strategy, repo_name)
        except Exception as exc:  # noqa: BLE001
            log_warning(
                LOGGER,
                "repo_sync_failed",
                repo=repo_name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SyncResult(repo_name=repo_name, success=False, message=str(exc), stage="failed")
        log_event(
            LOGGER,
            "repo_sync_finished",
            repo=repo_name,
            success=result.success,
            skipped=result.skipped,
            stage=result.stage,
        )
        return result

    def _run(self, target: RepoTarget, strategy: WorkStrategy, repo_name: str) -> SyncResult:
        repo = target.descriptor
        resolution = self._auth_resolver.resolve(repo)
        if resolution.skip_result is not None:
            return resolution.skip_result
        auth = resolution.auth or AuthContext(token=None, source="none")
        self._transition(repo_name, "auth_resolved", token_source=auth.source)

        pr_options = target.pr_options
        is_direct_mode = pr_options.merge == "direct"
        if is_direct_mode and pr_options.merge_strategy is not None:
            log_warning(
                LOGGER,
                "merge_strategy_ignored",
                repo=repo_name,
                merge_strategy=pr_options.merge_strategy,
            )

        git_auth = GitAuth.for_repo(repo, auth.token) if auth.token else None
        gateway = self._gateway_factory(repo, auth.token)
        session: SessionContext | None = None
        try:
            session = self._session_manager.setup(repo, self._work_dir, git_auth)
            self._transition(repo_name, "session_ready", base_branch=session.base_branch)

            self._session_manager.prepare_branch(
                session,
                self._branch_name,
                is_direct_mode=is_direct_mode,
                gateway=gateway,
            )
            self._transition(repo_name, "branch_ready")

            work = strategy.execute(target, session)
            self._transition(repo_name, "change_set_computed", has_changes=work is not None)
            if work is None:
                return self._skipped(repo_name, "No changes detected")

            push_branch = session.base_branch if is_direct_mode else self._branch_name
            file_changes = tuple(change for change in work.changes if change.action != "skip")
            if self._dry_run:
                log_event(
                    LOGGER,
                    "dry_run_commit",
                    repo=repo_name,
                    branch=push_branch,
                    message=work.commit_message,
                )
            else:
                session.workspace.stage_all()
                if not session.workspace.has_staged_changes():
                    return self._skipped(
                        repo_name,
                        "No changes detected after staging",
                        diff_stats=work.diff_stats,
                        file_changes=file_changes,
                    )
                protocol = self._protocol_selector(repo, auth)
                try:
                    protocol.commit(
                        session,
                        push_branch,
                        work.commit_message,
                        work.changes,
                        retries=self._retries,
                        token=auth.token,
                        force=not is_direct_mode,
                    )
                except Exception as exc:  # noqa: BLE001
                    if is_direct_mode and is_push_rejection(str(exc)):
                        log_warning(
                            LOGGER,
                            "direct_push_rejected",
                            repo=repo_name,
                            branch=push_branch,
                        )
                        return SyncResult(
                            repo_name=repo_name,
                            success=False,
                            message=direct_push_rejected_message(push_branch),
                            stage="failed",
                            diff_stats=work.diff_stats,
                            file_changes=file_changes,
                        )
                    raise
            self._transition(repo_name, "committed", branch=push_branch)

            if is_direct_mode:
                self._transition(repo_name, "done")
                verb = "Would push" if self._dry_run else "Pushed"
                return SyncResult(
                    repo_name=repo_name,
                    success=True,
                    message=f"{verb} directly to {push_branch}",
                    stage="done",
                    diff_stats=work.diff_stats,
                    file_changes=file_changes,
                )

            result = self._pr_handler.create_and_merge(
                repo,
                self._branch_name,
                session.base_branch,
                work.changes,
                pr_options,
                gateway,
                diff_stats=work.diff_stats,
            )
            if not result.success:
                return result
            self._transition(repo_name, "pr_created", pr_url=result.pr_url)
            self._transition(repo_name, "merge_handled", mode=pr_options.merge)
            self._transition(repo_name, "done")
            return SyncResult(
                repo_name=result.repo_name,
                success=True,
                message=result.message,
                stage="done",
                pr_url=result.pr_url,
                merge_result=result.merge_result,
                diff_stats=result.diff_stats,
                file_changes=result.file_changes,
            )
        finally:
            if session is not None:
                session.cleanup()

    def _skipped(
        self,
        repo_name: str,
        message: str,
        *,
        diff_stats: DiffStats | None = None,
        file_changes: tuple[FileChange, ...] = (),
    ) -> SyncResult:
        self._transition(repo_name, "skipped", reason=message)
        return SyncResult(
            repo_name=repo_name,
            success=True,
            message=message,
            stage="skipped",
            skipped=True,
            diff_stats=diff_stats,
            file_changes=file_changes,
        )

    def _transition(self, repo_name: str, stage: SyncStage, **fields: object) -> None:
        log_event(LOGGER, "sync_transition", repo=repo_name, stage=stage, **fields)
