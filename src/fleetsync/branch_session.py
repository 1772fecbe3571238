from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
from pathlib import Path
import shutil
import threading

from fleetsync.gateways import PullRequestGateway
from fleetsync.git_ops import GitAuth, GitWorkspace
from fleetsync.models import RepoDescriptor
from fleetsync.observability import log_event


LOGGER = logging.getLogger("fleetsync.branch_session")


def workspace_path(work_dir: Path, repo: RepoDescriptor) -> Path:
    path = work_dir / repo.platform / repo.owner
    if repo.project:
        path = path / repo.project
    return path / repo.repo


@dataclass
class SessionContext:
    workspace: GitWorkspace
    base_branch: str
    detection_method: str
    _release: Callable[[], None] = field(repr=False)
    _released: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def cleanup(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._release()


class BranchSessionManager:
    def __init__(self, *, retries: int = 3, dry_run: bool = False) -> None:
        self._retries = retries
        self._dry_run = dry_run

    def setup(self, repo: RepoDescriptor, work_dir: Path, auth: GitAuth | None) -> SessionContext:
        path = workspace_path(work_dir, repo)
        workspace = GitWorkspace(path, auth=auth, retries=self._retries)
        workspace.clean()
        try:
            workspace.clone(repo.clone_url)
            detected = workspace.default_branch()
        except Exception:
            _remove_workspace(path)
            raise

        log_event(
            LOGGER,
            "base_branch_detected",
            repo=repo.display_name,
            base_branch=detected.branch,
            method=detected.method,
        )
        return SessionContext(
            workspace=workspace,
            base_branch=detected.branch,
            detection_method=detected.method,
            _release=lambda: _remove_workspace(path),
        )

    def prepare_branch(
        self,
        session: SessionContext,
        branch_name: str,
        *,
        is_direct_mode: bool,
        gateway: PullRequestGateway,
    ) -> None:
        if is_direct_mode:
            log_event(LOGGER, "direct_mode_branch", base_branch=session.base_branch)
            return

        if not self._dry_run:
            existing = gateway.find_open_pull_request(head=branch_name)
            if existing is not None:
                gateway.close_pull_request(existing)
                if session.workspace.remote_branch_exists(branch_name):
                    session.workspace.delete_remote_branch(branch_name)
                # Stale remote-tracking refs would break --force-with-lease.
                session.workspace.fetch(prune=True)
                log_event(
                    LOGGER,
                    "existing_pull_request_closed",
                    pr_number=existing.number,
                    branch=branch_name,
                )

        session.workspace.create_branch(branch_name)


def _remove_workspace(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    log_event(LOGGER, "workspace_removed", workspace=str(path))
