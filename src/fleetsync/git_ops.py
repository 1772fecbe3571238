from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import re
import shutil
import stat

from fleetsync.models import Platform, RepoDescriptor
from fleetsync.observability import log_event
from fleetsync.retry import with_retry
from fleetsync.shell import CommandError, run, validate_branch_name, validate_relative_path


LOGGER = logging.getLogger("fleetsync.git_ops")
_HEAD_BRANCH_PATTERN = re.compile(r"HEAD branch:\s*(\S+)")
_TOKEN_USERNAMES: dict[Platform, str] = {
    "github": "x-access-token",
    "gitlab": "oauth2",
    "azure": "pat",
}


@dataclass(frozen=True)
class GitAuth:
    token: str
    host: str
    repo_path: str
    username: str = "x-access-token"

    @classmethod
    def for_repo(cls, repo: RepoDescriptor, token: str) -> GitAuth:
        return cls(
            token=token,
            host=repo.host,
            repo_path=repo.repo_path,
            username=_TOKEN_USERNAMES[repo.platform],
        )

    def config_args(self) -> list[str]:
        # Repo-scoped insteadOf rules are a longer prefix than any global rewrite, so
        # they win without touching global git config.
        auth_url = f"https://{self.username}:{self.token}@{self.host}/{self.repo_path}"
        return [
            "-c",
            f"url.{auth_url}.insteadOf=https://{self.host}/{self.repo_path}",
            "-c",
            f"url.{auth_url}.insteadOf=git@{self.host}:{self.repo_path}",
        ]


@dataclass(frozen=True)
class DefaultBranch:
    branch: str
    method: str


class GitWorkspace:
    """Disposable clone of one repository.

    Network operations carry per-command credentials and are retried on transient
    failures; local operations never touch the network.
    """

    def __init__(self, path: Path, *, auth: GitAuth | None = None, retries: int = 3) -> None:
        self.path = path
        self.auth = auth
        self.retries = retries

    # Network operations

    def clone(self, clone_url: str) -> None:
        log_event(
            LOGGER,
            "git_clone",
            workspace=str(self.path),
            authenticated=self.auth is not None,
        )
        self._network(
            [*self._git_prefix(), "clone", "--", clone_url, str(self.path)],
            description="git clone",
        )

    def fetch(self, *, prune: bool = False) -> None:
        log_event(LOGGER, "git_fetch_origin", workspace=str(self.path), prune=prune)
        argv = [*self._git(), "fetch", "origin"]
        if prune:
            argv.append("--prune")
        self._network(argv, description="git fetch")

    def fetch_branch(self, branch: str, *, retries: int | None = None) -> None:
        validate_branch_name(branch)
        refspec = f"+refs/heads/{branch}:refs/remotes/origin/{branch}"
        self._network(
            [*self._git(), "fetch", "origin", refspec],
            description="git fetch branch",
            retries=retries,
        )

    def push(
        self,
        branch: str,
        *,
        force_with_lease: bool = False,
        retries: int | None = None,
    ) -> None:
        validate_branch_name(branch)
        argv = [*self._git(), "push"]
        if force_with_lease:
            argv.append("--force-with-lease")
        argv.extend(["-u", "origin", branch])
        log_event(
            LOGGER,
            "git_push",
            workspace=str(self.path),
            branch=branch,
            force_with_lease=force_with_lease,
        )
        try:
            self._network(argv, description="git push", retries=retries)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                workspace=str(self.path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def push_head_to(
        self,
        branch: str,
        *,
        force: bool = False,
        retries: int | None = None,
    ) -> None:
        validate_branch_name(branch)
        argv = [*self._git(), "push"]
        if force:
            argv.append("--force")
        argv.extend(["origin", f"HEAD:refs/heads/{branch}"])
        log_event(LOGGER, "git_push_head", workspace=str(self.path), branch=branch, force=force)
        self._network(argv, description="git push HEAD", retries=retries)

    def delete_remote_branch(self, branch: str) -> None:
        validate_branch_name(branch)
        log_event(LOGGER, "git_delete_remote_branch", workspace=str(self.path), branch=branch)
        self._network(
            [*self._git(), "push", "origin", "--delete", branch],
            description="git push --delete",
        )

    def remote_branch_exists(self, branch: str) -> bool:
        validate_branch_name(branch)
        try:
            # No retry: exit code 2 is the expected answer for a missing branch.
            run([*self._git(), "ls-remote", "--exit-code", "--heads", "origin", branch])
        except CommandError as exc:
            if exc.exit_code == 2:
                return False
            raise
        return True

    def default_branch(self) -> DefaultBranch:
        try:
            remote_info = self._network(
                [*self._git(), "remote", "show", "origin"],
                description="git remote show",
            )
        except CommandError:
            remote_info = ""
        match = _HEAD_BRANCH_PATTERN.search(remote_info)
        if match and match.group(1) != "(unknown)":
            return DefaultBranch(branch=match.group(1), method="remote HEAD")

        for candidate in ("main", "master"):
            if self._ref_exists(f"origin/{candidate}"):
                return DefaultBranch(branch=candidate, method=f"origin/{candidate} exists")
        return DefaultBranch(branch="main", method="fallback default")

    # Local operations

    def clean(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def create_branch(self, branch: str) -> None:
        validate_branch_name(branch)
        log_event(LOGGER, "git_branch_reset", workspace=str(self.path), branch=branch)
        run(["git", "-C", str(self.path), "checkout", "-B", branch])

    def read_file(self, file_name: str) -> bytes | None:
        target = self._file_path(file_name)
        if not target.is_file():
            return None
        return target.read_bytes()

    def write_file(self, file_name: str, content: str) -> None:
        target = self._file_path(file_name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content.encode("utf-8"))

    def delete_file(self, file_name: str) -> None:
        self._file_path(file_name).unlink(missing_ok=True)

    def file_exists(self, file_name: str) -> bool:
        return self._file_path(file_name).is_file()

    def set_executable(self, file_name: str) -> None:
        target = self._file_path(file_name)
        if not target.is_file():
            return
        mode = target.stat().st_mode
        target.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def file_exists_on_branch(self, file_name: str, branch: str) -> bool:
        validate_relative_path(file_name)
        validate_branch_name(branch)
        try:
            run(["git", "-C", str(self.path), "cat-file", "-e", f"origin/{branch}:{file_name}"])
        except CommandError:
            return False
        return True

    def stage_all(self) -> None:
        run(["git", "-C", str(self.path), "add", "-A"])

    def has_staged_changes(self) -> bool:
        diff = run(["git", "-C", str(self.path), "diff", "--cached", "--name-only"]).strip()
        return bool(diff)

    def commit(self, message: str) -> None:
        log_event(LOGGER, "git_commit", workspace=str(self.path), has_message=bool(message.strip()))
        run(["git", "-C", str(self.path), "commit", "--no-verify", "-m", message])

    def rev_parse(self, ref: str) -> str:
        return run(["git", "-C", str(self.path), "rev-parse", ref]).strip()

    def _ref_exists(self, ref: str) -> bool:
        try:
            run(["git", "-C", str(self.path), "rev-parse", "--verify", "--quiet", ref])
        except CommandError:
            return False
        return True

    def _file_path(self, file_name: str) -> Path:
        return self.path / validate_relative_path(file_name)

    def _git_prefix(self) -> list[str]:
        if self.auth is None:
            return ["git"]
        return ["git", *self.auth.config_args()]

    def _git(self) -> list[str]:
        return [*self._git_prefix(), "-C", str(self.path)]

    def _network(
        self,
        argv: list[str],
        *,
        description: str,
        retries: int | None = None,
    ) -> str:
        return with_retry(
            lambda: run(argv),
            retries=self.retries if retries is None else retries,
            description=description,
        )
