from __future__ import annotations

import base64
from collections.abc import Sequence
import logging
from typing import Final, Protocol

from fleetsync.branch_session import SessionContext
from fleetsync.github_gateway import GitHubGateway, graphql_error_messages
from fleetsync.models import AuthContext, CommitResult, FileChange, RepoDescriptor
from fleetsync.observability import log_event
from fleetsync.payloads import as_object_dict, as_string
from fleetsync.retry import with_retry
from fleetsync.shell import CommandError, validate_branch_name, validate_relative_path


LOGGER = logging.getLogger("fleetsync.commit_protocols")

MAX_PAYLOAD_SIZE: Final[int] = 50 * 1024 * 1024
CREATE_COMMIT_MUTATION: Final[str] = (
    "mutation CreateCommit($input: CreateCommitOnBranchInput!) "
    "{ createCommitOnBranch(input: $input) { commit { oid } } }"
)
STALE_HEAD_PATTERNS: Final[tuple[str, ...]] = (
    "expected branch to point to",
    "expectedheadoid",
    "head oid",
    "was provided invalid value",
)


class PayloadTooLargeError(ValueError):
    pass


class GraphQLCommitError(RuntimeError):
    pass


class StaleHeadError(GraphQLCommitError):
    pass


class MissingCommitIdError(GraphQLCommitError):
    pass


class CommitProtocol(Protocol):
    def commit(
        self,
        session: SessionContext,
        branch_name: str,
        message: str,
        file_changes: Sequence[FileChange],
        *,
        retries: int,
        token: str | None,
        force: bool,
    ) -> CommitResult: ...


def select_commit_protocol(repo: RepoDescriptor, auth: AuthContext) -> CommitProtocol:
    if repo.platform == "github" and auth.source == "installation":
        return AtomicGraphQLCommitProtocol(repo)
    return LocalGitCommitProtocol()


def is_stale_head_error(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in STALE_HEAD_PATTERNS)


def base64_size(byte_count: int) -> int:
    return 4 * ((byte_count + 2) // 3)


class LocalGitCommitProtocol:
    """Stage, commit, and push through the workspace clone.

    Only the push touches the network, so only the push is retried.
    """

    def commit(
        self,
        session: SessionContext,
        branch_name: str,
        message: str,
        file_changes: Sequence[FileChange],
        *,
        retries: int,
        token: str | None,
        force: bool,
    ) -> CommitResult:
        validate_branch_name(branch_name)
        workspace = session.workspace
        workspace.stage_all()
        workspace.commit(message)
        workspace.push(branch_name, force_with_lease=force, retries=retries)
        sha = workspace.rev_parse("HEAD")
        log_event(LOGGER, "commit_created", branch=branch_name, sha=sha, verified=False)
        return CommitResult(sha=sha, verified=False, pushed=True)


class AtomicGraphQLCommitProtocol:
    """Create one commit on the remote branch with ``createCommitOnBranch``.

    The remote validates ``expectedHeadOid`` against the branch tip, so a concurrent
    push surfaces as a stale-head error and the request is rebuilt from a fresh fetch.
    Commits created this way are signed by the platform.
    """

    def __init__(self, repo: RepoDescriptor) -> None:
        self._repo = repo

    def commit(
        self,
        session: SessionContext,
        branch_name: str,
        message: str,
        file_changes: Sequence[FileChange],
        *,
        retries: int,
        token: str | None,
        force: bool,
    ) -> CommitResult:
        if self._repo.platform != "github":
            raise ValueError(
                f"Atomic commits require a GitHub repository, got {self._repo.platform}"
            )
        validate_branch_name(branch_name)
        additions, deletions = _split_changes(file_changes)

        encoded_additions: list[dict[str, object]] = [
            {
                "path": path,
                "contents": base64.b64encode(content).decode("ascii"),
            }
            for path, content in additions
        ]
        file_changes_input: dict[str, object] = {}
        if encoded_additions:
            file_changes_input["additions"] = encoded_additions
        if deletions:
            file_changes_input["deletions"] = [{"path": path} for path in deletions]

        workspace = session.workspace
        if not workspace.remote_branch_exists(branch_name):
            workspace.push_head_to(branch_name, retries=retries)
        elif force:
            workspace.push_head_to(branch_name, force=True, retries=retries)

        gateway = GitHubGateway(
            owner=self._repo.owner,
            name=self._repo.repo,
            host=self._repo.host,
            token=token,
        )
        attempt = 0
        while True:
            workspace.fetch_branch(branch_name, retries=retries)
            expected_head_oid = workspace.rev_parse(f"origin/{branch_name}")
            variables: dict[str, object] = {
                "input": {
                    "branch": {
                        "repositoryNameWithOwner": f"{self._repo.owner}/{self._repo.repo}",
                        "branchName": branch_name,
                    },
                    "expectedHeadOid": expected_head_oid,
                    "message": {"headline": message},
                    "fileChanges": file_changes_input,
                }
            }
            try:
                payload = with_retry(
                    lambda: gateway.graphql(CREATE_COMMIT_MUTATION, variables),
                    retries=retries,
                    description="createCommitOnBranch",
                )
            except CommandError as exc:
                errors = [str(exc)]
                payload = {}
            else:
                errors = graphql_error_messages(payload)

            if errors:
                joined = ", ".join(errors)
                if not is_stale_head_error(joined):
                    raise GraphQLCommitError(f"GraphQL error: {joined}")
                if attempt >= retries:
                    raise StaleHeadError(
                        f"Branch {branch_name} kept moving after {attempt + 1} attempts: {joined}"
                    )
                attempt += 1
                log_event(
                    LOGGER,
                    "stale_head_retry",
                    branch=branch_name,
                    attempt=attempt,
                    retries=retries,
                )
                continue

            oid = _commit_oid(payload)
            if not oid:
                raise MissingCommitIdError("GraphQL response missing commit oid")
            log_event(LOGGER, "commit_created", branch=branch_name, sha=oid, verified=True)
            return CommitResult(sha=oid, verified=True, pushed=True)


def _split_changes(
    file_changes: Sequence[FileChange],
) -> tuple[list[tuple[str, bytes]], list[str]]:
    additions: list[tuple[str, bytes]] = []
    deletions: list[str] = []
    total_size = 0
    for change in file_changes:
        if change.action == "skip":
            continue
        validate_relative_path(change.file_name)
        if change.action == "delete":
            deletions.append(change.file_name)
            continue
        content = (change.content or "").encode("utf-8")
        total_size += base64_size(len(content))
        additions.append((change.file_name, content))

    if total_size > MAX_PAYLOAD_SIZE:
        size_mb = round(total_size / (1024 * 1024))
        raise PayloadTooLargeError(
            f"GraphQL payload exceeds 50 MB limit ({size_mb} MB). "
            "Use smaller files or the local git commit protocol."
        )
    return additions, deletions


def _commit_oid(payload: dict[str, object]) -> str:
    data = as_object_dict(payload.get("data"))
    mutation = as_object_dict(data.get("createCommitOnBranch")) if data is not None else None
    commit = as_object_dict(mutation.get("commit")) if mutation is not None else None
    if commit is None:
        return ""
    return as_string(commit.get("oid"))
