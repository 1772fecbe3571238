from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from urllib.parse import quote, urlencode

from fleetsync.models import MergeStrategy, PullRequest
from fleetsync.observability import log_event
from fleetsync.payloads import as_int, as_object_dict, as_string
from fleetsync.shell import run


LOGGER = logging.getLogger("fleetsync.github_gateway")
DEFAULT_GITHUB_HOST = "github.com"
_AUTO_MERGE_MUTATION = (
    "mutation EnableAutoMerge($pullRequestId: ID!, $mergeMethod: PullRequestMergeMethod!) "
    "{ enablePullRequestAutoMerge(input: {pullRequestId: $pullRequestId, "
    "mergeMethod: $mergeMethod}) { pullRequest { number } } }"
)


@dataclass(frozen=True)
class GitHubGateway:
    """Pull request operations for one GitHub repository through ``gh api``.

    ``token`` is attached to each ``gh`` invocation as ``GH_TOKEN``; without it ``gh``
    falls back to its own stored login.
    """

    owner: str
    name: str
    host: str = DEFAULT_GITHUB_HOST
    token: str | None = None

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def find_open_pull_request(self, *, head: str, base: str | None = None) -> PullRequest | None:
        query_items: dict[str, str] = {
            "state": "open",
            "head": f"{self.owner}:{head}",
            "per_page": "100",
        }
        if base is not None:
            query_items["base"] = base
        path = f"/repos/{self.owner}/{self.name}/pulls?{urlencode(query_items)}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected GitHub response: expected list for pull request lookup")

        candidates: list[PullRequest] = []
        for item in payload:
            item_obj = as_object_dict(item)
            if item_obj is None:
                continue
            candidates.append(_pull_request_from_payload(item_obj))

        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            repo_full_name=self.repo_full_name,
            head=head,
            found=bool(candidates),
        )
        if not candidates:
            return None
        return min(candidates, key=lambda pr: pr.number)

    def close_pull_request(self, pr: PullRequest) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr.number}"
        try:
            self._api_json("PATCH", path, payload={"state": "closed"})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_close_failed",
                repo_full_name=self.repo_full_name,
                pr_number=pr.number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_closed",
            repo_full_name=self.repo_full_name,
            pr_number=pr.number,
        )

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload = self._api_json(
                "POST",
                path,
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            payload_obj = as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for PR")
            pr = _pull_request_from_payload(payload_obj)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.repo_full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.repo_full_name,
            pr_number=pr.number,
            pr_url=pr.html_url,
            base=base,
            head=head,
        )
        return pr

    def enable_auto_merge(self, pr: PullRequest, *, strategy: MergeStrategy) -> None:
        if not pr.node_id:
            raise RuntimeError("Unexpected GitHub response: pull request is missing node_id")
        payload = self.graphql(
            _AUTO_MERGE_MUTATION,
            {"pullRequestId": pr.node_id, "mergeMethod": strategy.upper()},
        )
        errors = graphql_error_messages(payload)
        if errors:
            raise RuntimeError(f"GitHub auto-merge failed: {', '.join(errors)}")
        log_event(
            LOGGER,
            "github_auto_merge_enabled",
            repo_full_name=self.repo_full_name,
            pr_number=pr.number,
            strategy=strategy,
        )

    def merge_now(
        self,
        pr: PullRequest,
        *,
        strategy: MergeStrategy,
        head: str,
        delete_branch: bool,
        bypass_reason: str | None = None,
    ) -> None:
        # GitHub has no field for a bypass justification; admin tokens bypass rules directly.
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr.number}/merge"
        payload = as_object_dict(self._api_json("PUT", path, payload={"merge_method": strategy}))
        if payload is None or payload.get("merged") is not True:
            message = as_string(payload.get("message")) if payload is not None else ""
            raise RuntimeError(f"GitHub merge failed: {message or '<no message>'}")
        log_event(
            LOGGER,
            "github_pr_merged",
            repo_full_name=self.repo_full_name,
            pr_number=pr.number,
            strategy=strategy,
            has_bypass_reason=bypass_reason is not None,
        )
        if delete_branch:
            ref_path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(head, safe='/')}"
            self._api_text("DELETE", ref_path)

    def graphql(self, query: str, variables: dict[str, object]) -> dict[str, object]:
        cmd = ["gh", "api", "graphql", *self._hostname_args(), "--input", "-"]
        raw = run(
            cmd,
            input_text=json.dumps({"query": query, "variables": variables}),
            env=self._env(),
        )
        payload = as_object_dict(json.loads(raw))
        if payload is None:
            raise RuntimeError("Unexpected GitHub response: expected object for GraphQL")
        return payload

    def _api_text(self, method: str, path: str) -> str:
        return run(
            ["gh", "api", "--method", method.upper(), *self._hostname_args(), path],
            env=self._env(),
        )

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        cmd = ["gh", "api", "--method", method.upper(), *self._hostname_args(), path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, env=self._env())
        return json.loads(raw)

    def _hostname_args(self) -> list[str]:
        if self.host == DEFAULT_GITHUB_HOST:
            return []
        return ["--hostname", self.host]

    def _env(self) -> dict[str, str] | None:
        if self.token is None:
            return None
        return {"GH_TOKEN": self.token}


def graphql_error_messages(payload: dict[str, object]) -> list[str]:
    errors = payload.get("errors")
    if not isinstance(errors, list):
        return []
    messages: list[str] = []
    for error in errors:
        error_obj = as_object_dict(error)
        if error_obj is None:
            messages.append(as_string(error))
            continue
        messages.append(as_string(error_obj.get("message")) or "<no message>")
    return messages


def _pull_request_from_payload(payload: dict[str, object]) -> PullRequest:
    return PullRequest(
        number=as_int(payload.get("number"), field="number"),
        html_url=as_string(payload.get("html_url")),
        node_id=as_string(payload.get("node_id")),
    )
