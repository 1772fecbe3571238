from __future__ import annotations

from dataclasses import dataclass
import json
import logging

from fleetsync.models import MergeStrategy, PullRequest
from fleetsync.observability import log_event
from fleetsync.payloads import as_int, as_object_dict, as_object_list, as_string
from fleetsync.shell import run


LOGGER = logging.getLogger("fleetsync.azure_gateway")
DEFAULT_AZURE_HOST = "dev.azure.com"


@dataclass(frozen=True)
class AzureDevOpsGateway:
    """Pull request operations for one Azure Repos repository through ``az repos pr``.

    ``owner`` is the organization. The PAT, when given, is exported to ``az`` as
    ``AZURE_DEVOPS_EXT_PAT`` for that single invocation.
    """

    owner: str
    project: str
    name: str
    host: str = DEFAULT_AZURE_HOST
    token: str | None = None

    @property
    def organization_url(self) -> str:
        return f"https://{self.host}/{self.owner}"

    def find_open_pull_request(self, *, head: str, base: str | None = None) -> PullRequest | None:
        argv = [
            "list",
            *self._repo_args(),
            "--source-branch",
            head,
            "--status",
            "active",
        ]
        if base is not None:
            argv.extend(["--target-branch", base])
        items = as_object_list(self._az(argv))
        if items is None:
            raise RuntimeError("Unexpected Azure DevOps response: expected list for PR lookup")
        log_event(
            LOGGER,
            "azure_read",
            endpoint="pull_request_lookup_by_source",
            repo=f"{self.project}/{self.name}",
            head=head,
            found=bool(items),
        )
        if not items:
            return None
        return min((self._pull_request(item) for item in items), key=lambda pr: pr.number)

    def close_pull_request(self, pr: PullRequest) -> None:
        self._az(["update", *self._org_args(), "--id", str(pr.number), "--status", "abandoned"])
        log_event(LOGGER, "azure_pr_abandoned", repo=self.name, pr_number=pr.number)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        try:
            payload = as_object_dict(
                self._az(
                    [
                        "create",
                        *self._repo_args(),
                        "--source-branch",
                        head,
                        "--target-branch",
                        base,
                        "--title",
                        title,
                        "--description",
                        body,
                    ]
                )
            )
            if payload is None:
                raise RuntimeError("Unexpected Azure DevOps response: expected object for PR")
            pr = self._pull_request(payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "azure_pr_create_failed",
                repo=self.name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "azure_pr_created", repo=self.name, pr_number=pr.number)
        return pr

    def enable_auto_merge(self, pr: PullRequest, *, strategy: MergeStrategy) -> None:
        self._az(
            [
                "update",
                *self._org_args(),
                "--id",
                str(pr.number),
                "--auto-complete",
                "true",
                "--squash",
                "true" if strategy == "squash" else "false",
                "--delete-source-branch",
                "true",
            ]
        )
        log_event(LOGGER, "azure_auto_complete_enabled", repo=self.name, pr_number=pr.number)

    def merge_now(
        self,
        pr: PullRequest,
        *,
        strategy: MergeStrategy,
        head: str,
        delete_branch: bool,
        bypass_reason: str | None = None,
    ) -> None:
        argv = [
            "update",
            *self._org_args(),
            "--id",
            str(pr.number),
            "--status",
            "completed",
            "--squash",
            "true" if strategy == "squash" else "false",
            "--delete-source-branch",
            "true" if delete_branch else "false",
            "--bypass-policy",
            "true",
        ]
        if bypass_reason:
            argv.extend(["--bypass-policy-reason", bypass_reason])
        payload = as_object_dict(self._az(argv))
        status = as_string(payload.get("status")) if payload is not None else ""
        if status != "completed":
            raise RuntimeError(f"Azure DevOps merge failed: status is {status or '<unknown>'}")
        log_event(LOGGER, "azure_pr_completed", repo=self.name, pr_number=pr.number, head=head)

    def _pull_request(self, payload: dict[str, object]) -> PullRequest:
        number = as_int(
            payload.get("pullRequestId"),
            field="pullRequestId",
            platform="Azure DevOps",
        )
        return PullRequest(
            number=number,
            html_url=(
                f"{self.organization_url}/{self.project}/_git/{self.name}/pullrequest/{number}"
            ),
        )

    def _org_args(self) -> list[str]:
        return ["--organization", self.organization_url]

    def _repo_args(self) -> list[str]:
        return [*self._org_args(), "--project", self.project, "--repository", self.name]

    def _az(self, argv: list[str]) -> object:
        env = {"AZURE_DEVOPS_EXT_PAT": self.token} if self.token is not None else None
        raw = run(["az", "repos", "pr", *argv, "--output", "json"], env=env)
        return json.loads(raw)
