from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from urllib.parse import quote, urlencode

from fleetsync.models import MergeStrategy, PullRequest
from fleetsync.observability import log_event
from fleetsync.payloads import as_int, as_object_dict, as_object_list, as_string
from fleetsync.shell import run


LOGGER = logging.getLogger("fleetsync.gitlab_gateway")
DEFAULT_GITLAB_HOST = "gitlab.com"


@dataclass(frozen=True)
class GitLabGateway:
    """Merge request operations for one GitLab project through ``glab api``."""

    owner: str
    name: str
    host: str = DEFAULT_GITLAB_HOST
    token: str | None = None

    @property
    def project_path(self) -> str:
        return f"{self.owner}/{self.name}"

    def find_open_pull_request(self, *, head: str, base: str | None = None) -> PullRequest | None:
        query_items = {"state": "opened", "source_branch": head}
        if base is not None:
            query_items["target_branch"] = base
        path = f"{self._project_api()}/merge_requests?{urlencode(query_items)}"
        payload = self._api_json("GET", path)
        items = as_object_list(payload)
        if items is None:
            raise RuntimeError("Unexpected GitLab response: expected list for merge requests")
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_request_lookup_by_source",
            project=self.project_path,
            head=head,
            found=bool(items),
        )
        if not items:
            return None
        return min((_merge_request_from_payload(item) for item in items), key=lambda mr: mr.number)

    def close_pull_request(self, pr: PullRequest) -> None:
        self._api_json(
            "PUT",
            f"{self._project_api()}/merge_requests/{pr.number}",
            fields={"state_event": "close"},
        )
        log_event(LOGGER, "gitlab_mr_closed", project=self.project_path, mr_iid=pr.number)

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        try:
            payload = as_object_dict(
                self._api_json(
                    "POST",
                    f"{self._project_api()}/merge_requests",
                    fields={
                        "source_branch": head,
                        "target_branch": base,
                        "title": title,
                        "description": body,
                    },
                )
            )
            if payload is None:
                raise RuntimeError("Unexpected GitLab response: expected object for merge request")
            mr = _merge_request_from_payload(payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "gitlab_mr_create_failed",
                project=self.project_path,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "gitlab_mr_created",
            project=self.project_path,
            mr_iid=mr.number,
            mr_url=mr.html_url,
        )
        return mr

    def enable_auto_merge(self, pr: PullRequest, *, strategy: MergeStrategy) -> None:
        fields = {"merge_when_pipeline_succeeds": "true"}
        if strategy == "squash":
            fields["squash"] = "true"
        self._api_json(
            "PUT",
            f"{self._project_api()}/merge_requests/{pr.number}/merge",
            fields=fields,
        )
        log_event(LOGGER, "gitlab_auto_merge_enabled", project=self.project_path, mr_iid=pr.number)

    def merge_now(
        self,
        pr: PullRequest,
        *,
        strategy: MergeStrategy,
        head: str,
        delete_branch: bool,
        bypass_reason: str | None = None,
    ) -> None:
        fields = {"should_remove_source_branch": "true" if delete_branch else "false"}
        if strategy == "squash":
            fields["squash"] = "true"
        payload = as_object_dict(
            self._api_json(
                "PUT",
                f"{self._project_api()}/merge_requests/{pr.number}/merge",
                fields=fields,
            )
        )
        state = as_string(payload.get("state")) if payload is not None else ""
        if state != "merged":
            raise RuntimeError(f"GitLab merge failed: state is {state or '<unknown>'}")
        log_event(
            LOGGER,
            "gitlab_mr_merged",
            project=self.project_path,
            mr_iid=pr.number,
            head=head,
            has_bypass_reason=bypass_reason is not None,
        )

    def _project_api(self) -> str:
        return f"projects/{quote(self.project_path, safe='')}"

    def _api_json(
        self,
        method: str,
        path: str,
        *,
        fields: dict[str, str] | None = None,
    ) -> object:
        cmd = ["glab", "api", "--method", method.upper()]
        if self.host != DEFAULT_GITLAB_HOST:
            cmd.extend(["--hostname", self.host])
        for key, value in (fields or {}).items():
            cmd.extend(["--raw-field", f"{key}={value}"])
        cmd.append(path)
        env = {"GITLAB_TOKEN": self.token} if self.token is not None else None
        return json.loads(run(cmd, env=env))


def _merge_request_from_payload(payload: dict[str, object]) -> PullRequest:
    return PullRequest(
        number=as_int(payload.get("iid"), field="iid", platform="GitLab"),
        html_url=as_string(payload.get("web_url")),
    )
