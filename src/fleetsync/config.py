from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from fleetsync.manifest import MANIFEST_FILENAME
from fleetsync.models import (
    DeclaredFile,
    MergeMode,
    MergeStrategy,
    Platform,
    PrOptions,
    RepoDescriptor,
    RepoTarget,
)
from fleetsync.shell import (
    InvalidBranchNameError,
    UnsafePathError,
    validate_branch_name,
    validate_relative_path,
)


_DEFAULT_HOSTS: dict[Platform, str] = {
    "github": "github.com",
    "gitlab": "gitlab.com",
    "azure": "dev.azure.com",
}
_MERGE_MODES: tuple[MergeMode, ...] = ("manual", "auto", "force", "direct")
_MERGE_STRATEGIES: tuple[MergeStrategy, ...] = ("merge", "squash", "rebase")


@dataclass(frozen=True)
class RuntimeConfig:
    work_dir: Path
    config_id: str
    worker_count: int = 4
    retries: int = 3
    branch_name: str = "chore/sync-config"
    dry_run: bool = False
    no_delete: bool = False
    pr_template_path: Path | None = None
    log_dir: Path | None = None


@dataclass(frozen=True)
class AuthConfig:
    token_command: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    auth: AuthConfig
    repos: tuple[RepoTarget, ...]

    def repo(self, repo_id: str) -> RepoTarget:
        for target in self.repos:
            if target.repo_id == repo_id:
                return target
        known = ", ".join(target.repo_id for target in self.repos)
        raise ConfigError(f"Unknown repo id {repo_id!r}; configured: {known}")

    def pr_template(self) -> str | None:
        path = self.runtime.pr_template_path
        if path is None:
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"runtime.pr_template_path could not be read: {path}") from exc


class ConfigError(ValueError):
    """Raised when fleetsync.toml is missing required values or has bad types."""


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    repo_data = _require_table(data, "repo")
    auth_data = _optional_table(data, "auth")

    runtime = RuntimeConfig(
        work_dir=Path(_require_str(runtime_data, "work_dir")).expanduser(),
        config_id=_require_str(runtime_data, "config_id"),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        retries=_int_with_default(runtime_data, "retries", 3),
        branch_name=_str_with_default(runtime_data, "branch_name", "chore/sync-config"),
        dry_run=_bool_with_default(runtime_data, "dry_run", False),
        no_delete=_bool_with_default(runtime_data, "no_delete", False),
        pr_template_path=_optional_path(runtime_data, "pr_template_path"),
        log_dir=_optional_path(runtime_data, "log_dir"),
    )
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.retries < 0:
        raise ConfigError("runtime.retries must be >= 0")
    try:
        validate_branch_name(runtime.branch_name)
    except InvalidBranchNameError as exc:
        raise ConfigError(f"runtime.branch_name is invalid: {exc}") from exc

    auth = AuthConfig(
        token_command=_tuple_of_str(auth_data, "token_command") if auth_data else (),
    )

    shared_files = _parse_files(data.get("files", []), table_name="[[files]]")
    repos = _load_repo_targets(repo_data=repo_data, shared_files=shared_files)
    return AppConfig(runtime=runtime, auth=auth, repos=repos)


def _load_repo_targets(
    *, repo_data: dict[str, object], shared_files: tuple[DeclaredFile, ...]
) -> tuple[RepoTarget, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")

    targets: list[RepoTarget] = []
    seen: dict[str, str] = {}
    for repo_id, raw_value in sorted(repo_data.items()):
        table_name = f"[repo.{repo_id}]"
        repo_table = _require_repo_table(raw_value, table_name=table_name)
        target = _parse_repo_target(
            repo_id=repo_id,
            repo_data=repo_table,
            shared_files=shared_files,
        )
        display_name = f"{target.descriptor.platform}:{target.descriptor.display_name}"
        existing_id = seen.get(display_name)
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repository {target.descriptor.display_name!r} across repo ids "
                f"{existing_id!r} and {repo_id!r}"
            )
        seen[display_name] = repo_id
        targets.append(target)
    return tuple(targets)


def _parse_repo_target(
    *,
    repo_id: str,
    repo_data: dict[str, object],
    shared_files: tuple[DeclaredFile, ...],
) -> RepoTarget:
    platform = _parse_choice(repo_data, "platform", ("github", "gitlab", "azure"), default=None)
    owner = _require_str(repo_data, "owner")
    name = _require_str(repo_data, "name")
    host = _str_with_default(repo_data, "host", _DEFAULT_HOSTS[cast(Platform, platform)])
    project = _optional_str(repo_data, "project")
    if platform == "azure" and project is None:
        raise ConfigError(f"[repo.{repo_id}] project is required for azure repositories")

    clone_url = _optional_str(repo_data, "clone_url")
    if clone_url is None:
        if platform == "azure":
            clone_url = f"https://{host}/{owner}/{project}/_git/{name}"
        else:
            clone_url = f"https://{host}/{owner}/{name}.git"

    descriptor = RepoDescriptor(
        platform=cast(Platform, platform),
        owner=owner,
        repo=name,
        host=host,
        clone_url=clone_url,
        project=project,
    )
    merge = _parse_choice(repo_data, "merge", _MERGE_MODES, default="auto")
    merge_strategy = _parse_choice(
        repo_data, "merge_strategy", _MERGE_STRATEGIES, default=None, required=False
    )
    pr_options = PrOptions(
        merge=cast(MergeMode, merge),
        merge_strategy=cast(MergeStrategy | None, merge_strategy),
        bypass_reason=_optional_str(repo_data, "bypass_reason"),
        delete_branch=_bool_with_default(repo_data, "delete_branch", True),
    )
    repo_files = _parse_files(repo_data.get("files", []), table_name=f"[[repo.{repo_id}.files]]")
    return RepoTarget(
        repo_id=repo_id,
        descriptor=descriptor,
        files=_merge_files(shared_files, repo_files),
        pr_options=pr_options,
    )


def _merge_files(
    shared: tuple[DeclaredFile, ...], overrides: tuple[DeclaredFile, ...]
) -> tuple[DeclaredFile, ...]:
    by_name = {declared.file_name: declared for declared in overrides}
    merged = [by_name.pop(declared.file_name, declared) for declared in shared]
    merged.extend(declared for declared in overrides if declared.file_name in by_name)
    return tuple(merged)


def _parse_files(value: object, *, table_name: str) -> tuple[DeclaredFile, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"{table_name} must be an array of tables")
    files: list[DeclaredFile] = []
    seen: set[str] = set()
    for raw_entry in value:
        entry = _require_repo_table(raw_entry, table_name=table_name)
        file_name = _require_str(entry, "file_name")
        try:
            validate_relative_path(file_name)
        except UnsafePathError as exc:
            raise ConfigError(f"{table_name} file_name is unsafe: {file_name!r}") from exc
        if file_name == MANIFEST_FILENAME:
            raise ConfigError(f"{table_name} must not declare {MANIFEST_FILENAME}")
        if file_name in seen:
            raise ConfigError(f"{table_name} declares {file_name!r} more than once")
        seen.add(file_name)

        content = entry.get("content")
        if content is not None and not isinstance(content, str):
            raise ConfigError(f"{table_name} content for {file_name!r} must be a string")
        files.append(
            DeclaredFile(
                file_name=file_name,
                content=content,
                delete_orphaned=_optional_bool(entry, "delete_orphaned"),
                create_only=_bool_with_default(entry, "create_only", False),
                executable=_optional_bool(entry, "executable"),
                template=_bool_with_default(entry, "template", False),
                vars=_string_table(entry, "vars"),
            )
        )
    return tuple(files)


def _parse_choice(
    data: dict[str, object],
    key: str,
    choices: tuple[str, ...],
    *,
    default: str | None,
    required: bool = True,
) -> str | None:
    value = data.get(key, default)
    if value is None and not required:
        return None
    if not isinstance(value, str) or value.strip().lower() not in choices:
        raise ConfigError(f"{key} must be one of: {', '.join(choices)}")
    return value.strip().lower()


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_repo_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _optional_bool(data: dict[str, object], key: str) -> bool | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean if provided")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)


def _string_table(data: dict[str, object], key: str) -> tuple[tuple[str, str], ...]:
    value = data.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be a table of strings")
    out: list[tuple[str, str]] = []
    for item_key, item_value in value.items():
        if not isinstance(item_key, str) or not isinstance(item_value, str):
            raise ConfigError(f"{key} must be a table of strings")
        out.append((item_key, item_value))
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
